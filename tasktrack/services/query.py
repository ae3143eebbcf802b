from __future__ import annotations

import locale
import unicodedata
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any

from tasktrack.domain.entities import Snapshot, TagEntity, TaskWithTags
from tasktrack.domain.enums import DueBucket, Priority, SortDirection, SortKey
from tasktrack.domain.filters import PRIORITY_ALL, TaskFilters

PRIORITY_WEIGHT = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


def join_tasks(snapshot: Snapshot) -> list[TaskWithTags]:
    tags_by_id = {tag.id: tag for tag in snapshot.tags}
    tags_by_task: dict[str, list[TagEntity]] = defaultdict(list)
    for link in snapshot.links:
        tag = tags_by_id.get(link.tag_id)
        if tag is not None:
            tags_by_task[link.task_id].append(tag)
    return [
        TaskWithTags(task=task, tags=tuple(tags_by_task.get(task.id, ())))
        for task in snapshot.tasks
    ]


def project(
    items: Iterable[TaskWithTags],
    filters: TaskFilters = TaskFilters(),
    sort_key: SortKey | None = None,
    direction: SortDirection = SortDirection.ASC,
    *,
    today: date | None = None,
) -> list[TaskWithTags]:
    today = today or date.today()
    matched = [item for item in items if _matches(item, filters, today)]

    if filters.search:
        needle = filters.search.casefold()
        matched = [item for item in matched if _matches_search(item, needle)]

    if sort_key is None:
        return matched
    return sorted(
        matched,
        key=SORT_KEYS[SortKey(sort_key)],
        reverse=SortDirection(direction) == SortDirection.DESC,
    )


def _matches(item: TaskWithTags, filters: TaskFilters, today: date) -> bool:
    task = item.task
    if filters.completed is not None and task.completed != filters.completed:
        return False
    if filters.priority != PRIORITY_ALL and task.priority != filters.priority:
        return False
    if filters.tag_id and not item.has_tag(filters.tag_id):
        return False
    return _in_bucket(task.due_date, DueBucket(filters.due), today)


def _in_bucket(due: date | None, bucket: DueBucket, today: date) -> bool:
    if bucket == DueBucket.ALL:
        return True
    if due is None:
        return False
    if isinstance(due, datetime):
        due = due.date()
    return today <= due < bucket_end(bucket, today)


def bucket_end(bucket: DueBucket, today: date) -> date:
    if bucket == DueBucket.TODAY:
        return today + timedelta(days=1)
    if bucket == DueBucket.WEEK:
        return today + timedelta(days=7)
    if bucket == DueBucket.MONTH:
        return _add_months(today, 1)
    return date.max


def _matches_search(item: TaskWithTags, needle: str) -> bool:
    task = item.task
    return (
        needle in task.title.casefold()
        or needle in task.description.casefold()
        or any(needle in tag.name.casefold() for tag in item.tags)
    )


def _due_key(item: TaskWithTags) -> tuple[bool, date]:
    # Undated tasks carry the largest key: last ascending, first descending.
    due = item.task.due_date
    return (due is None, due or date.min)


def _priority_key(item: TaskWithTags) -> int:
    return PRIORITY_WEIGHT.get(item.task.priority, 0)


def _fold_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def _title_key(item: TaskWithTags) -> tuple[str, str, str]:
    title = item.task.title
    return (
        locale.strxfrm(_fold_accents(title)),
        locale.strxfrm(title.casefold()),
        locale.strxfrm(title),
    )


def _created_key(item: TaskWithTags) -> datetime:
    return item.task.created_at


SORT_KEYS: dict[SortKey, Callable[[TaskWithTags], Any]] = {
    SortKey.DUE_DATE: _due_key,
    SortKey.PRIORITY: _priority_key,
    SortKey.TITLE: _title_key,
    SortKey.CREATED: _created_key,
}


def _add_months(base: date, months: int) -> date:
    year = base.year + (base.month - 1 + months) // 12
    month = (base.month - 1 + months) % 12 + 1
    day = min(base.day, _days_in_month(year, month))
    return date(year, month, day)


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day
