from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import date
from typing import Any

from tasktrack.domain.entities import (
    Snapshot,
    TagEntity,
    TaskDraft,
    TaskEntity,
    TaskTagLink,
    TaskWithTags,
    utcnow,
)
from tasktrack.domain.enums import Priority, SortDirection, SortKey, Table, TagColor
from tasktrack.domain.errors import LoadFailure, NoActiveSession, NotFound, RemoteFailure
from tasktrack.domain.filters import SortSpec, TaskFilters

from .ports import Subscription, TaskGateway
from .query import join_tasks, project

logger = logging.getLogger(__name__)

EDITABLE_TASK_FIELDS = frozenset(
    {"title", "description", "priority", "due_date", "completed", "position"}
)

LOAD_ERROR = "Failed to load your tasks. Please try again later."


class TaskStore:
    def __init__(
        self,
        gateway: TaskGateway,
        *,
        refetch_debounce: float = 0.0,
        sort: SortSpec | None = None,
    ) -> None:
        self._gateway = gateway
        self._debounce = refetch_debounce
        self._user_id: str | None = None
        self._snapshot = Snapshot()
        self._joined: list[TaskWithTags] | None = None
        self._subscriptions: list[Subscription] = []
        self._listeners: list[asyncio.Task] = []
        self._pending: set[asyncio.Task] = set()
        self._session = 0
        self._issued = 0
        self._notices = 0
        self.loading = False
        self.error: str | None = None
        self.filters = TaskFilters()
        self.sort = sort or SortSpec()

    # Session lifecycle

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def load(self, user_id: str) -> None:
        await self.close()
        self._session += 1
        session = self._session
        self._user_id = user_id
        self.loading = True
        self.error = None
        logger.info("Loading tasks for user %s", user_id)
        self._open_subscriptions()
        try:
            await self.refresh()
        except RemoteFailure as exc:
            logger.error("Initial load for user %s failed: %s", user_id, exc)
            if session == self._session:
                await self._stop_listening()
                self.error = LOAD_ERROR
            raise LoadFailure(str(exc)) from exc
        finally:
            if session == self._session:
                self.loading = False

    async def close(self) -> None:
        self._session += 1
        await self._stop_listening()
        if self._user_id is not None:
            logger.info("Closed task session for user %s", self._user_id)
        self._user_id = None
        self.error = None
        self._commit(Snapshot())

    async def _stop_listening(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        tasks = self._listeners + list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions = []
        self._listeners = []
        self._pending.clear()

    async def refresh(self) -> bool:
        """Refetch the whole snapshot; returns False if a newer fetch superseded it."""
        if self._user_id is None:
            return False
        self._issued += 1
        ticket = self._issued
        session = self._session
        snapshot = await self._gateway.fetch_all(self._user_id)
        if ticket != self._issued or session != self._session:
            logger.debug("Discarding stale refetch #%s", ticket)
            return False
        self.error = None
        self._commit(snapshot)
        return True

    def _open_subscriptions(self) -> None:
        for table in Table:
            subscription = self._gateway.subscribe(table)
            self._subscriptions.append(subscription)
            self._listeners.append(asyncio.create_task(self._listen(table, subscription)))

    async def _listen(self, table: Table, subscription: Subscription) -> None:
        async for _ in subscription:
            logger.debug("Change notice on %s", table)
            self._notices += 1
            task = asyncio.create_task(self._refetch_after_notice(self._notices))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _refetch_after_notice(self, notice: int) -> None:
        if self._debounce > 0:
            await asyncio.sleep(self._debounce)
            if notice != self._notices:
                return
        try:
            await self.refresh()
        except RemoteFailure as exc:
            logger.warning("Background refetch failed: %s", exc)
            self.error = LOAD_ERROR
        except Exception:  # noqa: BLE001
            logger.exception("Background refetch crashed")
            self.error = LOAD_ERROR

    # Read side

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def tasks(self) -> list[TaskWithTags]:
        if self._joined is None:
            self._joined = join_tasks(self._snapshot)
        return list(self._joined)

    @property
    def tags(self) -> tuple[TagEntity, ...]:
        return self._snapshot.tags

    @property
    def visible_tasks(self) -> list[TaskWithTags]:
        return project(self.tasks, self.filters, self.sort.key, self.sort.direction)

    def set_filters(self, **changes: Any) -> TaskFilters:
        self.filters = replace(self.filters, **changes)
        return self.filters

    def set_sort_key(self, key: SortKey | str) -> None:
        self.sort = replace(self.sort, key=SortKey(key))

    def set_sort_direction(self, direction: SortDirection | str) -> None:
        self.sort = replace(self.sort, direction=SortDirection(direction))

    def toggle_sort_direction(self) -> SortDirection:
        flipped = (
            SortDirection.DESC if self.sort.direction == SortDirection.ASC else SortDirection.ASC
        )
        self.set_sort_direction(flipped)
        return flipped

    # Tasks

    async def add_task(self, draft: TaskDraft) -> TaskEntity:
        user_id = self._require_user()
        record = {
            "user_id": user_id,
            "title": draft.title,
            "description": draft.description,
            "priority": draft.priority,
            "due_date": draft.due_date,
            "completed": draft.completed,
        }
        session = self._session
        record["position"] = await self._call("add task", self._gateway.next_position(user_id))
        task = await self._call("add task", self._gateway.insert(Table.TASKS, record))
        self._apply(session, lambda snap: snap.with_task(task))
        return task

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskEntity:
        changes = _clean_task_fields(fields)
        changes["updated_at"] = utcnow()
        return await self._update_task(task_id, changes, "update task")

    async def toggle_completion(self, task_id: str, completed: bool) -> TaskEntity:
        return await self.update_task(task_id, {"completed": completed})

    async def delete_task(self, task_id: str) -> None:
        self._require_task(task_id)
        session = self._session
        await self._call("delete task", self._gateway.delete(Table.TASKS, {"id": task_id}))
        self._apply(session, lambda snap: snap.without_task(task_id))

    async def reorder_tasks(self, moves: Iterable[tuple[str, int]]) -> None:
        for task_id, position in moves:
            await self._update_task(task_id, {"position": int(position)}, "reorder tasks")

    async def _update_task(
        self, task_id: str, changes: dict[str, Any], operation: str
    ) -> TaskEntity:
        task = replace(self._require_task(task_id), **changes)
        self._commit(self._snapshot.with_task(task))
        await self._call(operation, self._gateway.update(Table.TASKS, task_id, changes))
        return task

    # Tags

    async def add_tag(self, name: str, color: TagColor | str = TagColor.GRAY) -> TagEntity:
        user_id = self._require_user()
        record = {"user_id": user_id, "name": _clean_name(name), "color": TagColor.parse(color)}
        session = self._session
        tag = await self._call("add tag", self._gateway.insert(Table.TAGS, record))
        self._apply(session, lambda snap: snap.with_tag(tag))
        return tag

    async def update_tag(self, tag_id: str, name: str, color: TagColor | str) -> TagEntity:
        changes = {"name": _clean_name(name), "color": TagColor.parse(color)}
        tag = replace(self._require_tag(tag_id), **changes)
        self._commit(self._snapshot.with_tag(tag))
        await self._call("update tag", self._gateway.update(Table.TAGS, tag_id, changes))
        return tag

    async def delete_tag(self, tag_id: str) -> None:
        self._require_tag(tag_id)
        session = self._session
        await self._call("delete tag", self._gateway.delete(Table.TAGS, {"id": tag_id}))
        self._apply(session, lambda snap: snap.without_tag(tag_id))

    async def attach_tag(self, task_id: str, tag_id: str) -> None:
        link = TaskTagLink(task_id=task_id, tag_id=tag_id)
        if link in self._snapshot.links:
            return
        self._require_task(task_id)
        self._require_tag(tag_id)
        session = self._session
        await self._call(
            "attach tag",
            self._gateway.insert(Table.TASK_TAGS, {"task_id": task_id, "tag_id": tag_id}),
        )
        self._apply(session, lambda snap: snap.with_link(link))

    async def detach_tag(self, task_id: str, tag_id: str) -> None:
        link = TaskTagLink(task_id=task_id, tag_id=tag_id)
        if link not in self._snapshot.links:
            return
        session = self._session
        await self._call(
            "detach tag",
            self._gateway.delete(Table.TASK_TAGS, {"task_id": task_id, "tag_id": tag_id}),
        )
        self._apply(session, lambda snap: snap.without_link(link))

    # Helpers

    def _commit(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        self._joined = None

    def _apply(self, session: int, change: Callable[[Snapshot], Snapshot]) -> None:
        if session == self._session:
            self._commit(change(self._snapshot))

    async def _call(self, operation: str, pending: Any) -> Any:
        try:
            return await pending
        except RemoteFailure as exc:
            logger.warning("Failed to %s: %s", operation, exc)
            self.error = f"Failed to {operation}. Please try again."
            raise

    def _require_user(self) -> str:
        if self._user_id is None:
            raise NoActiveSession()
        return self._user_id

    def _require_task(self, task_id: str) -> TaskEntity:
        self._require_user()
        task = self._snapshot.find_task(task_id)
        if task is None:
            self.error = "Task not found."
            raise NotFound("task", task_id)
        return task

    def _require_tag(self, tag_id: str) -> TagEntity:
        self._require_user()
        tag = self._snapshot.find_tag(tag_id)
        if tag is None:
            self.error = "Tag not found."
            raise NotFound("tag", tag_id)
        return tag


def _clean_task_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - EDITABLE_TASK_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    cleaned = dict(fields)
    if "title" in cleaned:
        cleaned["title"] = _clean_name(cleaned["title"], "Task title")
    if "priority" in cleaned:
        cleaned["priority"] = Priority(cleaned["priority"])
    if "due_date" in cleaned and isinstance(cleaned["due_date"], str):
        cleaned["due_date"] = date.fromisoformat(cleaned["due_date"])
    if "completed" in cleaned:
        cleaned["completed"] = bool(cleaned["completed"])
    return cleaned


def _clean_name(value: str, label: str = "Tag name") -> str:
    if not value or not value.strip():
        raise ValueError(f"{label} must not be empty")
    return value
