from __future__ import annotations

import argparse
import asyncio
import locale
import logging
import sys
from datetime import date

from sqlalchemy.exc import SQLAlchemyError

from tasktrack.config import SETTINGS
from tasktrack.domain.entities import TaskDraft, TaskWithTags
from tasktrack.domain.enums import DueBucket, Priority, SortDirection, SortKey, TagColor
from tasktrack.domain.errors import TaskTrackError
from tasktrack.domain.filters import PRIORITY_ALL, SortSpec
from tasktrack.infra.db import init_db, make_engine, make_session_factory
from tasktrack.infra.logging import setup_logging
from tasktrack.infra.repository import SqlTaskGateway
from tasktrack.services.task_store import TaskStore

logger = logging.getLogger(__name__)

PRIORITY_MARKS = {Priority.HIGH: "!!!", Priority.MEDIUM: "!! ", Priority.LOW: "!  "}


def format_task(item: TaskWithTags) -> str:
    task = item.task
    check = "x" if task.completed else " "
    due = task.due_date.isoformat() if task.due_date else "----------"
    tags = " ".join(f"#{tag.name}" for tag in item.tags)
    line = f"[{check}] {PRIORITY_MARKS.get(task.priority, '   ')} {due}  {task.title}"
    if tags:
        line = f"{line}  {tags}"
    return f"{line}  ({task.id})"


async def cmd_list(store: TaskStore, args: argparse.Namespace) -> int:
    completed: bool | None = False
    if args.all:
        completed = None
    elif args.done:
        completed = True
    store.set_filters(
        completed=completed,
        priority=args.priority,
        tag_id=args.tag,
        due=DueBucket(args.due),
        search=args.search,
    )
    if args.sort:
        store.set_sort_key(args.sort)
    if args.desc:
        store.set_sort_direction(SortDirection.DESC)
    items = store.visible_tasks
    for item in items:
        print(format_task(item))
    if not items:
        print("No tasks match." if args.search else "No tasks yet.")
    return 0


async def cmd_add(store: TaskStore, args: argparse.Namespace) -> int:
    draft = TaskDraft(
        title=args.title,
        description=args.description,
        priority=Priority(args.priority),
        due_date=date.fromisoformat(args.due) if args.due else None,
    )
    task = await store.add_task(draft)
    print(task.id)
    return 0


async def cmd_done(store: TaskStore, args: argparse.Namespace) -> int:
    await store.toggle_completion(args.task_id, True)
    return 0


async def cmd_undo(store: TaskStore, args: argparse.Namespace) -> int:
    await store.toggle_completion(args.task_id, False)
    return 0


async def cmd_delete(store: TaskStore, args: argparse.Namespace) -> int:
    await store.delete_task(args.task_id)
    return 0


async def cmd_tag_add(store: TaskStore, args: argparse.Namespace) -> int:
    tag = await store.add_tag(args.name, args.color)
    print(tag.id)
    return 0


async def cmd_tag(store: TaskStore, args: argparse.Namespace) -> int:
    await store.attach_tag(args.task_id, args.tag_id)
    return 0


async def cmd_untag(store: TaskStore, args: argparse.Namespace) -> int:
    await store.detach_tag(args.task_id, args.tag_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tasktrack", description="Personal task tracker")
    parser.add_argument("--user", required=True, help="Owner id of the session")
    parser.add_argument("--init-db", action="store_true", help="Create missing tables first")
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="Show filtered and sorted tasks")
    state = list_cmd.add_mutually_exclusive_group()
    state.add_argument("--all", action="store_true", help="Include completed tasks")
    state.add_argument("--done", action="store_true", help="Only completed tasks")
    list_cmd.add_argument(
        "--priority", default=PRIORITY_ALL, choices=[PRIORITY_ALL, *(p.value for p in Priority)]
    )
    list_cmd.add_argument("--tag", default=None, help="Only tasks carrying this tag id")
    list_cmd.add_argument("--due", default=DueBucket.ALL.value, choices=[b.value for b in DueBucket])
    list_cmd.add_argument("--search", default="")
    list_cmd.add_argument("--sort", default=None, choices=[k.value for k in SortKey])
    list_cmd.add_argument("--desc", action="store_true")
    list_cmd.set_defaults(func=cmd_list)

    add_cmd = commands.add_parser("add", help="Create a task")
    add_cmd.add_argument("title")
    add_cmd.add_argument("--description", default="")
    add_cmd.add_argument(
        "--priority", default=Priority.MEDIUM.value, choices=[p.value for p in Priority]
    )
    add_cmd.add_argument("--due", default=None, help="Due date as YYYY-MM-DD")
    add_cmd.set_defaults(func=cmd_add)

    for name, func, text in (
        ("done", cmd_done, "Mark a task completed"),
        ("undo", cmd_undo, "Mark a task incomplete"),
        ("delete", cmd_delete, "Delete a task"),
    ):
        sub = commands.add_parser(name, help=text)
        sub.add_argument("task_id")
        sub.set_defaults(func=func)

    tag_add_cmd = commands.add_parser("tag-add", help="Create a tag")
    tag_add_cmd.add_argument("name")
    tag_add_cmd.add_argument("--color", default=TagColor.GRAY.value)
    tag_add_cmd.set_defaults(func=cmd_tag_add)

    for name, func, text in (
        ("tag", cmd_tag, "Attach a tag to a task"),
        ("untag", cmd_untag, "Detach a tag from a task"),
    ):
        sub = commands.add_parser(name, help=text)
        sub.add_argument("task_id")
        sub.add_argument("tag_id")
        sub.set_defaults(func=func)

    return parser


async def run(args: argparse.Namespace) -> int:
    engine = make_engine(SETTINGS.database_url)
    try:
        init_db(engine, create_schema=args.init_db)
    except SQLAlchemyError as exc:
        logger.error("Database is not reachable: %s", exc)
        print(f"DB error: {exc}", file=sys.stderr)
        engine.dispose()
        return 1

    gateway = SqlTaskGateway(make_session_factory(engine))
    store = TaskStore(
        gateway,
        refetch_debounce=SETTINGS.refetch_debounce,
        sort=SortSpec(SETTINGS.default_sort_key, SETTINGS.default_sort_direction),
    )
    try:
        await store.load(args.user)
        return await args.func(store, args)
    except (TaskTrackError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await store.close()
        engine.dispose()


def use_system_collation() -> None:
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as exc:
        logger.warning("Falling back to default collation: %s", exc)


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    use_system_collation()
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
