from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import date, datetime
from typing import Any

import pytest

from tasktrack.domain.entities import Snapshot, TagEntity, TaskDraft, TaskEntity, TaskTagLink
from tasktrack.domain.enums import Priority, SortDirection, SortKey, Table, TagColor
from tasktrack.domain.errors import LoadFailure, NoActiveSession, NotFound, RemoteFailure
from tasktrack.infra.changes import ChangeFeed, ChangeSubscription
from tasktrack.services.task_store import TaskStore

STAMP = datetime(2024, 1, 1, 12, 0)


class FakeGateway:
    """In-memory gateway; `fail` names operations that should be rejected."""

    def __init__(self) -> None:
        self.tasks: dict[str, TaskEntity] = {}
        self.tags: dict[str, TagEntity] = {}
        self.links: list[TaskTagLink] = []
        self.fail: set[str] = set()
        self.calls: list[tuple[str, Any]] = []
        self.gates: list[tuple[asyncio.Event, Snapshot]] = []
        self.feed = ChangeFeed()
        self._ids = itertools.count(1)

    def seed_task(self, title: str, *, user_id: str = "u1", position: int = 0, **extra) -> TaskEntity:
        task = TaskEntity(
            id=f"t{next(self._ids)}",
            user_id=user_id,
            title=title,
            description=extra.get("description", ""),
            priority=extra.get("priority", Priority.MEDIUM),
            due_date=extra.get("due_date"),
            completed=extra.get("completed", False),
            position=position,
            created_at=STAMP,
            updated_at=STAMP,
        )
        self.tasks[task.id] = task
        return task

    def seed_tag(self, name: str, *, user_id: str = "u1") -> TagEntity:
        tag = TagEntity(
            id=f"g{next(self._ids)}", user_id=user_id, name=name, color=TagColor.RED, created_at=STAMP
        )
        self.tags[tag.id] = tag
        return tag

    def snapshot(self, user_id: str) -> Snapshot:
        tasks = sorted(
            (t for t in self.tasks.values() if t.user_id == user_id), key=lambda t: t.position
        )
        task_ids = {t.id for t in tasks}
        return Snapshot(
            tasks=tuple(tasks),
            tags=tuple(t for t in self.tags.values() if t.user_id == user_id),
            links=tuple(link for link in self.links if link.task_id in task_ids),
        )

    def _check(self, operation: str, payload: Any = None) -> None:
        self.calls.append((operation, payload))
        if operation in self.fail:
            raise RemoteFailure(operation, "rejected by backend")

    async def fetch_all(self, user_id: str) -> Snapshot:
        self._check("fetch_all", user_id)
        if self.gates:
            gate, snapshot = self.gates.pop(0)
            await gate.wait()
            return snapshot
        return self.snapshot(user_id)

    async def next_position(self, user_id: str) -> int:
        self._check("next_position", user_id)
        positions = [t.position for t in self.tasks.values() if t.user_id == user_id]
        return max(positions) + 1 if positions else 0

    async def insert(self, table: Table, record: dict[str, Any]) -> Any:
        self._check(f"insert:{table}", record)
        if table == Table.TASKS:
            task = TaskEntity(
                id=f"t{next(self._ids)}", created_at=STAMP, updated_at=STAMP, **record
            )
            self.tasks[task.id] = task
            return task
        if table == Table.TAGS:
            tag = TagEntity(id=f"g{next(self._ids)}", created_at=STAMP, **record)
            self.tags[tag.id] = tag
            return tag
        link = TaskTagLink(**record)
        if link not in self.links:
            self.links.append(link)
        return link

    async def update(self, table: Table, row_id: str, fields: dict[str, Any]) -> None:
        self._check(f"update:{table}", (row_id, fields))
        rows = self.tasks if table == Table.TASKS else self.tags
        if row_id in rows:
            rows[row_id] = replace(rows[row_id], **fields)

    async def delete(self, table: Table, match: dict[str, Any]) -> None:
        self._check(f"delete:{table}", match)
        if table == Table.TASKS:
            self.tasks.pop(match["id"], None)
            self.links = [link for link in self.links if link.task_id != match["id"]]
        elif table == Table.TAGS:
            self.tags.pop(match["id"], None)
            self.links = [link for link in self.links if link.tag_id != match["id"]]
        else:
            self.links = [link for link in self.links if link != TaskTagLink(**match)]

    def subscribe(self, table: Table) -> ChangeSubscription:
        return self.feed.subscribe(table)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def store(gateway: FakeGateway) -> TaskStore:
    return TaskStore(gateway)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_load_joins_tags_and_subscribes(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("Write report")
    tag = gateway.seed_tag("work")
    gateway.links.append(TaskTagLink(task.id, tag.id))
    gateway.seed_task("Someone else's", user_id="u2")

    await store.load("u1")

    assert [item.task.title for item in store.tasks] == ["Write report"]
    assert store.tasks[0].tags == (tag,)
    assert store.loading is False
    assert store.error is None
    assert all(gateway.feed.listener_count(table) == 1 for table in Table)
    await store.close()


@pytest.mark.asyncio
async def test_load_failure_sets_error_and_shows_nothing(
    gateway: FakeGateway, store: TaskStore
) -> None:
    gateway.seed_task("Hidden")
    gateway.fail.add("fetch_all")

    with pytest.raises(LoadFailure):
        await store.load("u1")

    assert store.tasks == []
    assert store.error is not None
    assert store.loading is False
    assert gateway.feed.listener_count(Table.TASKS) == 0

    gateway.fail.clear()
    await store.load("u1")
    assert store.error is None
    assert len(store.tasks) == 1
    await store.close()


@pytest.mark.asyncio
async def test_reload_tears_down_previous_subscriptions(
    gateway: FakeGateway, store: TaskStore
) -> None:
    gateway.seed_task("Mine")
    gateway.seed_task("Theirs", user_id="u2")

    await store.load("u1")
    await store.load("u2")

    assert [item.task.title for item in store.tasks] == ["Theirs"]
    assert gateway.feed.listener_count(Table.TASKS) == 1

    await store.close()
    assert gateway.feed.listener_count(Table.TASKS) == 0
    assert store.tasks == []
    assert store.user_id is None


@pytest.mark.asyncio
async def test_load_overtaken_by_refresh_still_listens(
    gateway: FakeGateway, store: TaskStore
) -> None:
    early = gateway.seed_task("early")
    late = Snapshot(tasks=(early, gateway.seed_task("late")))
    load_gate, refresh_gate = asyncio.Event(), asyncio.Event()
    gateway.gates = [(load_gate, Snapshot(tasks=(early,))), (refresh_gate, late)]

    loading = asyncio.create_task(store.load("u1"))
    await settle()
    refreshing = asyncio.create_task(store.refresh())
    await settle()
    refresh_gate.set()
    assert await refreshing is True
    load_gate.set()
    await loading

    assert store.loading is False
    assert [item.task.title for item in store.tasks] == ["early", "late"]
    assert all(gateway.feed.listener_count(table) == 1 for table in Table)

    gateway.seed_task("pushed")
    gateway.feed.publish(Table.TASKS)
    await settle()
    assert [item.task.title for item in store.tasks] == ["early", "late", "pushed"]
    await store.close()


@pytest.mark.asyncio
async def test_mutations_require_a_session(store: TaskStore) -> None:
    with pytest.raises(NoActiveSession):
        await store.add_task(TaskDraft(title="Orphan"))


@pytest.mark.asyncio
async def test_add_task_takes_next_position(gateway: FakeGateway, store: TaskStore) -> None:
    gateway.seed_task("a", position=2)
    gateway.seed_task("b", position=5)
    gateway.seed_task("other user", user_id="u2", position=40)
    await store.load("u1")

    task = await store.add_task(TaskDraft(title="c", priority=Priority.HIGH))

    assert task.position == 6
    assert store.snapshot.find_task(task.id) == task
    await store.close()


@pytest.mark.asyncio
async def test_add_task_position_reads_rows_not_yet_fetched(gateway: FakeGateway) -> None:
    store = TaskStore(gateway, refetch_debounce=10)
    gateway.seed_task("a", position=0)
    await store.load("u1")
    gateway.seed_task("added elsewhere", position=3)
    gateway.feed.publish(Table.TASKS)

    task = await store.add_task(TaskDraft(title="b"))

    assert task.position == 4
    assert len({t.position for t in gateway.tasks.values()}) == 3
    await store.close()


@pytest.mark.asyncio
async def test_first_task_gets_position_zero(store: TaskStore) -> None:
    await store.load("u1")

    task = await store.add_task(TaskDraft(title="first"))

    assert task.position == 0
    await store.close()


@pytest.mark.asyncio
async def test_failed_add_task_creates_nothing_locally(
    gateway: FakeGateway, store: TaskStore
) -> None:
    await store.load("u1")
    gateway.fail.add("insert:tasks")

    with pytest.raises(RemoteFailure):
        await store.add_task(TaskDraft(title="lost"))

    assert store.tasks == []
    assert store.error == "Failed to add task. Please try again."
    await store.close()


def test_draft_rejects_blank_title() -> None:
    with pytest.raises(ValueError):
        TaskDraft(title="   ")


@pytest.mark.asyncio
async def test_update_task_applies_locally_and_remotely(
    gateway: FakeGateway, store: TaskStore
) -> None:
    task = gateway.seed_task("draft")
    await store.load("u1")

    updated = await store.update_task(
        task.id, {"title": "final", "priority": "high", "due_date": "2024-02-01"}
    )

    assert updated.title == "final"
    assert updated.priority == Priority.HIGH
    assert updated.due_date == date(2024, 2, 1)
    assert updated.updated_at > STAMP
    assert gateway.tasks[task.id].title == "final"
    assert store.snapshot.find_task(task.id).title == "final"
    await store.close()


@pytest.mark.asyncio
async def test_failed_update_is_reported_but_task_kept(
    gateway: FakeGateway, store: TaskStore
) -> None:
    task = gateway.seed_task("keep me")
    await store.load("u1")
    gateway.fail.add("update:tasks")

    with pytest.raises(RemoteFailure):
        await store.update_task(task.id, {"title": "changed"})

    kept = store.snapshot.find_task(task.id)
    assert kept is not None
    # Optimistic change is not rolled back.
    assert kept.title == "changed"
    assert store.error == "Failed to update task. Please try again."
    await store.close()


@pytest.mark.asyncio
async def test_update_unknown_task_is_not_found(gateway: FakeGateway, store: TaskStore) -> None:
    await store.load("u1")

    with pytest.raises(NotFound) as excinfo:
        await store.update_task("nope", {"title": "x"})

    assert excinfo.value.kind == "task"
    assert not any(op.startswith("update") for op, _ in gateway.calls)
    await store.close()


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("a")
    await store.load("u1")

    with pytest.raises(ValueError):
        await store.update_task(task.id, {"user_id": "u2"})
    await store.close()


@pytest.mark.asyncio
async def test_toggle_completion(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("finish")
    await store.load("u1")

    await store.toggle_completion(task.id, True)

    assert gateway.tasks[task.id].completed is True
    assert store.visible_tasks == []
    await store.close()


@pytest.mark.asyncio
async def test_delete_task_drops_its_links(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("gone")
    tag = gateway.seed_tag("x")
    gateway.links.append(TaskTagLink(task.id, tag.id))
    await store.load("u1")

    await store.delete_task(task.id)

    assert store.snapshot.find_task(task.id) is None
    assert store.snapshot.links == ()
    await store.close()


@pytest.mark.asyncio
async def test_reorder_partial_failure_keeps_earlier_moves(
    gateway: FakeGateway, store: TaskStore
) -> None:
    a = gateway.seed_task("a", position=0)
    b = gateway.seed_task("b", position=1)
    await store.load("u1")

    with pytest.raises(NotFound):
        await store.reorder_tasks([(a.id, 1), ("missing", 0), (b.id, 0)])

    assert gateway.tasks[a.id].position == 1
    assert gateway.tasks[b.id].position == 1
    assert store.snapshot.find_task(a.id).position == 1
    await store.close()


@pytest.mark.asyncio
async def test_reorder_does_not_touch_updated_at(gateway: FakeGateway, store: TaskStore) -> None:
    a = gateway.seed_task("a", position=0)
    b = gateway.seed_task("b", position=1)
    await store.load("u1")

    await store.reorder_tasks([(a.id, 1), (b.id, 0)])

    assert [(row_id, fields) for op, (row_id, fields) in gateway.calls[1:]] == [
        (a.id, {"position": 1}),
        (b.id, {"position": 0}),
    ]
    await store.close()


@pytest.mark.asyncio
async def test_tag_crud(gateway: FakeGateway, store: TaskStore) -> None:
    await store.load("u1")

    tag = await store.add_tag("home", "teal")
    assert tag.color == TagColor.GRAY

    renamed = await store.update_tag(tag.id, "house", "green")
    assert renamed.name == "house"
    assert store.tags == (renamed,)
    assert gateway.tags[tag.id].color == TagColor.GREEN

    await store.delete_tag(tag.id)
    assert store.tags == ()
    await store.close()


@pytest.mark.asyncio
async def test_add_tag_rejects_empty_name(store: TaskStore) -> None:
    await store.load("u1")

    with pytest.raises(ValueError):
        await store.add_tag("", "blue")
    await store.close()


@pytest.mark.asyncio
async def test_attach_twice_keeps_one_link(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("a")
    tag = gateway.seed_tag("x")
    await store.load("u1")

    await store.attach_tag(task.id, tag.id)
    await store.attach_tag(task.id, tag.id)

    assert store.snapshot.links == (TaskTagLink(task.id, tag.id),)
    assert gateway.links == [TaskTagLink(task.id, tag.id)]
    assert [op for op, _ in gateway.calls].count("insert:task_tags") == 1
    await store.close()


@pytest.mark.asyncio
async def test_attach_then_detach_restores_links(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("a")
    other = gateway.seed_task("b")
    tag = gateway.seed_tag("x")
    gateway.links.append(TaskTagLink(other.id, tag.id))
    await store.load("u1")
    before = store.snapshot.links

    await store.attach_tag(task.id, tag.id)
    await store.detach_tag(task.id, tag.id)

    assert store.snapshot.links == before
    await store.close()


@pytest.mark.asyncio
async def test_detach_absent_link_is_a_noop(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("a")
    await store.load("u1")

    await store.detach_tag(task.id, "never-attached")

    assert not any(op.startswith("delete") for op, _ in gateway.calls)
    await store.close()


@pytest.mark.asyncio
async def test_attach_unknown_tag_is_not_found(gateway: FakeGateway, store: TaskStore) -> None:
    task = gateway.seed_task("a")
    await store.load("u1")

    with pytest.raises(NotFound) as excinfo:
        await store.attach_tag(task.id, "ghost")

    assert excinfo.value.kind == "tag"
    await store.close()


@pytest.mark.asyncio
async def test_deleting_tag_removes_it_from_every_task(
    gateway: FakeGateway, store: TaskStore
) -> None:
    a = gateway.seed_task("a")
    b = gateway.seed_task("b")
    shared = gateway.seed_tag("shared")
    keep = gateway.seed_tag("keep")
    gateway.links.extend(
        [TaskTagLink(a.id, shared.id), TaskTagLink(b.id, shared.id), TaskTagLink(a.id, keep.id)]
    )
    await store.load("u1")

    await store.delete_tag(shared.id)

    tags_by_task = {item.id: item.tags for item in store.tasks}
    assert tags_by_task == {a.id: (keep,), b.id: ()}
    assert store.snapshot.links == (TaskTagLink(a.id, keep.id),)
    await store.close()


@pytest.mark.asyncio
async def test_change_notice_triggers_refetch(gateway: FakeGateway, store: TaskStore) -> None:
    await store.load("u1")
    gateway.seed_task("from another device")

    gateway.feed.publish(Table.TASKS)
    await settle()

    assert [item.task.title for item in store.tasks] == ["from another device"]
    await store.close()


@pytest.mark.asyncio
async def test_background_refetch_failure_keeps_view(
    gateway: FakeGateway, store: TaskStore
) -> None:
    gateway.seed_task("still here")
    await store.load("u1")
    gateway.fail.add("fetch_all")

    gateway.feed.publish(Table.TAGS)
    await settle()

    assert len(store.tasks) == 1
    assert store.error is not None
    await store.close()


@pytest.mark.asyncio
async def test_unexpected_refetch_error_is_logged_not_raised(
    gateway: FakeGateway, store: TaskStore, monkeypatch: pytest.MonkeyPatch, caplog
) -> None:
    gateway.seed_task("still here")
    await store.load("u1")

    async def broken(user_id: str) -> Snapshot:
        raise KeyError(user_id)

    monkeypatch.setattr(gateway, "fetch_all", broken)
    gateway.feed.publish(Table.TASKS)
    await settle()

    assert len(store.tasks) == 1
    assert store.error is not None
    assert "Background refetch crashed" in caplog.text
    await store.close()


@pytest.mark.asyncio
async def test_older_refetch_finishing_last_is_discarded(
    gateway: FakeGateway, store: TaskStore
) -> None:
    await store.load("u1")
    old_task = gateway.seed_task("old")
    older = Snapshot(tasks=(old_task,))
    newer = Snapshot(tasks=(old_task, gateway.seed_task("new")))
    first_gate, second_gate = asyncio.Event(), asyncio.Event()
    gateway.gates = [(first_gate, older), (second_gate, newer)]

    first = asyncio.create_task(store.refresh())
    second = asyncio.create_task(store.refresh())
    await settle()
    second_gate.set()
    assert await second is True
    first_gate.set()
    assert await first is False

    assert [item.task.title for item in store.tasks] == ["old", "new"]
    await store.close()


@pytest.mark.asyncio
async def test_refetch_after_sign_out_is_discarded(gateway: FakeGateway, store: TaskStore) -> None:
    await store.load("u1")
    gate = asyncio.Event()
    gateway.gates = [(gate, Snapshot(tasks=(gateway.seed_task("late"),)))]

    pending = asyncio.create_task(store.refresh())
    await settle()
    await store.close()
    gate.set()

    assert await pending is False
    assert store.tasks == []


@pytest.mark.asyncio
async def test_debounce_coalesces_a_burst_of_notices(gateway: FakeGateway) -> None:
    store = TaskStore(gateway, refetch_debounce=0.01)
    await store.load("u1")

    for table in (Table.TASKS, Table.TAGS, Table.TASK_TAGS, Table.TASKS):
        gateway.feed.publish(table)
    await asyncio.sleep(0.05)

    assert [op for op, _ in gateway.calls].count("fetch_all") == 2
    await store.close()


@pytest.mark.asyncio
async def test_visible_tasks_follow_filter_and_sort_state(
    gateway: FakeGateway, store: TaskStore
) -> None:
    gateway.seed_task("b", priority=Priority.LOW, position=0)
    gateway.seed_task("a", priority=Priority.HIGH, position=1, due_date=date(2024, 1, 2))
    gateway.seed_task("c", completed=True, position=2)
    await store.load("u1")

    store.set_sort_key(SortKey.TITLE)
    assert [item.task.title for item in store.visible_tasks] == ["a", "b"]

    store.set_filters(completed=None)
    assert store.toggle_sort_direction() == SortDirection.DESC
    assert [item.task.title for item in store.visible_tasks] == ["c", "b", "a"]

    store.set_filters(priority="high")
    assert [item.task.title for item in store.visible_tasks] == ["a"]
    await store.close()
