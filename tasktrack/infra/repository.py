from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tasktrack.domain.entities import Snapshot, TagEntity, TaskEntity, TaskTagLink
from tasktrack.domain.enums import Priority, Table, TagColor
from tasktrack.domain.errors import RemoteFailure

from .changes import ChangeFeed, ChangeSubscription
from .models import TagModel, TaskModel, TaskTagModel

logger = logging.getLogger(__name__)

MODELS = {
    Table.TASKS: TaskModel,
    Table.TAGS: TagModel,
    Table.TASK_TAGS: TaskTagModel,
}


def _to_task(model: TaskModel) -> TaskEntity:
    return TaskEntity(
        id=model.id,
        user_id=model.user_id,
        title=model.title,
        description=model.description,
        priority=Priority(model.priority),
        due_date=model.due_date,
        completed=model.completed,
        position=model.position,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _to_tag(model: TagModel) -> TagEntity:
    return TagEntity(
        id=model.id,
        user_id=model.user_id,
        name=model.name,
        color=TagColor.parse(model.color),
        created_at=model.created_at,
    )


def _to_link(model: TaskTagModel) -> TaskTagLink:
    return TaskTagLink(task_id=model.task_id, tag_id=model.tag_id)


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    # Enum members go to the database as their string values.
    return {key: getattr(value, "value", value) for key, value in values.items()}


class SqlTaskGateway:
    def __init__(self, session_factory: sessionmaker, feed: ChangeFeed | None = None) -> None:
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()

    async def fetch_all(self, user_id: str) -> Snapshot:
        return await self._run("fetch snapshot", self._fetch_all, user_id)

    async def next_position(self, user_id: str) -> int:
        return await self._run("read next position", self._next_position, user_id)

    async def insert(self, table: Table, record: dict[str, Any]) -> Any:
        table = Table(table)
        entity = await self._run(f"insert into {table}", self._insert, table, _plain(record))
        self.feed.publish(table)
        return entity

    async def update(self, table: Table, row_id: str, fields: dict[str, Any]) -> None:
        table = Table(table)
        await self._run(f"update {table}", self._update, table, row_id, _plain(fields))
        self.feed.publish(table)

    async def delete(self, table: Table, match: dict[str, Any]) -> None:
        table = Table(table)
        touched = await self._run(f"delete from {table}", self._delete, table, _plain(match))
        for name in touched:
            self.feed.publish(name)

    def subscribe(self, table: Table) -> ChangeSubscription:
        return self.feed.subscribe(table)

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.exception("Database call failed: %s", operation)
            raise RemoteFailure(operation, str(exc)) from exc

    def _fetch_all(self, user_id: str) -> Snapshot:
        with self._session_factory() as session:
            tasks = session.scalars(
                select(TaskModel)
                .where(TaskModel.user_id == user_id)
                .order_by(TaskModel.position.asc(), TaskModel.created_at.asc())
            )
            tags = session.scalars(
                select(TagModel)
                .where(TagModel.user_id == user_id)
                .order_by(TagModel.created_at.asc())
            )
            links = session.scalars(
                select(TaskTagModel)
                .join(TaskModel, TaskModel.id == TaskTagModel.task_id)
                .where(TaskModel.user_id == user_id)
            )
            return Snapshot(
                tasks=tuple(_to_task(task) for task in tasks),
                tags=tuple(_to_tag(tag) for tag in tags),
                links=tuple(_to_link(link) for link in links),
            )

    def _next_position(self, user_id: str) -> int:
        with self._session_factory() as session:
            current = session.scalar(
                select(func.max(TaskModel.position)).where(TaskModel.user_id == user_id)
            )
        return 0 if current is None else current + 1

    def _insert(self, table: Table, record: dict[str, Any]) -> Any:
        with self._session_factory() as session:
            if table == Table.TASK_TAGS:
                return self._insert_link(session, record)
            model = MODELS[table](id=str(uuid.uuid4()), **record)
            session.add(model)
            session.commit()
            session.refresh(model)
            return _to_task(model) if table == Table.TASKS else _to_tag(model)

    @staticmethod
    def _insert_link(session: Session, record: dict[str, Any]) -> TaskTagLink:
        existing = session.get(TaskTagModel, (record["task_id"], record["tag_id"]))
        if existing is None:
            existing = TaskTagModel(task_id=record["task_id"], tag_id=record["tag_id"])
            session.add(existing)
            session.commit()
        return _to_link(existing)

    def _update(self, table: Table, row_id: str, fields: dict[str, Any]) -> None:
        if table == Table.TASK_TAGS:
            raise RemoteFailure(f"update {table}", "associations cannot be updated")
        with self._session_factory() as session:
            model = MODELS[table]
            session.execute(
                update(model).where(model.id == row_id).values(**fields),
                execution_options={"synchronize_session": False},
            )
            session.commit()

    def _delete(self, table: Table, match: dict[str, Any]) -> list[Table]:
        model = MODELS[table]
        conditions = []
        for column, value in match.items():
            if column not in model.__table__.columns:
                raise RemoteFailure(f"delete from {table}", f"unknown column {column}")
            conditions.append(getattr(model, column) == value)
        if not conditions:
            raise RemoteFailure(f"delete from {table}", "refusing to delete without a filter")

        touched = [table]
        with self._session_factory() as session:
            if table in (Table.TASKS, Table.TAGS):
                ids = select(model.id).where(*conditions)
                link_column = TaskTagModel.task_id if table == Table.TASKS else TaskTagModel.tag_id
                session.execute(
                    delete(TaskTagModel).where(link_column.in_(ids)),
                    execution_options={"synchronize_session": False},
                )
                touched.append(Table.TASK_TAGS)
            session.execute(
                delete(model).where(*conditions),
                execution_options={"synchronize_session": False},
            )
            session.commit()
        return touched
