from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Optional

from .enums import Priority, TagColor


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TaskEntity:
    id: str
    user_id: str
    title: str
    description: str
    priority: Priority
    due_date: Optional[date]
    completed: bool
    position: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TagEntity:
    id: str
    user_id: str
    name: str
    color: TagColor
    created_at: datetime


@dataclass(frozen=True)
class TaskTagLink:
    task_id: str
    tag_id: str


@dataclass(frozen=True)
class TaskWithTags:
    task: TaskEntity
    tags: tuple[TagEntity, ...] = ()

    @property
    def id(self) -> str:
        return self.task.id

    def has_tag(self, tag_id: str) -> bool:
        return any(tag.id == tag_id for tag in self.tags)


@dataclass(frozen=True)
class TaskDraft:
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    due_date: Optional[date] = None
    completed: bool = False

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValueError("Task title must not be empty")
        object.__setattr__(self, "priority", Priority(self.priority))


@dataclass(frozen=True)
class Snapshot:
    tasks: tuple[TaskEntity, ...] = ()
    tags: tuple[TagEntity, ...] = ()
    links: tuple[TaskTagLink, ...] = ()

    def find_task(self, task_id: str) -> TaskEntity | None:
        return next((task for task in self.tasks if task.id == task_id), None)

    def find_tag(self, tag_id: str) -> TagEntity | None:
        return next((tag for tag in self.tags if tag.id == tag_id), None)

    def has_link(self, task_id: str, tag_id: str) -> bool:
        return TaskTagLink(task_id, tag_id) in self.links

    def with_task(self, task: TaskEntity) -> Snapshot:
        if self.find_task(task.id) is None:
            return replace(self, tasks=self.tasks + (task,))
        return replace(
            self, tasks=tuple(task if t.id == task.id else t for t in self.tasks)
        )

    def without_task(self, task_id: str) -> Snapshot:
        return replace(
            self,
            tasks=tuple(t for t in self.tasks if t.id != task_id),
            links=tuple(link for link in self.links if link.task_id != task_id),
        )

    def with_tag(self, tag: TagEntity) -> Snapshot:
        if self.find_tag(tag.id) is None:
            return replace(self, tags=self.tags + (tag,))
        return replace(self, tags=tuple(tag if t.id == tag.id else t for t in self.tags))

    def without_tag(self, tag_id: str) -> Snapshot:
        return replace(
            self,
            tags=tuple(t for t in self.tags if t.id != tag_id),
            links=tuple(link for link in self.links if link.tag_id != tag_id),
        )

    def with_link(self, link: TaskTagLink) -> Snapshot:
        if link in self.links:
            return self
        return replace(self, links=self.links + (link,))

    def without_link(self, link: TaskTagLink) -> Snapshot:
        return replace(self, links=tuple(other for other in self.links if other != link))
