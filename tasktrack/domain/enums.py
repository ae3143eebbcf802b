from __future__ import annotations

from enum import StrEnum


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TagColor(StrEnum):
    BLUE = "blue"
    GREEN = "green"
    RED = "red"
    YELLOW = "yellow"
    PURPLE = "purple"
    PINK = "pink"
    INDIGO = "indigo"
    GRAY = "gray"

    @classmethod
    def parse(cls, value: str | None) -> TagColor:
        try:
            return cls(value)
        except ValueError:
            return cls.GRAY


class DueBucket(StrEnum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class SortKey(StrEnum):
    DUE_DATE = "due_date"
    PRIORITY = "priority"
    TITLE = "title"
    CREATED = "created"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


class Table(StrEnum):
    TASKS = "tasks"
    TAGS = "tags"
    TASK_TAGS = "task_tags"
