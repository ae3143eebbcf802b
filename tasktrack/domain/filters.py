from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .enums import DueBucket, SortDirection, SortKey

PRIORITY_ALL = "all"


@dataclass(frozen=True)
class TaskFilters:
    completed: Optional[bool] = False
    priority: str = PRIORITY_ALL
    tag_id: str | None = None
    due: DueBucket = DueBucket.ALL
    search: str = ""


@dataclass(frozen=True)
class SortSpec:
    key: SortKey = SortKey.DUE_DATE
    direction: SortDirection = SortDirection.ASC
