from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from tasktrack.domain.entities import Snapshot
from tasktrack.domain.enums import Table


class Subscription(Protocol):
    """Stream of change notices for one table; each item names the table."""

    def __aiter__(self) -> AsyncIterator[Table]: ...
    def close(self) -> None: ...


class TaskGateway(Protocol):
    async def fetch_all(self, user_id: str) -> Snapshot: ...

    async def next_position(self, user_id: str) -> int: ...

    # Returns the stored entity (TaskEntity, TagEntity or TaskTagLink).
    async def insert(self, table: Table, record: dict[str, Any]) -> Any: ...

    async def update(self, table: Table, row_id: str, fields: dict[str, Any]) -> None: ...

    # Deletes every row whose columns equal the values in `match`.
    async def delete(self, table: Table, match: dict[str, Any]) -> None: ...

    def subscribe(self, table: Table) -> Subscription: ...
