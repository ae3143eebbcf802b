from __future__ import annotations

import asyncio
from collections import defaultdict

from tasktrack.domain.enums import Table


class ChangeSubscription:
    """One listener's queue of change notices for a single table."""

    def __init__(self, feed: ChangeFeed, table: Table) -> None:
        self.table = table
        self._feed = feed
        self._queue: asyncio.Queue[Table | None] = asyncio.Queue()
        self.closed = False

    def notify(self) -> None:
        if not self.closed:
            self._queue.put_nowait(self.table)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.discard(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> ChangeSubscription:
        return self

    async def __anext__(self) -> Table:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: dict[Table, list[ChangeSubscription]] = defaultdict(list)

    def subscribe(self, table: Table) -> ChangeSubscription:
        subscription = ChangeSubscription(self, Table(table))
        self._subscriptions[subscription.table].append(subscription)
        return subscription

    def discard(self, subscription: ChangeSubscription) -> None:
        listeners = self._subscriptions.get(subscription.table, [])
        if subscription in listeners:
            listeners.remove(subscription)

    def publish(self, table: Table) -> None:
        for subscription in list(self._subscriptions.get(Table(table), [])):
            subscription.notify()

    def listener_count(self, table: Table) -> int:
        return len(self._subscriptions.get(Table(table), []))
