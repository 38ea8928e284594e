"""
In-memory change feed.

This module provides a process-local change feed for:
- Unit and integration tests
- Local development, where the SQLite store publishes its own inserts

Invariants:
    - Every open subscription whose filter matches receives each event once
    - Events published before a subscription opens are not replayed
    - Closing a subscription ends its iteration

How to change safely:
    - Keep the interface compatible with the ChangeFeed protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from ..ports import ChangeEvent, ChangeKind, FeedFilter

logger = logging.getLogger(__name__)

_CLOSE = object()


class InMemorySubscription:
    """Subscription handle backed by an asyncio.Queue."""

    def __init__(self, feed: InMemoryChangeFeed, filter: FeedFilter) -> None:
        self.filter = filter
        self._feed = feed
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)
        self._feed._remove(self)

    def _offer(self, event: ChangeEvent) -> None:
        if not self._closed and self.filter.matches(event):
            self._queue.put_nowait(event)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSE:
                break
            self.delivered += 1
            yield item  # type: ignore[misc]


class InMemoryChangeFeed:
    """Process-local implementation of the ChangeFeed protocol.

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> sub = feed.subscribe(FeedFilter("journal_entries", group_id="g1"))
        >>> await feed.publish(ChangeEvent("journal_entries", ChangeKind.INSERT, "g1"))
        >>> async for event in sub:
        ...     print(event.row_id)
    """

    def __init__(self) -> None:
        self._subscriptions: List[InMemorySubscription] = []
        self.published: List[ChangeEvent] = []

    def subscribe(self, filter: FeedFilter) -> InMemorySubscription:
        subscription = InMemorySubscription(self, filter)
        self._subscriptions.append(subscription)
        logger.debug(
            "Change feed subscription opened",
            extra={"collection": filter.collection, "group_id": filter.group_id},
        )
        return subscription

    def unsubscribe(self, subscription: InMemorySubscription) -> None:
        subscription.close()

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver `event` to every matching subscription.

        Returns:
            Number of subscriptions the event was offered to
        """
        self.published.append(event)
        targets = [s for s in self._subscriptions if s.filter.matches(event)]
        for subscription in targets:
            subscription._offer(event)
        logger.debug(
            "Change event published",
            extra={
                "collection": event.collection,
                "group_id": event.group_id,
                "subscribers": len(targets),
            },
        )
        return len(targets)

    async def notify(
        self,
        collection: str,
        group_id: str,
        row_id: Optional[str] = None,
        kind: ChangeKind = ChangeKind.INSERT,
    ) -> int:
        """Shorthand for publish(ChangeEvent(...))."""
        return await self.publish(ChangeEvent(collection, kind, group_id, row_id))

    def _remove(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    # Testing helpers

    def subscriber_count(self, group_id: Optional[str] = None) -> int:
        """Number of open subscriptions, optionally for one group."""
        return sum(
            1
            for s in self._subscriptions
            if group_id is None or s.filter.group_id == group_id
        )

    def clear(self) -> None:
        """Close every subscription and forget published events."""
        for subscription in list(self._subscriptions):
            subscription.close()
        self.published.clear()
