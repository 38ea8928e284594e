"""
Entry synchronization engine.

One engine instance holds the visible entry set of one active group. It:
1. Loads the group's entries wholesale from the RowStore
2. Resolves the distinct media references of the loaded entries
3. Publishes an ordered VisibleSnapshot
4. Reloads whenever the change feed reports a change in the group

Every change notification triggers a full reload, never a differential
merge. The RowStore withholds rows it does not want the actor to see, so
only a full reload can tell "no new row" apart from "row withheld".

State machine:
    IDLE -> LOADING -> SYNCED -> LOADING -> SYNCED ...
    any state -> CLOSED (engine discarded; late results are dropped)

Invariants:
    - Reloads are serialized; at most one extra reload is queued
    - A failed reload keeps the previous snapshot on display
    - Nothing is read from storage while the clock says the group is locked
    - After close() no result of this engine reaches its callbacks

How to change safely:
    - Keep the snapshot rebuild wholesale unless the storage layer starts
      flagging hidden rows instead of withholding them
    - Test coalescing with a slow store; timing bugs hide behind fast fakes
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from .gate import Clock, SystemClock, is_unlocked, time_until_unlock
from .media import MediaResolver
from .models import (
    AccessDescriptor,
    Entry,
    Group,
    Principal,
    ResolutionState,
    VisibleEntry,
    VisibleSnapshot,
)
from .ports import JOURNAL_ENTRIES, ChangeFeed, FeedFilter, Order, RowStore, Subscription

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[VisibleSnapshot], None]
ErrorCallback = Callable[[str, Exception], None]


class SyncState(Enum):
    """Lifecycle state of an EntrySyncEngine."""

    IDLE = "idle"
    LOADING = "loading"
    SYNCED = "synced"
    CLOSED = "closed"


class EntrySyncEngine:
    """Keeps one group's visible entries in sync.

    Attributes:
        group_id: Group this engine is bound to
        state: Current SyncState
        last_error: Error of the most recent failed reload, if any
        reload_count: Number of reloads started

    Example:
        >>> engine = EntrySyncEngine(group, alice, rows, feed, resolver)
        >>> await engine.start()
        >>> engine.snapshot.entries
        >>> engine.close()
    """

    def __init__(
        self,
        group: Group,
        principal: Principal,
        rows: RowStore,
        feed: Optional[ChangeFeed],
        resolver: MediaResolver,
        clock: Optional[Clock] = None,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Initialize an engine in the IDLE state.

        Args:
            group: Active group (its unlock time drives the gate)
            principal: Actor for storage queries
            rows: Row store holding journal entries
            feed: Change feed; None disables realtime reloads
            resolver: Shared media resolver
            clock: Clock for gate checks
            on_snapshot: Called after every published snapshot
            on_error: Called with (group_id, error) after a failed reload
        """
        self.group_id = group.id
        self._unlock_at = group.unlock_at
        self._principal = principal
        self._rows = rows
        self._feed = feed
        self._resolver = resolver
        self._clock = clock or SystemClock()
        self._on_snapshot = on_snapshot
        self._on_error = on_error

        self.state = SyncState.IDLE
        self.last_error: Optional[Exception] = None
        self.reload_count = 0
        self._snapshot = VisibleSnapshot(group_id=group.id)
        self._loaded_once = False
        self._loaded_while_locked = False

        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task[None]] = None
        self._unlock_timer: Optional[asyncio.Task[None]] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self._current_waiter: Optional[asyncio.Future[None]] = None
        self._next_waiter: Optional[asyncio.Future[None]] = None

    @property
    def closed(self) -> bool:
        return self.state is SyncState.CLOSED

    @property
    def snapshot(self) -> VisibleSnapshot:
        """Last published snapshot, regardless of the gate."""
        return self._snapshot

    @property
    def reload_in_flight(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def is_unlocked(self) -> bool:
        return is_unlocked(self._unlock_at, self._clock.now())

    def visible(self) -> VisibleSnapshot:
        """Snapshot for presentation: empty while the group is locked."""
        if not self.is_unlocked():
            return VisibleSnapshot(group_id=self.group_id, loaded_at=self._snapshot.loaded_at)
        return self._snapshot

    async def start(self) -> VisibleSnapshot:
        """Open the change feed and perform the initial load.

        Returns:
            The snapshot after the initial load (stale or empty if it failed)
        """
        if self.closed:
            return self._snapshot

        if self._feed is not None and self._subscription is None:
            self._subscription = self._feed.subscribe(
                FeedFilter(collection=JOURNAL_ENTRIES, group_id=self.group_id)
            )
            self._listener = asyncio.ensure_future(self._listen(self._subscription))

        if not self.is_unlocked():
            self._unlock_timer = asyncio.ensure_future(self._reload_at_unlock())

        logger.debug("Sync engine started", extra={"group_id": self.group_id})
        await self.request_reload()
        return self._snapshot

    async def load_snapshot(self) -> List[Entry]:
        """Fetch the group's entries, newest first.

        This is the only source for the rendered set.
        """
        rows = await self._rows.query(
            JOURNAL_ENTRIES,
            self._principal.id,
            filters={"group_id": self.group_id},
            order=Order("created_at", descending=True),
        )
        entries = [Entry.from_row(row) for row in rows if row.get("group_id") == self.group_id]
        # Ties on created_at keep storage order
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def on_change_notification(self, group_id: str) -> None:
        """Handle a change-feed event for `group_id`."""
        if self.closed:
            return
        if group_id != self.group_id:
            logger.debug(
                "Ignoring change notification for another group",
                extra={"group_id": self.group_id, "event_group_id": group_id},
            )
            return
        self.request_reload()

    def request_reload(self) -> asyncio.Future[None]:
        """Schedule a reload, coalescing with any reload in flight.

        Returns:
            Future completing when a reload that started after this request
            has finished (successfully or not)
        """
        loop = asyncio.get_running_loop()
        if self.closed:
            done = loop.create_future()
            done.set_result(None)
            return done

        if not self.reload_in_flight:
            self._current_waiter = loop.create_future()
            self._worker = asyncio.ensure_future(self._run())
            return self._current_waiter

        if self._next_waiter is None:
            self._next_waiter = loop.create_future()
            logger.debug("Reload queued behind in-flight reload", extra={"group_id": self.group_id})
        return self._next_waiter

    async def refresh(self) -> VisibleSnapshot:
        """Request a reload and wait for it."""
        await self.request_reload()
        return self._snapshot

    def check_unlock(self) -> None:
        """Reload if the snapshot was loaded while locked and the gate opened."""
        if self.closed or not self._loaded_while_locked or self.reload_in_flight:
            return
        if self.is_unlocked():
            self.request_reload()

    def close(self) -> None:
        """Discard the engine. Pending waiters are released."""
        if self.closed:
            return
        self.state = SyncState.CLOSED

        if self._subscription is not None and self._feed is not None:
            self._feed.unsubscribe(self._subscription)
        for task in (self._listener, self._unlock_timer, self._worker):
            if task is not None and not task.done():
                task.cancel()
        for waiter in (self._current_waiter, self._next_waiter):
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
        self._current_waiter = self._next_waiter = None
        logger.debug("Sync engine closed", extra={"group_id": self.group_id})

    async def _run(self) -> None:
        try:
            while not self.closed:
                await self._reload_once()
                waiter, self._current_waiter = self._current_waiter, None
                if waiter is not None and not waiter.done():
                    waiter.set_result(None)
                if self._next_waiter is None:
                    break
                self._current_waiter, self._next_waiter = self._next_waiter, None
        finally:
            for waiter in (self._current_waiter, self._next_waiter):
                if self.closed and waiter is not None and not waiter.done():
                    waiter.set_result(None)

    async def _reload_once(self) -> None:
        self.state = SyncState.LOADING
        self.reload_count += 1
        locked = not self.is_unlocked()

        try:
            entries = [] if locked else await self.load_snapshot()
            references = [e.media_reference for e in entries if e.media_reference]
            resolved = (
                await self._resolver.resolve_all(references, group_id=self.group_id)
                if references
                else {}
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.closed:
                return
            self.last_error = e
            self.state = SyncState.SYNCED if self._loaded_once else SyncState.IDLE
            logger.warning(
                f"Entry reload failed, keeping previous snapshot: {e}",
                extra={"group_id": self.group_id, "kept_entries": len(self._snapshot)},
            )
            self._notify_error(e)
            return

        if self.closed:
            logger.debug("Discarding reload result of closed engine", extra={"group_id": self.group_id})
            return

        items = []
        for entry in entries:
            outcome = resolved.get(entry.media_reference) if entry.media_reference else None
            if entry.media_reference is None:
                items.append(VisibleEntry(entry=entry, resolution=ResolutionState.NONE))
            elif isinstance(outcome, AccessDescriptor):
                items.append(
                    VisibleEntry(entry=entry, resolution=ResolutionState.RESOLVED, url=outcome.url)
                )
            else:
                items.append(VisibleEntry(entry=entry, resolution=ResolutionState.UNRESOLVED))

        self._snapshot = VisibleSnapshot(
            group_id=self.group_id,
            entries=tuple(items),
            loaded_at=self._clock.now(),
        )
        self._loaded_once = True
        self._loaded_while_locked = locked
        self.last_error = None
        self.state = SyncState.SYNCED

        logger.debug(
            "Snapshot published",
            extra={"group_id": self.group_id, "entries": len(items), "locked": locked},
        )
        self._notify_snapshot(self._snapshot)

    async def _listen(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                self.on_change_notification(event.group_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Change feed listener stopped: {e}", exc_info=True)
            if not self.closed:
                self._notify_error(e)

    async def _reload_at_unlock(self) -> None:
        delay = time_until_unlock(self._unlock_at, self._clock.now()).total_seconds()
        await asyncio.sleep(delay)
        if not self.closed:
            logger.info("Group unlocked, reloading entries", extra={"group_id": self.group_id})
            self.request_reload()

    def _notify_snapshot(self, snapshot: VisibleSnapshot) -> None:
        if self._on_snapshot is None:
            return
        try:
            self._on_snapshot(snapshot)
        except Exception:
            logger.exception("Snapshot callback failed", extra={"group_id": self.group_id})

    def _notify_error(self, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(self.group_id, error)
        except Exception:
            logger.exception("Error callback failed", extra={"group_id": self.group_id})
