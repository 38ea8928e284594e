"""Shared fakes and utilities for the test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from capsule.capsule_core.models import Group, to_millis
from capsule.capsule_core.ports import Order

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


def make_group(
    group_id: str = "g1",
    unlock_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
) -> Group:
    return Group(
        id=group_id,
        name=f"Group {group_id}",
        unlock_at=unlock_at or T0 - timedelta(days=1),
        created_at=created_at or T0 - timedelta(days=2),
        created_by="alice",
    )


def entry_row(
    entry_id: str,
    group_id: str = "g1",
    minutes: int = 0,
    text: Optional[str] = None,
    media_url: Optional[str] = None,
    user_id: str = "alice",
) -> Dict[str, Any]:
    return {
        "id": entry_id,
        "group_id": group_id,
        "user_id": user_id,
        "created_at": to_millis(T0 + timedelta(minutes=minutes)),
        "entry_text": text,
        "media_url": media_url,
    }


class ScriptedRows:
    """RowStore fake for journal entry reads.

    Attributes:
        entries: Rows returned by queries (filtered by group_id)
        calls: Number of queries received
        gate: When set, each query waits for this event
        failure: When set, each query raises it
    """

    def __init__(self, entries: Optional[List[Dict[str, Any]]] = None) -> None:
        self.entries = list(entries or [])
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.failure: Optional[Exception] = None

    async def query(
        self,
        collection: str,
        actor: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> List[Dict[str, Any]]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failure is not None:
            raise self.failure
        group_id = (filters or {}).get("group_id")
        return [dict(row) for row in self.entries if group_id is None or row["group_id"] == group_id]

    async def insert(self, collection: str, actor: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class FailingInserts:
    """Wraps a RowStore and fails inserts into chosen collections."""

    def __init__(self, rows: Any, failures: Optional[Dict[str, Exception]] = None) -> None:
        self._rows = rows
        self.failures = dict(failures or {})

    async def query(self, *args: Any, **kwargs: Any) -> List[Dict[str, Any]]:
        return await self._rows.query(*args, **kwargs)

    async def insert(self, collection: str, actor: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        if collection in self.failures:
            raise self.failures[collection]
        return await self._rows.insert(collection, actor, record)
