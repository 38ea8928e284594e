"""
In-memory object store for testing.

Stores uploaded bytes in a dictionary and issues `memory://` URLs that carry
their expiry. Useful for:
- Unit tests of the media resolver (issuance counting, denial, latency)
- Local development without S3 or MinIO

Invariants:
    - All data is lost on process exit
    - Objects are never overwritten
    - Missing and denied paths fail with ResolutionError, like the hosted API
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from datetime import timedelta
from typing import Dict, Optional, Set

from ..errors import CapsuleError, ResolutionError
from ..gate import Clock, SystemClock
from ..models import AccessDescriptor

logger = logging.getLogger(__name__)


class InMemoryObjectStore:
    """Dictionary-backed ObjectStore.

    Attributes:
        issue_calls: Total issuance calls
        issue_calls_by_path: Issuance calls per path
        denied: Paths for which issuance is refused
        issue_delay: Seconds each issuance waits before answering

    Example:
        >>> objects = InMemoryObjectStore()
        >>> await objects.upload("g1/a.png", b"...")
        >>> descriptor = await objects.issue_access_descriptor("g1/a.png", 600)
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        base_url: str = "memory://entries",
        issue_delay: float = 0.0,
    ) -> None:
        self._clock = clock or SystemClock()
        self.base_url = base_url.rstrip("/")
        self.issue_delay = issue_delay
        self._objects: Dict[str, bytes] = {}
        self._content_types: Dict[str, Optional[str]] = {}
        self.denied: Set[str] = set()
        self.issue_failures: Dict[str, Exception] = {}
        self.upload_failure: Optional[Exception] = None
        self.issue_calls = 0
        self.issue_calls_by_path: Counter[str] = Counter()

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        if self.upload_failure is not None:
            raise self.upload_failure
        if path in self._objects:
            raise CapsuleError(
                f"Object already exists: {path}",
                code="OBJECT_EXISTS",
                details={"path": path},
            )
        self._objects[path] = bytes(data)
        self._content_types[path] = content_type
        logger.debug("Object stored", extra={"path": path, "bytes": len(data)})

    async def issue_access_descriptor(self, path: str, ttl: int) -> AccessDescriptor:
        self.issue_calls += 1
        self.issue_calls_by_path[path] += 1
        if self.issue_delay:
            await asyncio.sleep(self.issue_delay)

        if path in self.issue_failures:
            raise self.issue_failures[path]
        if path in self.denied:
            raise ResolutionError(path, "access denied")
        if path not in self._objects:
            raise ResolutionError(path, "object not found")

        expires_at = self._clock.now() + timedelta(seconds=ttl)
        token = uuid.uuid4().hex
        return AccessDescriptor(
            reference=path,
            url=f"{self.base_url}/{path}?expires={int(expires_at.timestamp())}&token={token}",
            expires_at=expires_at,
        )

    # Testing helpers

    def put(self, path: str, data: bytes = b"", content_type: Optional[str] = None) -> None:
        """Store an object synchronously (overwrites)."""
        self._objects[path] = data
        self._content_types[path] = content_type

    def get(self, path: str) -> Optional[bytes]:
        return self._objects.get(path)

    def content_type(self, path: str) -> Optional[str]:
        return self._content_types.get(path)

    def paths(self) -> list[str]:
        return sorted(self._objects)
