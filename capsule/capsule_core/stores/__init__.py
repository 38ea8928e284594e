"""
Reference collaborators for the time capsule core.

This package provides implementations of the core's ports:
- SqliteRowStore: row storage with row-level authorization
- InMemoryChangeFeed: process-local realtime notifications
- InMemoryAuthProvider: a single switchable principal
- S3ObjectStore: media objects in S3 or MinIO, presigned URLs
- InMemoryObjectStore: media objects in a dictionary (for testing)

How to change safely:
    - New backends must implement the protocols in `ports`
    - Select the object backend through create_object_store()
"""

from __future__ import annotations

from typing import Optional, Union

from ..config import CapsuleConfig, ObjectBackend
from ..gate import Clock
from .memory_auth import InMemoryAuthProvider
from .memory_feed import InMemoryChangeFeed, InMemorySubscription
from .memory_objects import InMemoryObjectStore
from .s3_objects import S3ObjectStore
from .sqlite_store import SqliteRowStore


def create_object_store(
    config: CapsuleConfig,
    clock: Optional[Clock] = None,
) -> Union[S3ObjectStore, InMemoryObjectStore]:
    """Create the object store selected by configuration.

    Raises:
        ValueError: If the backend is unknown
    """
    if config.object_backend == ObjectBackend.S3:
        return S3ObjectStore(config.s3, clock=clock)
    if config.object_backend == ObjectBackend.MEMORY:
        return InMemoryObjectStore(clock=clock)
    raise ValueError(f"Unknown object backend: {config.object_backend}")


__all__ = [
    "SqliteRowStore",
    "InMemoryChangeFeed",
    "InMemorySubscription",
    "InMemoryAuthProvider",
    "S3ObjectStore",
    "InMemoryObjectStore",
    "create_object_store",
]
