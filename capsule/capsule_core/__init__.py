"""
Capsule Core - client core of a time-capsule group journal.

Members of a group write text and media entries that stay sealed until the
group's unlock time, then become visible to every member at once. This
package implements the logic below any presentation layer:
- the clock gate deciding whether a group is unlocked
- the membership and group registry
- the entry synchronization engine (snapshot + change feed)
- the media reference resolver (time-limited signed URLs)
- the session controller tying them to one signed-in principal

Architecture:
    ┌───────────────┐      ┌──────────────────────────────────────────┐
    │ Presentation  │─────▶│            SessionController             │
    │ (CLI, UI)     │◀─────│  read_model()   create/join/submit/upload │
    └───────────────┘      └───┬──────────────┬─────────────────┬─────┘
                               │              │                 │
                               ▼              ▼                 ▼
                        ┌────────────┐ ┌──────────────┐ ┌──────────────┐
                        │ Group      │ │ EntrySync    │ │ EntryWriter  │
                        │ Registry   │ │ Engine       │ │              │
                        └─────┬──────┘ └──┬────────┬──┘ └───┬──────┬───┘
                              │           │        ▼        │      │
                              │           │  ┌───────────┐  │      │
                              │           │  │  Media    │  │      │
                              │           │  │  Resolver │  │      │
                              │           │  └─────┬─────┘  │      │
                              ▼           ▼        ▼        ▼      ▼
                        ┌──────────┐ ┌─────────┐ ┌─────────────────────┐
                        │ RowStore │ │ Change  │ │     ObjectStore     │
                        │ (SQLite) │ │ Feed    │ │ (S3 / in-memory)    │
                        └──────────┘ └─────────┘ └─────────────────────┘

Invariants:
    - No entry of a locked group ever reaches the read model
    - At most one sync engine exists, for the active group
    - Authorization is enforced by the row store, never by the core
    - Signed media URLs are cached per reference and shared, never logged

How to change safely:
    - Keep collaborators behind the protocols in `ports`
    - Timestamps are aware UTC datetimes in the core, Unix ms in storage
"""

from ._version import __version__
from .config import CapsuleConfig
from .errors import (
    AuthorizationDenied,
    CapsuleError,
    ConflictIgnorable,
    NotAuthenticatedError,
    NotFoundError,
    PartialWriteError,
    ResolutionError,
    TransientIOError,
    ValidationError,
)
from .gate import Clock, ManualClock, SystemClock, is_unlocked, lock_message, time_until_unlock
from .media import MediaResolver, build_media_path, classify_media
from .models import (
    AccessDescriptor,
    Entry,
    Group,
    MediaKind,
    Membership,
    Principal,
    ResolutionState,
    VisibleEntry,
    VisibleSnapshot,
)
from .registry import GroupRegistry
from .session import ReadModel, SessionContext, SessionController
from .status import OperationKind, OperationStatus, StatusBoard
from .sync import EntrySyncEngine, SyncState

__all__ = [
    "__version__",
    "CapsuleConfig",
    # Errors
    "CapsuleError",
    "ValidationError",
    "AuthorizationDenied",
    "NotAuthenticatedError",
    "NotFoundError",
    "ConflictIgnorable",
    "TransientIOError",
    "PartialWriteError",
    "ResolutionError",
    # Clock gate
    "Clock",
    "SystemClock",
    "ManualClock",
    "is_unlocked",
    "lock_message",
    "time_until_unlock",
    # Models
    "Principal",
    "Group",
    "Membership",
    "Entry",
    "AccessDescriptor",
    "MediaKind",
    "ResolutionState",
    "VisibleEntry",
    "VisibleSnapshot",
    # Components
    "MediaResolver",
    "build_media_path",
    "classify_media",
    "GroupRegistry",
    "EntrySyncEngine",
    "SyncState",
    "OperationKind",
    "OperationStatus",
    "StatusBoard",
    "SessionContext",
    "SessionController",
    "ReadModel",
]
