"""
Collaborator protocols consumed by the time capsule core.

The core does not store rows, verify credentials, deliver realtime events or
hold files. It talks to four collaborators through the protocols below; the
`stores` package ships reference implementations of each.

Row authorization contract:
    - The RowStore is the security boundary. It withholds rows the actor may
      not see, including journal entries of groups that are still locked.
    - Withheld rows are absent from query results, not flagged.

Change feed contract:
    - At-least-once delivery, no ordering across distinct entries
    - Events are reload triggers only; they carry no row payload

How to change safely:
    - Protocol changes require updating every backend in `stores`
    - Keep error types within the `errors` taxonomy
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from .models import AccessDescriptor, Principal

GROUPS = "groups"
GROUP_MEMBERS = "group_members"
JOURNAL_ENTRIES = "journal_entries"

SessionCallback = Callable[[Optional[Principal]], None]


@dataclass(frozen=True)
class Order:
    """Single-column ordering for RowStore queries."""

    column: str
    descending: bool = False


class ChangeKind(Enum):
    """Kind of row change reported by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """Notification that a row in a collection changed.

    Attributes:
        collection: Collection name
        kind: Insert, update or delete
        group_id: Group the row belongs to
        row_id: Changed row id, when known
    """

    collection: str
    kind: ChangeKind
    group_id: str
    row_id: Optional[str] = None


@dataclass(frozen=True)
class FeedFilter:
    """Selects which change events a subscription receives."""

    collection: str
    group_id: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection != self.collection:
            return False
        return self.group_id is None or event.group_id == self.group_id


@runtime_checkable
class Subscription(Protocol):
    """Handle returned by ChangeFeed.subscribe()."""

    filter: FeedFilter

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    @property
    def closed(self) -> bool:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class AuthProvider(Protocol):
    """Source of the signed-in principal."""

    @abstractmethod
    def current_principal(self) -> Optional[Principal]:
        """Return the signed-in principal, or None."""
        ...

    @abstractmethod
    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a session-change callback.

        Args:
            callback: Called with the new principal, or None on sign-out

        Returns:
            A callable that removes the registration
        """
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session."""
        ...


@runtime_checkable
class RowStore(Protocol):
    """Row storage with server-side authorization.

    Filters map column names to a value (equality) or to a list/tuple of
    values (membership).
    """

    @abstractmethod
    async def query(
        self,
        collection: str,
        actor: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> List[Dict[str, Any]]:
        """Return the rows of `collection` visible to `actor`.

        Raises:
            AuthorizationDenied: If the actor may not read the collection
            TransientIOError: On storage failure
        """
        ...

    @abstractmethod
    async def insert(
        self,
        collection: str,
        actor: str,
        record: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Insert a record and return the stored row.

        Raises:
            AuthorizationDenied: If the actor may not write the row
            ConflictIgnorable: On unique constraint violation
            NotFoundError: If a referenced group does not exist
            TransientIOError: On storage failure
        """
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Realtime change notifications."""

    @abstractmethod
    def subscribe(self, filter: FeedFilter) -> Subscription:
        ...

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """File storage that hands out time-limited access descriptors."""

    @abstractmethod
    async def issue_access_descriptor(self, path: str, ttl: int) -> AccessDescriptor:
        """Issue a display URL for `path` valid for `ttl` seconds.

        Raises:
            ResolutionError: If the path is invalid or access is denied
            TransientIOError: On backend failure
        """
        ...

    @abstractmethod
    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        """Store `data` at `path`. Existing objects are never overwritten."""
        ...
