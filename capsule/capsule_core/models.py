"""
Data model for the time capsule core.

Rows cross the storage boundary as plain dictionaries keyed by the column
names of the `groups`, `group_members` and `journal_entries` collections.
Timestamps are stored as Unix milliseconds and exposed as timezone-aware
UTC datetimes.

Invariants:
    - Group.unlock_at never changes after creation
    - Entries are immutable; text and media_reference are both optional
    - A media reference is a relative path prefixed with its group id
    - VisibleSnapshot entries are ordered newest first
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def to_millis(value: datetime) -> int:
    """Convert an aware datetime to Unix milliseconds."""
    if value.tzinfo is None:
        raise ValueError("naive datetime cannot be stored; attach a timezone")
    return int(value.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Principal:
    """Signed-in identity.

    Attributes:
        id: Stable user identifier
        label: Display label (typically an email address)
    """

    id: str
    label: str = ""

    def __str__(self) -> str:
        return self.label or self.id


@dataclass(frozen=True)
class Group:
    """A named capsule with one shared unlock time.

    Attributes:
        id: Unique, stable group identifier (UUID string)
        name: Display name
        unlock_at: Instant after which entries become visible
        created_at: Creation instant
        created_by: Principal id of the creator
    """

    id: str
    name: str
    unlock_at: datetime
    created_at: datetime
    created_by: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Group:
        """Create from a `groups` row."""
        return cls(
            id=row["id"],
            name=row["name"],
            unlock_at=from_millis(row["unlock_at"]),
            created_at=from_millis(row["created_at"]),
            created_by=row.get("created_by"),
        )


@dataclass(frozen=True)
class Membership:
    """A (group, user) pair; unique per pair."""

    group_id: str
    user_id: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Membership:
        return cls(group_id=row["group_id"], user_id=row["user_id"])


@dataclass(frozen=True)
class Entry:
    """A journal entry.

    Attributes:
        id: Unique entry identifier
        group_id: Owning group
        author_id: Principal id of the author
        created_at: Creation instant (millisecond precision)
        text: Optional entry text
        media_reference: Optional storage path of an uploaded file
    """

    id: str
    group_id: str
    author_id: str
    created_at: datetime
    text: str | None = None
    media_reference: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.text)

    @property
    def has_media(self) -> bool:
        return bool(self.media_reference)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Entry:
        """Create from a `journal_entries` row."""
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            author_id=row["user_id"],
            created_at=from_millis(row["created_at"]),
            text=row.get("entry_text"),
            media_reference=row.get("media_url"),
        )


@dataclass(frozen=True)
class AccessDescriptor:
    """Time-limited display URL for a media reference.

    Never persisted. The URL is a bearer credential and is not logged.
    """

    reference: str
    url: str = field(repr=False)
    expires_at: datetime

    def is_fresh(self, now: datetime, skew_seconds: float = 0.0) -> bool:
        """Whether the URL is still usable at `now`, minus a safety skew."""
        return (self.expires_at - now).total_seconds() > skew_seconds


class MediaKind(Enum):
    """Presentation hint derived from the media file extension."""

    IMAGE = "image"
    VIDEO = "video"
    OTHER = "other"


class ResolutionState(Enum):
    """Media resolution state of one visible entry."""

    NONE = "none"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class VisibleEntry:
    """An entry as presented, tagged with its media resolution state.

    Attributes:
        entry: The underlying entry
        resolution: NONE when there is no media reference
        url: Display URL when resolved, otherwise None
    """

    entry: Entry
    resolution: ResolutionState
    url: str | None = field(default=None, repr=False)

    @property
    def display_media(self) -> str | None:
        """URL when resolved; the raw reference as a placeholder otherwise."""
        if self.resolution is ResolutionState.RESOLVED:
            return self.url
        return self.entry.media_reference


@dataclass(frozen=True)
class VisibleSnapshot:
    """Ordered, resolved view of one group's entries."""

    group_id: str
    entries: tuple[VisibleEntry, ...] = ()
    loaded_at: datetime | None = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def entry_ids(self) -> list[str]:
        return [item.entry.id for item in self.entries]

    def text_entries(self) -> list[VisibleEntry]:
        return [item for item in self.entries if item.entry.has_text]

    def media_entries(self) -> list[VisibleEntry]:
        return [item for item in self.entries if item.entry.has_media]
