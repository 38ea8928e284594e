"""
Per-operation status channel.

Each class of user-visible operation has one status slot: whether it is
running, and how the last run ended. Errors land here instead of escaping
into the presentation layer.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Dict, Optional

from .errors import CapsuleError, ConflictIgnorable

logger = logging.getLogger(__name__)


class OperationKind(Enum):
    """Operation classes reported to the presentation layer."""

    GROUPS = "groups"
    ENTRY = "entry"
    MEDIA = "media"
    SYNC = "sync"


@dataclass(frozen=True)
class OperationStatus:
    """Status of one operation class.

    Attributes:
        pending: Number of running operations of this kind
        error: Error of the last failed run, cleared by the next success
        message: Human readable outcome of the last run
    """

    pending: int = 0
    error: Optional[Exception] = None
    message: str = ""

    @property
    def busy(self) -> bool:
        return self.pending > 0

    @property
    def error_code(self) -> Optional[str]:
        if isinstance(self.error, CapsuleError):
            return self.error.code
        return None


class StatusBoard:
    """Tracks OperationStatus per OperationKind."""

    def __init__(self) -> None:
        self._statuses: Dict[OperationKind, OperationStatus] = {
            kind: OperationStatus() for kind in OperationKind
        }

    def get(self, kind: OperationKind) -> OperationStatus:
        return self._statuses[kind]

    def snapshot(self) -> Dict[OperationKind, OperationStatus]:
        return dict(self._statuses)

    def succeed(self, kind: OperationKind, message: str = "") -> None:
        self._statuses[kind] = replace(self._statuses[kind], error=None, message=message)

    def fail(self, kind: OperationKind, error: Exception) -> None:
        if isinstance(error, ConflictIgnorable):
            return
        message = error.message if isinstance(error, CapsuleError) else str(error)
        self._statuses[kind] = replace(self._statuses[kind], error=error, message=message)

    def reset(self) -> None:
        for kind in OperationKind:
            self._statuses[kind] = OperationStatus()

    @asynccontextmanager
    async def track(self, kind: OperationKind, success_message: str = "") -> AsyncIterator[None]:
        """Mark `kind` pending for the duration of the block.

        Errors are recorded and re-raised.

        Example:
            >>> async with board.track(OperationKind.ENTRY, "Entry saved"):
            ...     await writer.submit_text(...)
        """
        self._adjust_pending(kind, 1)
        try:
            yield
        except Exception as e:
            self.fail(kind, e)
            logger.info(
                f"{kind.value} operation failed: {e}",
                extra={"operation": kind.value, "error_type": type(e).__name__},
            )
            raise
        else:
            self.succeed(kind, success_message)
        finally:
            self._adjust_pending(kind, -1)

    def _adjust_pending(self, kind: OperationKind, delta: int) -> None:
        current = self._statuses[kind]
        self._statuses[kind] = replace(current, pending=max(0, current.pending + delta))
