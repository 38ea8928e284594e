"""
Entry submission: text entries and media uploads.

Writes are not applied locally. After a successful insert the caller
refreshes the sync engine (the change feed would trigger the same reload a
moment later); after a failure nothing changes and the user resubmits.

Media upload is two steps: store the object, then insert the row that
references it. If the row insert fails the object stays in storage and a
PartialWriteError names its path.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from .errors import CapsuleError, PartialWriteError
from .gate import Clock, SystemClock
from .media import build_media_path
from .models import Entry, Principal, to_millis
from .ports import JOURNAL_ENTRIES, ObjectStore, RowStore
from .requests import TextEntryRequest, parse_request

logger = logging.getLogger(__name__)


class EntryWriter:
    """Creates journal entries for a principal."""

    def __init__(
        self,
        rows: RowStore,
        objects: ObjectStore,
        clock: Optional[Clock] = None,
    ) -> None:
        self._rows = rows
        self._objects = objects
        self._clock = clock or SystemClock()

    async def submit_text(self, principal: Principal, group_id: str, text: str) -> Entry:
        """Insert a text entry.

        Raises:
            ValidationError: If the group id or text is blank
            AuthorizationDenied: If the principal is not a member
            TransientIOError: On storage failure
        """
        request = parse_request(TextEntryRequest, group_id=group_id, text=text)
        row = await self._rows.insert(
            JOURNAL_ENTRIES,
            principal.id,
            self._record(principal, request.group_id, entry_text=request.text),
        )
        logger.info(
            "Text entry saved",
            extra={"group_id": request.group_id, "entry_id": row["id"], "actor": principal.id},
        )
        return Entry.from_row(row)

    async def upload_media(
        self,
        principal: Principal,
        group_id: str,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> Entry:
        """Upload a file and insert the entry that references it.

        Args:
            principal: Author
            group_id: Target group; the storage path is prefixed with it
            filename: Original file name (directories are stripped)
            data: File content
            content_type: Optional MIME type

        Returns:
            The created entry (no text, media_reference set)

        Raises:
            ValidationError: If the group id or file name is blank
            PartialWriteError: If the object was stored but the row insert failed
        """
        path = build_media_path(group_id, filename)
        await self._objects.upload(path, data, content_type)

        try:
            row = await self._rows.insert(
                JOURNAL_ENTRIES,
                principal.id,
                self._record(principal, group_id, media_url=path),
            )
        except CapsuleError as e:
            logger.error(
                "Media stored but entry insert failed",
                extra={"group_id": group_id, "actor": principal.id, "code": e.code},
            )
            raise PartialWriteError(
                f"File uploaded but saving the entry failed: {e.message}",
                orphan_kind="object",
                orphan_id=path,
            ) from e

        logger.info(
            "Media entry saved",
            extra={"group_id": group_id, "entry_id": row["id"], "bytes": len(data)},
        )
        return Entry.from_row(row)

    def _record(
        self,
        principal: Principal,
        group_id: str,
        entry_text: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> dict:
        return {
            "id": str(uuid.uuid4()),
            "group_id": group_id,
            "user_id": principal.id,
            "created_at": to_millis(self._clock.now()),
            "entry_text": entry_text,
            "media_url": media_url,
        }
