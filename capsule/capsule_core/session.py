"""
Session controller.

Top-level orchestrator of the core. It owns:
- the current principal, following the auth provider's session changes
- the principal's group list and the single active group selection
- the one EntrySyncEngine of the active group (it alone builds and
  discards engines)
- the per-operation status board
- the shared media resolver (cleared on sign-out)

The presentation layer reads one ReadModel per render. The unlock gate is
evaluated inside read_model(), on every call.

Invariants:
    - At most one engine exists; the old one is closed before a new one starts
    - While the active group is locked, the read model carries no entries
    - Sign-out clears principal, groups, selection, engine and media cache
    - No error escapes a background task; all land in the status board

How to change safely:
    - Keep collaborators flowing in through SessionContext; lower components
      must not reach for process-wide state
    - Any new operation class needs an OperationKind
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple, Union

from .config import MediaConfig
from .entries import EntryWriter
from .errors import CapsuleError, NotAuthenticatedError, NotFoundError, ValidationError
from .gate import Clock, SystemClock, is_unlocked, lock_message
from .media import MediaResolver
from .models import Entry, Group, Principal, VisibleEntry, VisibleSnapshot
from .ports import AuthProvider, ChangeFeed, ObjectStore, RowStore
from .prompts import random_prompt
from .registry import GroupRegistry
from .status import OperationKind, OperationStatus, StatusBoard
from .sync import EntrySyncEngine, SyncState

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Collaborators handed to a SessionController.

    Attributes:
        auth: Session source
        rows: Row storage
        objects: Media object storage
        feed: Change feed (None disables realtime reloads)
        clock: Clock for gate checks and timestamps
        media: Media URL lifetime settings
    """

    auth: AuthProvider
    rows: RowStore
    objects: ObjectStore
    feed: Optional[ChangeFeed] = None
    clock: Clock = field(default_factory=SystemClock)
    media: MediaConfig = field(default_factory=MediaConfig)


@dataclass(frozen=True)
class ReadModel:
    """Everything the presentation layer needs for one render."""

    principal: Optional[Principal]
    groups: Tuple[Group, ...]
    active_group_id: Optional[str]
    active_group: Optional[Group]
    unlocked: bool
    lock_message: Optional[str]
    entries: Tuple[VisibleEntry, ...]
    sync_state: Optional[SyncState]
    statuses: Dict[OperationKind, OperationStatus]

    @property
    def signed_in(self) -> bool:
        return self.principal is not None


class SessionController:
    """Wires auth, registry, sync engine and media resolver together.

    Example:
        >>> controller = SessionController(context)
        >>> await controller.start()
        >>> await controller.create_group("Birthday", "2027-01-01T00:00")
        >>> view = controller.read_model()
        >>> await controller.stop()
    """

    def __init__(self, context: SessionContext) -> None:
        self._ctx = context
        self.resolver = MediaResolver(
            context.objects,
            clock=context.clock,
            ttl_seconds=context.media.url_ttl_seconds,
            expiry_skew_seconds=context.media.expiry_skew_seconds,
        )
        self.registry = GroupRegistry(context.rows, clock=context.clock)
        self.writer = EntryWriter(context.rows, context.objects, clock=context.clock)
        self.status = StatusBoard()

        self.principal: Optional[Principal] = None
        self.groups: List[Group] = []
        self.active_group_id: Optional[str] = None
        self._active_group: Optional[Group] = None
        self._engine: Optional[EntrySyncEngine] = None
        self._unsubscribe_auth = None
        self._session_tasks: Set[asyncio.Task[None]] = set()

    @property
    def engine(self) -> Optional[EntrySyncEngine]:
        return self._engine

    @property
    def active_group(self) -> Optional[Group]:
        return self._active_group

    @property
    def clock(self) -> Clock:
        return self._ctx.clock

    async def start(self) -> None:
        """Follow the auth provider and apply the current session."""
        if self._unsubscribe_auth is None:
            self._unsubscribe_auth = self._ctx.auth.on_session_change(self._on_session_change)
        await self._apply_principal(self._ctx.auth.current_principal())

    async def stop(self) -> None:
        """Stop following the auth provider and tear everything down."""
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        for task in list(self._session_tasks):
            task.cancel()
        self._teardown()

    async def wait_idle(self) -> None:
        """Wait until queued session changes have been applied."""
        while self._session_tasks:
            await asyncio.gather(*list(self._session_tasks), return_exceptions=True)

    async def refresh_groups(self) -> List[Group]:
        """Reload the principal's group list."""
        principal = self._require_principal()
        async with self.status.track(OperationKind.GROUPS):
            groups = await self.registry.list_groups_for(principal)

        if self.principal is not principal:
            return groups
        self.groups = groups
        if self.active_group_id is not None:
            refreshed = self._find_group(self.active_group_id)
            if refreshed is None:
                await self.select_group(None)
            else:
                self._active_group = refreshed
        return groups

    async def select_group(self, group_id: Optional[str]) -> Optional[VisibleSnapshot]:
        """Make `group_id` the active group (None clears the selection).

        The previous engine is closed first, so none of its results can reach
        the new group's snapshot.

        Returns:
            The new group's snapshot after its initial load, or None
        """
        group_id = group_id.strip() if group_id else None
        principal = self._require_principal() if group_id else None
        self._close_engine()
        self.active_group_id = group_id
        self._active_group = None
        if not group_id or principal is None:
            return None

        group = self._find_group(group_id)
        if group is None:
            try:
                async with self.status.track(OperationKind.GROUPS):
                    group = await self.registry.get_group(principal, group_id)
                    if group is None:
                        raise NotFoundError(
                            f"Group {group_id} is not visible to you",
                            resource_type="group",
                            resource_id=group_id,
                        )
            except CapsuleError:
                if self.active_group_id == group_id:
                    self.active_group_id = None
                raise
            if self.active_group_id != group_id or self.principal is not principal:
                return None

        self._active_group = group
        engine = EntrySyncEngine(
            group,
            principal,
            self._ctx.rows,
            self._ctx.feed,
            self.resolver,
            clock=self._ctx.clock,
            on_snapshot=self._on_engine_snapshot,
            on_error=self._on_engine_error,
        )
        self._engine = engine
        logger.info("Active group selected", extra={"group_id": group_id, "actor": principal.id})
        return await engine.start()

    async def create_group(self, name: str, unlock_at: Union[datetime, str]) -> Group:
        """Create a group, refresh the list and select it."""
        principal = self._require_principal()
        async with self.status.track(OperationKind.GROUPS, "Group created"):
            group = await self.registry.create_group(principal, name, unlock_at)
            await self.refresh_groups()
        await self.select_group(group.id)
        return group

    async def join_group(self, group_id: str) -> None:
        """Join a group by id, refresh the list and select it."""
        principal = self._require_principal()
        async with self.status.track(OperationKind.GROUPS, "Joined group"):
            await self.registry.join_group(principal, group_id)
            await self.refresh_groups()
        await self.select_group(group_id)

    async def submit_entry(self, text: str) -> Entry:
        """Submit a text entry to the active group."""
        principal = self._require_principal()
        group_id = self._require_active_group()
        async with self.status.track(OperationKind.ENTRY, "Entry saved"):
            entry = await self.writer.submit_text(principal, group_id, text)
        await self._refresh_engine(group_id)
        return entry

    async def upload_media(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> Entry:
        """Upload a file as a media entry of the active group."""
        principal = self._require_principal()
        group_id = self._require_active_group()
        async with self.status.track(OperationKind.MEDIA, "File uploaded"):
            entry = await self.writer.upload_media(principal, group_id, filename, data, content_type)
        await self._refresh_engine(group_id)
        return entry

    async def sign_out(self) -> None:
        """End the session; teardown also follows from the auth callback."""
        await self._ctx.auth.sign_out()
        await self._apply_principal(None)

    def random_prompt(self) -> str:
        return random_prompt()

    def read_model(self) -> ReadModel:
        """Build one consistent view, evaluating the unlock gate now."""
        group = self._active_group
        engine = self._engine
        now = self._ctx.clock.now()
        unlocked = group is not None and is_unlocked(group.unlock_at, now)

        entries: Tuple[VisibleEntry, ...] = ()
        if engine is not None and group is not None and engine.group_id == group.id:
            if unlocked:
                self._poke_unlock(engine)
                entries = engine.visible().entries

        statuses = self.status.snapshot()
        if engine is not None and engine.reload_in_flight:
            current = statuses[OperationKind.SYNC]
            statuses[OperationKind.SYNC] = OperationStatus(
                pending=current.pending + 1, error=current.error, message=current.message
            )

        return ReadModel(
            principal=self.principal,
            groups=tuple(self.groups),
            active_group_id=self.active_group_id,
            active_group=group,
            unlocked=unlocked,
            lock_message=lock_message(group.unlock_at, now) if group is not None else None,
            entries=entries,
            sync_state=engine.state if engine is not None else None,
            statuses=statuses,
        )

    def _on_session_change(self, principal: Optional[Principal]) -> None:
        task = asyncio.ensure_future(self._apply_principal_safely(principal))
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)

    async def _apply_principal_safely(self, principal: Optional[Principal]) -> None:
        try:
            await self._apply_principal(principal)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Applying session change failed: {e}", exc_info=True)

    async def _apply_principal(self, principal: Optional[Principal]) -> None:
        if principal is None:
            if self.principal is not None:
                logger.info("Session ended", extra={"actor": self.principal.id})
            self._teardown()
            return

        if self.principal is not None and self.principal.id == principal.id:
            self.principal = principal
            return
        if self.principal is not None:
            self._teardown()

        self.principal = principal
        logger.info("Session started", extra={"actor": principal.id})
        try:
            await self.refresh_groups()
        except CapsuleError:
            # Recorded in the GROUPS status
            return

        if self.principal is principal and self.active_group_id is None and self.groups:
            try:
                await self.select_group(self.groups[0].id)
            except Exception:
                logger.warning("Initial group selection failed", exc_info=True)

    def _teardown(self) -> None:
        self._close_engine()
        self.principal = None
        self.groups = []
        self.active_group_id = None
        self._active_group = None
        self.resolver.clear()
        self.status.reset()

    def _close_engine(self) -> None:
        if self._engine is not None:
            self._engine.close()
            self._engine = None

    async def _refresh_engine(self, group_id: str) -> None:
        engine = self._engine
        if engine is not None and engine.group_id == group_id:
            await engine.refresh()

    def _on_engine_snapshot(self, snapshot: VisibleSnapshot) -> None:
        if self._engine is not None and snapshot.group_id == self._engine.group_id:
            self.status.succeed(OperationKind.SYNC)

    def _on_engine_error(self, group_id: str, error: Exception) -> None:
        if self._engine is not None and group_id == self._engine.group_id:
            self.status.fail(OperationKind.SYNC, error)

    def _poke_unlock(self, engine: EntrySyncEngine) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        engine.check_unlock()

    def _find_group(self, group_id: str) -> Optional[Group]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def _require_principal(self) -> Principal:
        if self.principal is None:
            raise NotAuthenticatedError()
        return self.principal

    def _require_active_group(self) -> str:
        if not self.active_group_id or self._active_group is None:
            raise ValidationError("Select a group first", field_name="group_id")
        return self.active_group_id
