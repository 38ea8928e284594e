"""
Membership and group registry.

Resolves which groups a principal belongs to and creates or joins groups.
A bare group id, passed between members out of band, is the only sharing
mechanism, so joining is idempotent and tolerant of re-submission.

Invariants:
    - list_groups_for() returns groups newest-created first
    - The creator of a group is also its first member
    - A duplicate membership insert is success, never an error

Partial writes:
    create_group() inserts the group row and then the creator's membership.
    If the second insert fails the group row stays behind and the caller
    receives a PartialWriteError naming it. There is no rollback.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Union

from .errors import CapsuleError, ConflictIgnorable, PartialWriteError
from .gate import Clock, SystemClock
from .models import Group, Membership, Principal, to_millis
from .ports import GROUP_MEMBERS, GROUPS, Order, RowStore
from .requests import CreateGroupRequest, JoinGroupRequest, parse_request

logger = logging.getLogger(__name__)


class GroupRegistry:
    """Group and membership operations for a principal.

    Example:
        >>> registry = GroupRegistry(rows)
        >>> group = await registry.create_group(alice, "Birthday", "2027-01-01T00:00")
        >>> await registry.join_group(bob, group.id)
        >>> await registry.list_groups_for(bob)
    """

    def __init__(self, rows: RowStore, clock: Optional[Clock] = None) -> None:
        self._rows = rows
        self._clock = clock or SystemClock()

    async def list_groups_for(self, principal: Principal) -> List[Group]:
        """List the principal's groups, newest-created first.

        Returns:
            Groups, or an empty list when the principal has no memberships
        """
        memberships = await self._rows.query(
            GROUP_MEMBERS,
            principal.id,
            filters={"user_id": principal.id},
        )
        ids = list(dict.fromkeys(Membership.from_row(row).group_id for row in memberships))
        if not ids:
            return []

        rows = await self._rows.query(
            GROUPS,
            principal.id,
            filters={"id": ids},
            order=Order("created_at", descending=True),
        )
        groups = [Group.from_row(row) for row in rows]
        # Newest first regardless of backend ordering
        groups.sort(key=lambda g: g.created_at, reverse=True)
        return groups

    async def get_group(self, principal: Principal, group_id: str) -> Optional[Group]:
        """Fetch one group visible to the principal."""
        rows = await self._rows.query(GROUPS, principal.id, filters={"id": group_id})
        return Group.from_row(rows[0]) if rows else None

    async def create_group(
        self,
        principal: Principal,
        name: str,
        unlock_at: Union[datetime, str],
    ) -> Group:
        """Create a group and make the creator its first member.

        Args:
            principal: Creator
            name: Group name (required, non-blank)
            unlock_at: Unlock instant or ISO-8601 string; past values allowed

        Returns:
            The created group

        Raises:
            ValidationError: If name or unlock time is missing or malformed
            PartialWriteError: If the group was created but membership failed
        """
        request = parse_request(CreateGroupRequest, name=name, unlock_at=unlock_at)

        now = self._clock.now()
        record = {
            "id": str(uuid.uuid4()),
            "name": request.name,
            "unlock_at": to_millis(request.unlock_at),
            "created_at": to_millis(now),
            "created_by": principal.id,
        }
        row = await self._rows.insert(GROUPS, principal.id, record)
        group = Group.from_row(row)

        try:
            await self._rows.insert(
                GROUP_MEMBERS,
                principal.id,
                {"group_id": group.id, "user_id": principal.id},
            )
        except ConflictIgnorable:
            pass
        except CapsuleError as e:
            logger.error(
                "Group created but creator membership failed",
                extra={"group_id": group.id, "actor": principal.id, "code": e.code},
            )
            raise PartialWriteError(
                f"Group '{group.name}' was created but joining it failed: {e.message}",
                orphan_kind="group",
                orphan_id=group.id,
            ) from e

        logger.info(
            "Group created",
            extra={"group_id": group.id, "actor": principal.id},
        )
        return group

    async def join_group(self, principal: Principal, group_id: str) -> None:
        """Join a group by id. Joining twice is not an error.

        Raises:
            ValidationError: If the group id is blank
            NotFoundError: If the group does not exist
            AuthorizationDenied: If the store refuses the membership
        """
        request = parse_request(JoinGroupRequest, group_id=group_id)
        try:
            await self._rows.insert(
                GROUP_MEMBERS,
                principal.id,
                {"group_id": request.group_id, "user_id": principal.id},
            )
        except ConflictIgnorable:
            logger.debug(
                "Already a member, join ignored",
                extra={"group_id": request.group_id, "actor": principal.id},
            )
            return

        logger.info(
            "Joined group",
            extra={"group_id": request.group_id, "actor": principal.id},
        )
