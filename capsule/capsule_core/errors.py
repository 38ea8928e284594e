"""
Error types for the time capsule core.

This module defines every exception raised by the core and its reference
backends:
- CapsuleError: Base exception
- ValidationError: Missing or malformed user input (no side effects happened)
- AuthorizationDenied: The access-control substrate refused a read or write
- NotAuthenticatedError: An operation needs a signed-in principal
- NotFoundError: A referenced row does not exist
- ConflictIgnorable: Duplicate insert that callers may treat as success
- TransientIOError: Storage or network failure, safe to resubmit
- PartialWriteError: A multi-step write stopped halfway, leaving an orphan
- ResolutionError: A media reference could not be turned into a URL

Invariants:
    - All errors inherit from CapsuleError
    - Errors carry a stable code for programmatic handling
    - Errors never include signed URLs or credentials in their details
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CapsuleError(Exception):
    """Base exception for all time capsule errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CAPSULE_ERROR"
        self.details = details or {}


class ValidationError(CapsuleError):
    """User input failed validation.

    Raised when:
    - Group name or unlock time is missing or malformed
    - Entry text is blank
    - No active group is selected for an entry operation

    Raised before any storage call, so nothing was written.
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class AuthorizationDenied(CapsuleError):
    """Access denied by the authorization substrate.

    Surfaced verbatim and never retried automatically.
    """

    def __init__(
        self,
        message: str,
        actor: Optional[str] = None,
        resource: Optional[str] = None,
        code: str = "ACCESS_DENIED",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"actor": actor, "resource": resource},
        )
        self.actor = actor
        self.resource = resource


class NotAuthenticatedError(AuthorizationDenied):
    """No principal is signed in."""

    def __init__(self, message: str = "Not signed in") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class NotFoundError(CapsuleError):
    """Resource not found.

    Raised when:
    - Joining a group id that does not exist
    - Writing an entry into an unknown group
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictIgnorable(CapsuleError):
    """Unique constraint violation that is safe to treat as success.

    The only producer is a duplicate membership insert.
    """

    def __init__(self, message: str, collection: str) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"collection": collection},
        )
        self.collection = collection


class TransientIOError(CapsuleError):
    """Storage, network or object-store failure.

    Reads keep whatever state was displayed before. Writes were not applied
    and are not retried; the user resubmits.
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_IO",
            details={"operation": operation},
        )
        self.operation = operation


class PartialWriteError(CapsuleError):
    """A two-step write failed after its first step succeeded.

    The resource created by the first step is left in place.

    Attributes:
        orphan_kind: What was left behind ("group" or "object")
        orphan_id: Identifier of the orphaned resource
    """

    def __init__(
        self,
        message: str,
        orphan_kind: str,
        orphan_id: str,
    ) -> None:
        super().__init__(
            message,
            code="PARTIAL_WRITE",
            details={"orphan_kind": orphan_kind, "orphan_id": orphan_id},
        )
        self.orphan_kind = orphan_kind
        self.orphan_id = orphan_id


class ResolutionError(CapsuleError):
    """A media reference is invalid or access to it was denied.

    Consumers render the media item as unresolved instead of failing.
    """

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(
            f"Cannot resolve media reference '{reference}': {reason}",
            code="RESOLUTION_ERROR",
            details={"reference": reference, "reason": reason},
        )
        self.reference = reference
        self.reason = reason
