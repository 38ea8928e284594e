"""
Media reference resolution.

Entries reference uploaded files by opaque storage path. Every view needs a
time-limited display URL for each path; the MediaResolver issues those URLs
through the ObjectStore while:
- coalescing concurrent requests for the same reference into one issuance
- caching successful descriptors until they are about to expire
- never caching failures, so a failed reference is retried on next request

The cache is shared by all groups of one session. References are prefixed
with their group id, so keys never collide across groups; resolve_all can
additionally refuse references that do not belong to the requesting group.

Invariants:
    - At most one issuance in flight per reference
    - A cached descriptor is handed out only while fresh (expiry minus skew)
    - clear() guarantees no descriptor issued before it is cached after it
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Iterable, Optional, Union

from .errors import CapsuleError, ResolutionError, ValidationError
from .gate import Clock, SystemClock
from .models import AccessDescriptor, MediaKind
from .ports import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp", "bmp", "avif"})
VIDEO_EXTENSIONS = frozenset({"mp4", "webm", "ogg", "mov", "m4v"})

ResolveResult = Union[AccessDescriptor, ResolutionError]


def classify_media(reference: Optional[str]) -> MediaKind:
    """Classify a media reference by file extension.

    Args:
        reference: Storage path (may be None)

    Returns:
        IMAGE, VIDEO or OTHER
    """
    name = (reference or "").rsplit("/", 1)[-1].lower()
    if "." not in name:
        return MediaKind.OTHER
    ext = name.rsplit(".", 1)[-1]
    if ext in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return MediaKind.OTHER


def build_media_path(group_id: str, filename: str) -> str:
    """Build the storage path for a new upload: `<group_id>/<uuid>-<name>`.

    Raises:
        ValidationError: If the group id or file name is blank
    """
    if not group_id or not group_id.strip():
        raise ValidationError("A group is required to upload media", field_name="group_id")
    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if not base:
        raise ValidationError("A file name is required", field_name="filename")
    return f"{group_id}/{uuid.uuid4()}-{base}"


def group_of(reference: str) -> str:
    """Group id prefix of a media reference."""
    return reference.split("/", 1)[0]


def _check_reference(reference: str) -> None:
    if not reference or not reference.strip():
        raise ResolutionError(reference or "", "empty reference")
    if "://" in reference:
        raise ResolutionError(reference, "absolute URLs are not media references")
    if reference.startswith("/") or "/" not in reference:
        raise ResolutionError(reference, "reference must be a group-scoped relative path")


class MediaResolver:
    """Resolves media references to access descriptors.

    Example:
        >>> resolver = MediaResolver(object_store)
        >>> descriptor = await resolver.resolve("g1/abc-photo.png")
        >>> results = await resolver.resolve_all(["g1/a.png", "g1/b.mp4"])
    """

    def __init__(
        self,
        objects: ObjectStore,
        clock: Optional[Clock] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        expiry_skew_seconds: float = 5.0,
    ) -> None:
        """Initialize the resolver.

        Args:
            objects: Object store issuing descriptors
            clock: Clock used for freshness checks
            ttl_seconds: Default lifetime requested per descriptor
            expiry_skew_seconds: Treat descriptors as stale this long before expiry
        """
        self._objects = objects
        self._clock = clock or SystemClock()
        self._ttl = ttl_seconds
        self._skew = expiry_skew_seconds
        self._cache: Dict[str, AccessDescriptor] = {}
        self._inflight: Dict[str, asyncio.Task[AccessDescriptor]] = {}
        self._generation = 0
        self.issued_count = 0

    def cached(self, reference: str) -> Optional[AccessDescriptor]:
        """Return the fresh cached descriptor for `reference`, if any."""
        descriptor = self._cache.get(reference)
        if descriptor is None:
            return None
        if descriptor.is_fresh(self._clock.now(), self._skew):
            return descriptor
        del self._cache[reference]
        return None

    def clear(self) -> None:
        """Forget every cached descriptor and detach in-flight issuances."""
        self._generation += 1
        self._cache.clear()
        self._inflight.clear()
        logger.debug("Media resolver cache cleared")

    async def resolve(
        self,
        reference: str,
        ttl: Optional[int] = None,
    ) -> AccessDescriptor:
        """Resolve one reference.

        Concurrent callers for the same uncached reference share a single
        issuance and observe the same result.

        Raises:
            ResolutionError: If the reference is invalid or denied
        """
        _check_reference(reference)

        hit = self.cached(reference)
        if hit is not None:
            return hit

        task = self._inflight.get(reference)
        if task is None:
            task = asyncio.ensure_future(
                self._issue(reference, ttl or self._ttl, self._generation)
            )
            self._inflight[reference] = task
            task.add_done_callback(lambda t, ref=reference: self._finish(ref, t))

        # Shielded so one cancelled waiter does not cancel the shared issuance
        return await asyncio.shield(task)

    async def resolve_all(
        self,
        references: Iterable[Optional[str]],
        group_id: Optional[str] = None,
    ) -> Dict[str, ResolveResult]:
        """Resolve many references at once.

        Only references that are not cached and fresh are issued; duplicates
        are collapsed. Failures are returned in the mapping, not raised.

        Args:
            references: Media references (None and empty values are skipped)
            group_id: When given, references outside this group are refused

        Returns:
            Mapping of every distinct reference to a descriptor or ResolutionError
        """
        distinct = list(dict.fromkeys(ref for ref in references if ref))
        results: Dict[str, ResolveResult] = {}
        pending = []

        for ref in distinct:
            if group_id is not None and group_of(ref) != group_id:
                results[ref] = ResolutionError(ref, "reference belongs to another group")
                continue
            hit = self.cached(ref)
            if hit is not None:
                results[ref] = hit
            else:
                pending.append(ref)

        if pending:
            outcomes = await asyncio.gather(
                *(self.resolve(ref) for ref in pending),
                return_exceptions=True,
            )
            for ref, outcome in zip(pending, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException) and not isinstance(outcome, ResolutionError):
                    outcome = ResolutionError(ref, str(outcome) or type(outcome).__name__)
                results[ref] = outcome

        logger.debug(
            "Resolved media references",
            extra={
                "requested": len(distinct),
                "issued": len(pending),
                "failed": sum(1 for r in results.values() if isinstance(r, ResolutionError)),
            },
        )
        return results

    async def _issue(self, reference: str, ttl: int, generation: int) -> AccessDescriptor:
        self.issued_count += 1
        try:
            descriptor = await self._objects.issue_access_descriptor(reference, ttl)
        except ResolutionError:
            logger.info("Media reference not resolvable", extra={"reference": reference})
            raise
        except CapsuleError as e:
            logger.warning(
                f"Access descriptor issuance failed: {e.message}",
                extra={"reference": reference, "code": e.code},
            )
            raise ResolutionError(reference, e.message) from e
        except Exception as e:
            logger.error(
                f"Access descriptor issuance crashed: {e!r}",
                extra={"reference": reference},
            )
            raise ResolutionError(reference, str(e) or type(e).__name__) from e

        if generation == self._generation:
            self._cache[reference] = descriptor
        return descriptor

    def _finish(self, reference: str, task: asyncio.Task[AccessDescriptor]) -> None:
        if self._inflight.get(reference) is task:
            del self._inflight[reference]
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter went away
            task.exception()
