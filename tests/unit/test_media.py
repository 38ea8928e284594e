"""
Unit tests for media reference resolution.

Tests cover:
- Concurrent request coalescing
- Descriptor caching and expiry
- Failures never cached
- Batch resolution with group scoping
- Media classification and upload paths
"""

import asyncio
from datetime import timedelta

import pytest

from capsule.capsule_core.errors import ResolutionError, TransientIOError, ValidationError
from capsule.capsule_core.gate import ManualClock
from capsule.capsule_core.media import MediaResolver, build_media_path, classify_media
from capsule.capsule_core.models import AccessDescriptor, MediaKind
from capsule.capsule_core.stores.memory_objects import InMemoryObjectStore
from tests.helpers import T0


class TestMediaResolver:
    """Tests for MediaResolver."""

    @pytest.fixture
    def clock(self):
        return ManualClock(T0)

    @pytest.fixture
    def objects(self, clock):
        store = InMemoryObjectStore(clock=clock)
        store.put("g1/a-photo.png", b"png")
        store.put("g1/b-clip.mp4", b"mp4")
        store.put("g2/c-photo.jpg", b"jpg")
        return store

    @pytest.fixture
    def resolver(self, objects, clock):
        return MediaResolver(objects, clock=clock, ttl_seconds=600, expiry_skew_seconds=5)

    @pytest.mark.asyncio
    async def test_resolve_issues_descriptor(self, resolver, objects):
        """Resolution returns a descriptor expiring after the TTL."""
        descriptor = await resolver.resolve("g1/a-photo.png")

        assert descriptor.reference == "g1/a-photo.png"
        assert descriptor.url.startswith("memory://entries/g1/a-photo.png")
        assert descriptor.expires_at == T0 + timedelta(seconds=600)
        assert objects.issue_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_issuance(self, resolver, objects):
        """Concurrent resolutions of one reference issue once."""
        objects.issue_delay = 0.02

        results = await asyncio.gather(*(resolver.resolve("g1/a-photo.png") for _ in range(5)))

        assert objects.issue_calls == 1
        assert all(r is results[0] for r in results)
        assert resolver.issued_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_failures_share_one_issuance(self, resolver, objects):
        """Concurrent resolutions of a denied reference share one failure."""
        objects.denied.add("g1/a-photo.png")
        objects.issue_delay = 0.02

        results = await asyncio.gather(
            *(resolver.resolve("g1/a-photo.png") for _ in range(5)),
            return_exceptions=True,
        )

        assert objects.issue_calls == 1
        assert isinstance(results[0], ResolutionError)
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_cached_descriptor_reused(self, resolver, objects):
        first = await resolver.resolve("g1/a-photo.png")
        second = await resolver.resolve("g1/a-photo.png")

        assert second is first
        assert objects.issue_calls == 1

    @pytest.mark.asyncio
    async def test_reissued_near_expiry(self, resolver, objects, clock):
        """Descriptors within the skew of expiry are re-issued."""
        first = await resolver.resolve("g1/a-photo.png")

        clock.advance(seconds=594)
        assert await resolver.resolve("g1/a-photo.png") is first
        assert objects.issue_calls == 1

        clock.advance(seconds=2)
        renewed = await resolver.resolve("g1/a-photo.png")
        assert renewed is not first
        assert renewed.expires_at == clock.now() + timedelta(seconds=600)
        assert objects.issue_calls == 2

    @pytest.mark.asyncio
    async def test_failure_not_cached(self, resolver, objects):
        """A denied reference is retried on the next request."""
        objects.denied.add("g1/a-photo.png")
        with pytest.raises(ResolutionError):
            await resolver.resolve("g1/a-photo.png")
        assert resolver.cached("g1/a-photo.png") is None

        objects.denied.clear()
        descriptor = await resolver.resolve("g1/a-photo.png")
        assert isinstance(descriptor, AccessDescriptor)
        assert objects.issue_calls == 2

    @pytest.mark.asyncio
    async def test_backend_failure_becomes_resolution_error(self, resolver, objects):
        objects.issue_failures["g1/a-photo.png"] = TransientIOError("timeout", operation="presign")

        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve("g1/a-photo.png")

        assert exc_info.value.reference == "g1/a-photo.png"
        assert "timeout" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_missing_object_unresolvable(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve("g1/never-uploaded.png")
        assert exc_info.value.reason == "object not found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reference",
        ["", "   ", "https://cdn.example.com/a.png", "/g1/a.png", "a.png"],
    )
    async def test_invalid_references_rejected_without_issuance(self, resolver, objects, reference):
        with pytest.raises(ResolutionError):
            await resolver.resolve(reference)
        assert objects.issue_calls == 0

    @pytest.mark.asyncio
    async def test_resolve_all_mixed_outcomes(self, resolver, objects):
        """Batch resolution collapses duplicates and reports failures per reference."""
        objects.denied.add("g1/b-clip.mp4")

        results = await resolver.resolve_all(
            ["g1/a-photo.png", "g1/a-photo.png", "g1/b-clip.mp4", None, "", "g2/c-photo.jpg"],
            group_id="g1",
        )

        assert set(results) == {"g1/a-photo.png", "g1/b-clip.mp4", "g2/c-photo.jpg"}
        assert isinstance(results["g1/a-photo.png"], AccessDescriptor)
        assert isinstance(results["g1/b-clip.mp4"], ResolutionError)
        assert isinstance(results["g2/c-photo.jpg"], ResolutionError)
        assert objects.issue_calls_by_path["g1/a-photo.png"] == 1
        assert objects.issue_calls_by_path["g2/c-photo.jpg"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_becomes_resolution_error(self, resolver, objects):
        """A non-core exception from the store fails only its own reference."""
        objects.issue_failures["g1/b-clip.mp4"] = asyncio.TimeoutError()

        results = await resolver.resolve_all(["g1/a-photo.png", "g1/b-clip.mp4"])

        assert isinstance(results["g1/a-photo.png"], AccessDescriptor)
        assert isinstance(results["g1/b-clip.mp4"], ResolutionError)
        assert results["g1/b-clip.mp4"].reason == "TimeoutError"
        assert resolver.cached("g1/b-clip.mp4") is None

    @pytest.mark.asyncio
    async def test_resolve_all_only_issues_uncached(self, resolver, objects):
        await resolver.resolve("g1/a-photo.png")

        await resolver.resolve_all(["g1/a-photo.png", "g1/b-clip.mp4"])

        assert objects.issue_calls_by_path["g1/a-photo.png"] == 1
        assert objects.issue_calls_by_path["g1/b-clip.mp4"] == 1

    @pytest.mark.asyncio
    async def test_clear_drops_cache(self, resolver, objects):
        await resolver.resolve("g1/a-photo.png")
        resolver.clear()

        assert resolver.cached("g1/a-photo.png") is None
        await resolver.resolve("g1/a-photo.png")
        assert objects.issue_calls == 2

    @pytest.mark.asyncio
    async def test_issuance_finishing_after_clear_not_cached(self, resolver, objects):
        """A descriptor issued across clear() is returned but not kept."""
        objects.issue_delay = 0.05
        pending = asyncio.ensure_future(resolver.resolve("g1/a-photo.png"))
        await asyncio.sleep(0.01)

        resolver.clear()
        descriptor = await pending

        assert isinstance(descriptor, AccessDescriptor)
        assert resolver.cached("g1/a-photo.png") is None


class TestMediaHelpers:
    """Tests for classify_media and build_media_path."""

    @pytest.mark.parametrize(
        "reference,kind",
        [
            ("g1/x-photo.PNG", MediaKind.IMAGE),
            ("g1/x-photo.jpeg", MediaKind.IMAGE),
            ("g1/x-clip.mp4", MediaKind.VIDEO),
            ("g1/x-clip.webm", MediaKind.VIDEO),
            ("g1/x-notes.pdf", MediaKind.OTHER),
            ("g1/x-noext", MediaKind.OTHER),
            (None, MediaKind.OTHER),
        ],
    )
    def test_classify_media(self, reference, kind):
        assert classify_media(reference) == kind

    def test_build_media_path_prefixes_group(self):
        path = build_media_path("g1", "holiday.jpg")
        group, name = path.split("/", 1)
        assert group == "g1"
        assert name.endswith("-holiday.jpg")
        assert len(name) == len("holiday.jpg") + 37

    def test_build_media_path_unique(self):
        assert build_media_path("g1", "a.png") != build_media_path("g1", "a.png")

    def test_build_media_path_strips_directories(self):
        assert build_media_path("g1", "C:\\Users\\me\\a.png").endswith("-a.png")
        assert build_media_path("g1", "/tmp/b.png").endswith("-b.png")

    @pytest.mark.parametrize("group_id,filename", [("", "a.png"), ("  ", "a.png"), ("g1", ""), ("g1", "dir/")])
    def test_build_media_path_requires_group_and_name(self, group_id, filename):
        with pytest.raises(ValidationError):
            build_media_path(group_id, filename)
