"""
Integration tests for the session controller.

Two controllers (two members on separate devices) share one SQLite row
store, change feed and object store, with a manual clock.

Tests cover:
- Create, join, submit and upload flows
- Convergence of two devices through the change feed
- Locked groups and unlocking as the clock advances
- Switching the active group
- Sign-out teardown
- Error reporting through the status board
"""

import tempfile
from datetime import timedelta

import pytest
import pytest_asyncio

from capsule.capsule_core.config import MediaConfig
from capsule.capsule_core.errors import (
    NotAuthenticatedError,
    NotFoundError,
    PartialWriteError,
    TransientIOError,
    ValidationError,
)
from capsule.capsule_core.gate import ManualClock
from capsule.capsule_core.models import Principal, ResolutionState
from capsule.capsule_core.ports import JOURNAL_ENTRIES
from capsule.capsule_core.session import SessionContext, SessionController
from capsule.capsule_core.status import OperationKind
from capsule.capsule_core.stores.memory_auth import InMemoryAuthProvider
from capsule.capsule_core.stores.memory_feed import InMemoryChangeFeed
from capsule.capsule_core.stores.memory_objects import InMemoryObjectStore
from capsule.capsule_core.stores.sqlite_store import SqliteRowStore
from capsule.capsule_core.sync import SyncState
from tests.helpers import T0, FailingInserts, wait_until

ALICE = Principal("alice", "alice@example.com")
BOB = Principal("bob", "bob@example.com")

PAST = "2025-12-01T00:00"
FUTURE = "2026-01-01T13:00"


class TestSessionController:
    """End-to-end tests for SessionController."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def clock(self):
        return ManualClock(T0)

    @pytest.fixture
    def feed(self):
        return InMemoryChangeFeed()

    @pytest.fixture
    def rows(self, data_dir, clock, feed):
        return SqliteRowStore(f"{data_dir}/capsule.db", clock=clock, feed=feed, wal_mode=False)

    @pytest.fixture
    def objects(self, clock):
        return InMemoryObjectStore(clock=clock)

    @pytest_asyncio.fixture
    async def session(self, rows, objects, feed, clock):
        controllers = []

        async def factory(principal=ALICE, store=None):
            auth = InMemoryAuthProvider(principal)
            controller = SessionController(
                SessionContext(
                    auth=auth,
                    rows=store or rows,
                    objects=objects,
                    feed=feed,
                    clock=clock,
                    media=MediaConfig(url_ttl_seconds=600, expiry_skew_seconds=5),
                )
            )
            controllers.append(controller)
            await controller.start()
            return controller, auth

        yield factory
        for controller in controllers:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_fresh_session_has_no_groups(self, session):
        controller, _ = await session()

        model = controller.read_model()

        assert model.signed_in
        assert model.groups == ()
        assert model.active_group is None
        assert model.entries == ()

    @pytest.mark.asyncio
    async def test_create_group_selects_it(self, session):
        controller, _ = await session()

        group = await controller.create_group("Birthday", PAST)
        model = controller.read_model()

        assert model.active_group_id == group.id
        assert [g.id for g in model.groups] == [group.id]
        assert model.unlocked
        assert model.lock_message is None
        assert model.sync_state is SyncState.SYNCED
        assert model.statuses[OperationKind.GROUPS].message == "Group created"

    @pytest.mark.asyncio
    async def test_submitted_entry_visible(self, session):
        controller, _ = await session()
        await controller.create_group("Birthday", PAST)

        await controller.submit_entry("Happy birthday!")

        entries = controller.read_model().entries
        assert [e.entry.text for e in entries] == ["Happy birthday!"]
        assert entries[0].entry.author_id == "alice"

    @pytest.mark.asyncio
    async def test_two_devices_converge(self, session):
        """An entry written on one device appears on the other via the feed."""
        alice, _ = await session(ALICE)
        bob, _ = await session(BOB)
        group = await alice.create_group("Road trip", PAST)
        await bob.join_group(group.id)
        assert bob.read_model().active_group_id == group.id

        await alice.submit_entry("Day one")

        await wait_until(lambda: len(bob.read_model().entries) == 1)
        assert bob.read_model().entries[0].entry.text == "Day one"

    @pytest.mark.asyncio
    async def test_entries_order_newest_first(self, session, clock):
        controller, _ = await session()
        await controller.create_group("Journal", PAST)

        await controller.submit_entry("older")
        clock.advance(minutes=1)
        await controller.submit_entry("newer")

        assert [e.entry.text for e in controller.read_model().entries] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_locked_group_hides_entries_until_unlock(self, session, clock):
        """Entries appear once the clock passes the unlock time."""
        alice, _ = await session(ALICE)
        group = await alice.create_group("Time capsule", FUTURE)
        await alice.submit_entry("sealed message")

        model = alice.read_model()
        assert not model.unlocked
        assert model.entries == ()
        assert model.lock_message == "Locked until 2026-01-01T13:00+00:00"

        clock.advance(hours=1)
        alice.read_model()
        await wait_until(lambda: len(alice.read_model().entries) == 1)

        model = alice.read_model()
        assert model.unlocked
        assert model.active_group_id == group.id
        assert model.entries[0].entry.text == "sealed message"

    @pytest.mark.asyncio
    async def test_switching_groups(self, session, feed):
        """Only the active group's entries are shown after switching."""
        controller, _ = await session()
        first = await controller.create_group("First", PAST)
        await controller.submit_entry("in first")
        second = await controller.create_group("Second", PAST)
        await controller.submit_entry("in second")

        await controller.select_group(first.id)
        assert [e.entry.text for e in controller.read_model().entries] == ["in first"]
        assert feed.subscriber_count(second.id) == 0
        assert feed.subscriber_count(first.id) == 1

        await controller.select_group(second.id)
        assert [e.entry.text for e in controller.read_model().entries] == ["in second"]

    @pytest.mark.asyncio
    async def test_change_in_inactive_group_ignored(self, session, feed):
        controller, _ = await session()
        first = await controller.create_group("First", PAST)
        await controller.create_group("Second", PAST)
        await controller.select_group(first.id)
        reloads = controller.engine.reload_count

        await feed.notify(JOURNAL_ENTRIES, "some-other-group")
        await wait_until(lambda: not controller.engine.reload_in_flight)

        assert controller.engine.reload_count == reloads

    @pytest.mark.asyncio
    async def test_join_is_idempotent(self, session):
        alice, _ = await session(ALICE)
        bob, _ = await session(BOB)
        group = await alice.create_group("Trip", PAST)

        await bob.join_group(group.id)
        await bob.join_group(group.id)

        model = bob.read_model()
        assert [g.id for g in model.groups] == [group.id]
        assert model.statuses[OperationKind.GROUPS].error is None

    @pytest.mark.asyncio
    async def test_join_unknown_group_reported(self, session):
        controller, _ = await session(BOB)

        with pytest.raises(NotFoundError):
            await controller.join_group("no-such-group")

        status = controller.read_model().statuses[OperationKind.GROUPS]
        assert status.error_code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_select_group_not_visible(self, session):
        alice, _ = await session(ALICE)
        bob, _ = await session(BOB)
        group = await alice.create_group("Private", PAST)

        with pytest.raises(NotFoundError):
            await bob.select_group(group.id)
        assert bob.read_model().active_group_id is None

    @pytest.mark.asyncio
    async def test_upload_media_resolved(self, session, objects):
        controller, _ = await session()
        group = await controller.create_group("Photos", PAST)

        entry = await controller.upload_media("beach.jpg", b"jpeg", "image/jpeg")

        [item] = controller.read_model().entries
        assert item.entry.id == entry.id
        assert item.resolution is ResolutionState.RESOLVED
        assert item.url.startswith(f"memory://entries/{group.id}/")

    @pytest.mark.asyncio
    async def test_unresolvable_media_does_not_hide_entry(self, session, objects):
        controller, _ = await session()
        await controller.create_group("Photos", PAST)
        entry = await controller.upload_media("beach.jpg", b"jpeg")
        objects.denied.add(entry.media_reference)
        controller.resolver.clear()

        await controller.engine.refresh()

        [item] = controller.read_model().entries
        assert item.resolution is ResolutionState.UNRESOLVED
        assert item.display_media == entry.media_reference

    @pytest.mark.asyncio
    async def test_sign_out_tears_down(self, session, feed):
        controller, auth = await session()
        group = await controller.create_group("Trip", PAST)
        entry = await controller.upload_media("a.png", b"png")
        assert feed.subscriber_count(group.id) == 1
        assert controller.resolver.cached(entry.media_reference) is not None

        await auth.sign_out()
        await controller.wait_idle()

        model = controller.read_model()
        assert not model.signed_in
        assert model.groups == ()
        assert model.active_group is None
        assert model.entries == ()
        assert controller.engine is None
        assert feed.subscriber_count(group.id) == 0
        assert controller.resolver.cached(entry.media_reference) is None

    @pytest.mark.asyncio
    async def test_sign_in_after_sign_out_restores_groups(self, session):
        controller, auth = await session()
        group = await controller.create_group("Trip", PAST)
        await controller.sign_out()

        await auth.sign_in(ALICE)
        await controller.wait_idle()

        model = controller.read_model()
        assert [g.id for g in model.groups] == [group.id]
        assert model.active_group_id == group.id

    @pytest.mark.asyncio
    async def test_operations_require_session(self, session):
        controller, _ = await session()
        await controller.sign_out()

        with pytest.raises(NotAuthenticatedError):
            await controller.submit_entry("hello")
        with pytest.raises(NotAuthenticatedError):
            await controller.create_group("Trip", PAST)

    @pytest.mark.asyncio
    async def test_select_group_signed_out_leaves_no_selection(self, session):
        controller, _ = await session()
        group = await controller.create_group("Trip", PAST)
        await controller.sign_out()

        with pytest.raises(NotAuthenticatedError):
            await controller.select_group(group.id)

        model = controller.read_model()
        assert model.principal is None
        assert model.active_group_id is None

    @pytest.mark.asyncio
    async def test_feed_failure_reported_on_sync_status(self, session, feed):
        controller, _ = await session()
        group = await controller.create_group("Trip", PAST)
        [subscription] = [s for s in feed._subscriptions if s.filter.group_id == group.id]

        subscription._queue.put_nowait("not an event")

        await wait_until(lambda: controller.read_model().statuses[OperationKind.SYNC].error is not None)

    @pytest.mark.asyncio
    async def test_entry_requires_active_group(self, session):
        controller, _ = await session()

        with pytest.raises(ValidationError):
            await controller.submit_entry("hello")

    @pytest.mark.asyncio
    async def test_blank_entry_reported(self, session):
        controller, _ = await session()
        await controller.create_group("Trip", PAST)

        with pytest.raises(ValidationError):
            await controller.submit_entry("  ")

        status = controller.read_model().statuses[OperationKind.ENTRY]
        assert status.error_code == "VALIDATION_ERROR"
        assert not status.busy

    @pytest.mark.asyncio
    async def test_partial_upload_reported(self, session, rows, objects):
        flaky = FailingInserts(rows)
        controller, _ = await session(store=flaky)
        await controller.create_group("Trip", PAST)
        flaky.failures[JOURNAL_ENTRIES] = TransientIOError("db locked")

        with pytest.raises(PartialWriteError):
            await controller.upload_media("a.png", b"png")

        status = controller.read_model().statuses[OperationKind.MEDIA]
        assert status.error_code == "PARTIAL_WRITE"
        assert len(objects.paths()) == 1
        assert controller.read_model().entries == ()

    @pytest.mark.asyncio
    async def test_random_prompt(self, session):
        controller, _ = await session()
        assert controller.random_prompt().endswith(("?", "."))

    @pytest.mark.asyncio
    async def test_groups_listed_newest_first(self, session, clock):
        controller, _ = await session()
        older = await controller.create_group("Older", PAST)
        clock.advance(minutes=5)
        newer = await controller.create_group("Newer", PAST)

        assert [g.id for g in controller.read_model().groups] == [newer.id, older.id]
        assert controller.read_model().active_group_id == newer.id

    @pytest.mark.asyncio
    async def test_unlock_boundary_in_read_model(self, session, clock):
        controller, _ = await session()
        await controller.create_group("Capsule", FUTURE)

        clock.advance(timedelta(minutes=59, seconds=59))
        assert not controller.read_model().unlocked
        clock.advance(seconds=1)
        assert controller.read_model().unlocked
