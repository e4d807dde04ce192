"""Tests for realtime change feed to ledger invalidation."""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock
from cradle.adapters.base import ChangeKind, ChangeNotification
from cradle.adapters.memory import InMemoryChangeFeed, InMemoryEventStore
from cradle.event_models import build_draft
from cradle.services.ledger import LedgerRegistry
from cradle.services.sync_bridge import RealtimeSyncBridge

TS = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


class UnreachableEventStore(InMemoryEventStore):
    async def list(self, owner_id):
        raise ConnectionError("remote store unreachable")


def _setup(event_store=None, metrics=None):
    feed = InMemoryChangeFeed()
    remote = event_store or InMemoryEventStore(change_feed=feed)
    registry = LedgerRegistry(remote)
    bridge = RealtimeSyncBridge(registry, feed, metrics=metrics)
    return feed, remote, registry, bridge


@pytest.mark.asyncio
async def test_session_fetches_and_follows_remote_changes():
    """Test a session starts from the remote ledger and picks up other devices' writes."""
    feed, remote, registry, bridge = _setup()
    await remote.insert(build_draft("owner-1", "FEED", TS, {}, correlation_id="before"))

    async with bridge.session("owner-1") as ledger:
        assert [e.correlation_id for e in ledger.current_snapshot()] == ["before"]

        # Another device writes directly to the remote store
        await remote.insert(build_draft("owner-1", "DIAPER", TS, {}, correlation_id="elsewhere"))

        assert [e.correlation_id for e in ledger.current_snapshot()] == ["before", "elsewhere"]
        assert feed.subscription_count == 1

    assert feed.subscription_count == 0
    assert "owner-1" not in registry


@pytest.mark.asyncio
async def test_other_owners_changes_ignored():
    """Test a notification for another owner does not refetch."""
    feed, remote, registry, bridge = _setup()

    async with bridge.session("owner-1") as ledger:
        version = ledger.version
        await remote.insert(build_draft("owner-2", "FEED", TS, {}))

        assert ledger.version == version
        assert ledger.current_snapshot() == ()


@pytest.mark.asyncio
async def test_unsubscribe_stops_invalidation():
    """Test no refetch happens after the subscription is closed."""
    feed, remote, registry, bridge = _setup()
    ledger = registry.acquire("owner-1")
    subscription = await bridge.subscribe("owner-1")

    await remote.insert(build_draft("owner-1", "FEED", TS, {}))
    assert len(ledger.current_snapshot()) == 1

    await subscription.close()
    await subscription.close()  # idempotent
    version = ledger.version
    await remote.insert(build_draft("owner-1", "FEED", TS, {}))

    assert ledger.version == version
    assert feed.subscription_count == 0


@pytest.mark.asyncio
async def test_session_cleans_up_on_error():
    """Test the channel and ledger are released when the block raises."""
    feed, remote, registry, bridge = _setup()

    with pytest.raises(RuntimeError):
        async with bridge.session("owner-1"):
            raise RuntimeError("consumer crashed")

    assert feed.subscription_count == 0
    assert registry.owners() == []


@pytest.mark.asyncio
async def test_initial_refetch_failure_serves_empty_snapshot():
    """Test an unreachable store at session start still yields a usable ledger."""
    feed, remote, registry, bridge = _setup(event_store=UnreachableEventStore())

    async with bridge.session("owner-1") as ledger:
        assert ledger.current_snapshot() == ()
        assert feed.subscription_count == 1


@pytest.mark.asyncio
async def test_failed_refetch_on_notification_is_contained():
    """Test a refetch error from a notification is logged, counted and not raised."""
    metrics = MagicMock()
    feed, remote, registry, bridge = _setup(event_store=UnreachableEventStore(), metrics=metrics)

    async with bridge.session("owner-1") as ledger:
        await feed.publish(ChangeNotification(owner_id="owner-1", kind=ChangeKind.UPDATE))

        assert ledger.current_snapshot() == ()

    metrics.record_sync_notification.assert_called_once_with("UPDATE")


@pytest.mark.asyncio
async def test_notification_without_ledger_is_ignored():
    """Test a subscription whose ledger was released does nothing."""
    feed, remote, registry, bridge = _setup()
    subscription = await bridge.subscribe("owner-1")

    await feed.publish(ChangeNotification(owner_id="owner-1"))

    assert "owner-1" not in registry
    await subscription.close()
