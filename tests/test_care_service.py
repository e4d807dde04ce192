"""Tests for the care service facade."""
import pytest
from datetime import datetime, timezone
from unittest.mock import patch
from cradle.adapters.memory import InMemoryChangeFeed, InMemoryEventStore
from cradle.adapters.redis_stream import RedisEventStore
from cradle.errors import WriteFailedError
from cradle.event_models import build_draft
from cradle.services.care_service import CareService

TS = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def _service():
    feed = InMemoryChangeFeed()
    return CareService(event_store=InMemoryEventStore(change_feed=feed), change_feed=feed), feed


@pytest.mark.asyncio
async def test_request_ledgers_released_after_each_call():
    """Test per-request calls leave no ledgers or feed subscriptions behind."""
    care, feed = _service()

    for i in range(50):
        await care.snapshot(f"owner-{i}")
    await care.append("owner-0", build_draft("owner-0", "FEED", TS, {}))
    await care.invalidate("owner-0")
    await care.predict("owner-0", "2026-05-19")

    assert care.registry.owners() == []
    assert feed.subscription_count == 0


@pytest.mark.asyncio
async def test_request_data_survives_release():
    """Test a released ledger is rebuilt from the store on the next request."""
    care, feed = _service()

    confirmed = await care.append("owner-1", build_draft("owner-1", "SLEEP", TS, {}))
    version, snapshot = await care.snapshot("owner-1")

    assert snapshot == (confirmed,)
    assert version > 0


@pytest.mark.asyncio
async def test_open_owner_shares_ledger_with_requests():
    """Test requests reuse a ledger held open by a stream and leave it open."""
    care, feed = _service()

    store = await care.open_owner("owner-1")
    confirmed = await care.append("owner-1", build_draft("owner-1", "DIAPER", TS, {}))

    assert store.current_snapshot() == (confirmed,)
    assert care.registry.owners() == ["owner-1"]
    assert feed.subscription_count == 1

    await care.close_owner("owner-1")
    assert care.registry.owners() == []
    assert feed.subscription_count == 0


@pytest.mark.asyncio
async def test_ledger_released_when_append_fails():
    """Test a failed request still drops its reference."""
    class RejectingEventStore(InMemoryEventStore):
        async def insert(self, draft):
            raise PermissionError("insert rejected")

    feed = InMemoryChangeFeed()
    care = CareService(event_store=RejectingEventStore(), change_feed=feed)

    with pytest.raises(WriteFailedError):
        await care.append("owner-1", build_draft("owner-1", "FEED", TS, {}))

    assert care.registry.owners() == []
    assert feed.subscription_count == 0


def test_redis_store_with_memory_feed_warns():
    """Test pairing the Redis store with a process-local feed is flagged."""
    with patch("cradle.services.care_service.log") as mock_log:
        CareService(event_store=RedisEventStore(redis_url="redis://localhost:6379"), change_feed=InMemoryChangeFeed())

    events = [call.args[0] for call in mock_log.warning.call_args_list]
    assert "adapter.mismatch" in events


def test_matching_adapters_do_not_warn():
    """Test the default memory pairing is not flagged."""
    with patch("cradle.services.care_service.log") as mock_log:
        _service()

    mock_log.warning.assert_not_called()
