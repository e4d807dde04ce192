"""Tests for the ledger and prediction HTTP API."""
import pytest
from datetime import datetime, timezone
from httpx import AsyncClient, ASGITransport
from cradle.adapters.memory import InMemoryChangeFeed, InMemoryEventStore
from cradle.clock import FixedClock
from cradle.event_models import build_draft
from cradle.main import app
from cradle.services.care_service import CareService, get_care_service

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class RejectingEventStore(InMemoryEventStore):
    async def insert(self, draft):
        raise PermissionError("row level security rejected insert")


class UnreachableEventStore(InMemoryEventStore):
    async def list(self, owner_id):
        raise ConnectionError("remote store unreachable")


def _install(event_store=None, change_feed=None):
    feed = change_feed or InMemoryChangeFeed()
    care = CareService(
        event_store=event_store or InMemoryEventStore(change_feed=feed),
        change_feed=feed,
        clock=FixedClock(NOW),
    )
    app.dependency_overrides[get_care_service] = lambda: care
    return care


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_append_event_confirmed():
    """Test a valid event is confirmed and returned with its server id."""
    _install()

    async with _client() as client:
        r = await client.post(
            "/v1/owners/owner-1/events",
            json={
                "correlation_id": "corr-1",
                "event_type": "FEED",
                "timestamp": "2026-10-19T08:00:00Z",
                "metadata": {"amount_ml": 120, "side": "LEFT"},
            },
        )

    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "confirmed"
    assert data["event"]["correlation_id"] == "corr-1"
    assert data["event"]["owner_id"] == "owner-1"
    assert data["event"]["status"] == "confirmed"
    assert data["event"]["id"]


@pytest.mark.asyncio
async def test_append_illegal_metadata_rejected():
    """Test metadata from another event type returns a structured 422."""
    _install()

    async with _client() as client:
        r = await client.post(
            "/v1/owners/owner-1/events",
            json={
                "event_type": "FEED",
                "timestamp": "2026-10-19T08:00:00Z",
                "metadata": {"diaper_type": "WET"},
            },
            headers={"X-Request-ID": "req-123"},
        )
        listed = await client.get("/v1/owners/owner-1/events")

    assert r.status_code == 422
    data = r.json()
    assert data["error"] == "ValidationError"
    assert data["errors"]
    assert data["path"] == "/v1/owners/owner-1/events"
    assert "request_id" in data
    assert listed.json()["total"] == 0


@pytest.mark.asyncio
async def test_append_unknown_event_type_rejected():
    """Test event types outside the closed set fail request validation."""
    _install()

    async with _client() as client:
        r = await client.post(
            "/v1/owners/owner-1/events",
            json={"event_type": "BATH", "timestamp": "2026-10-19T08:00:00Z"},
        )

    assert r.status_code == 422


@pytest.mark.asyncio
async def test_append_write_failure_rolls_back():
    """Test a rejected remote write returns 502 and leaves no trace in the ledger."""
    _install(event_store=RejectingEventStore())

    async with _client() as client:
        r = await client.post(
            "/v1/owners/owner-1/events",
            json={"correlation_id": "corr-9", "event_type": "SLEEP", "timestamp": "2026-10-19T08:00:00Z"},
        )
        listed = await client.get("/v1/owners/owner-1/events")

    assert r.status_code == 502
    data = r.json()
    assert data["error"] == "WriteFailedError"
    assert data["correlation_id"] == "corr-9"
    assert listed.json()["total"] == 0


@pytest.mark.asyncio
async def test_list_events_snapshot():
    """Test the snapshot endpoint reports version, totals and events in order."""
    _install()

    async with _client() as client:
        for event_type in ("FEED", "DIAPER"):
            await client.post(
                "/v1/owners/owner-1/events",
                json={"event_type": event_type, "timestamp": "2026-10-19T08:00:00Z"},
            )
        r = await client.get("/v1/owners/owner-1/events")

    assert r.status_code == 200
    data = r.json()
    assert data["owner_id"] == "owner-1"
    assert data["total"] == 2
    assert data["pending"] == 0
    assert data["version"] > 0
    assert [e["event_type"] for e in data["events"]] == ["FEED", "DIAPER"]


@pytest.mark.asyncio
async def test_invalidate_picks_up_remote_writes():
    """Test an explicit invalidate surfaces writes made elsewhere."""
    remote = InMemoryEventStore()  # no change feed: only invalidate refreshes
    _install(event_store=remote)

    async with _client() as client:
        before = await client.get("/v1/owners/owner-1/events")
        await remote.insert(build_draft("owner-1", "MEDICATION", NOW, {"medication": "Vitamin D"}))
        r = await client.post("/v1/owners/owner-1/invalidate")
        after = await client.get("/v1/owners/owner-1/events")

    assert before.json()["total"] == 0
    assert r.status_code == 202
    assert r.json()["status"] == "refetched"
    assert after.json()["total"] == 1
    assert after.json()["events"][0]["metadata"] == {"medication": "Vitamin D"}


@pytest.mark.asyncio
async def test_invalidate_failure_returns_503():
    """Test a refetch that cannot reach the store reports unavailability."""
    _install(event_store=UnreachableEventStore())

    async with _client() as client:
        r = await client.post("/v1/owners/owner-1/invalidate")

    assert r.status_code == 503


@pytest.mark.asyncio
async def test_prediction_with_explicit_wake_time():
    """Test prediction from a given wake time."""
    _install()

    async with _client() as client:
        r = await client.get(
            "/v1/owners/owner-1/prediction",
            params={"birth_date": "2026-08-19", "last_wake_time": "2026-10-19T11:30:00Z"},
        )

    assert r.status_code == 200
    data = r.json()
    assert data["remaining_minutes"] == 60
    assert data["pressure_percentage"] == 33
    assert data["overtired"] is False
    assert data["status"] == "CALM"
    assert data["predicted_time_label"] == "1:00 PM"


@pytest.mark.asyncio
async def test_prediction_from_sleep_history():
    """Test prediction falls back to the latest sleep event in the ledger."""
    _install()

    async with _client() as client:
        await client.post(
            "/v1/owners/owner-1/events",
            json={
                "event_type": "SLEEP",
                "timestamp": "2026-10-19T09:00:00Z",
                "metadata": {"start_time": "2026-10-19T09:00:00Z", "end_time": "2026-10-19T10:00:00Z"},
            },
        )
        r = await client.get("/v1/owners/owner-1/prediction", params={"birth_date": "2026-05-19"})

    assert r.status_code == 200
    data = r.json()
    assert data["age_in_months"] == 5
    assert data["elapsed_minutes"] == 120
    assert data["remaining_minutes"] == 0
    assert data["overtired"] is True
    assert data["status"] == "OVERTIRED"


@pytest.mark.asyncio
async def test_prediction_without_history_is_404():
    """Test an owner with no sleep events gets no prediction."""
    _install()

    async with _client() as client:
        r = await client.get("/v1/owners/owner-1/prediction", params={"birth_date": "2026-05-19"})

    assert r.status_code == 404


@pytest.mark.asyncio
async def test_prediction_invalid_input():
    """Test impossible dates return a structured 422."""
    _install()

    async with _client() as client:
        future_birth = await client.get(
            "/v1/owners/owner-1/prediction",
            params={"birth_date": "2027-01-01", "last_wake_time": "2026-10-19T11:00:00Z"},
        )
        future_wake = await client.get(
            "/v1/owners/owner-1/prediction",
            params={"birth_date": "2026-05-19", "last_wake_time": "2026-10-19T13:00:00Z"},
        )

    assert future_birth.status_code == 422
    assert future_birth.json()["error"] == "InvalidInputError"
    assert future_wake.status_code == 422


@pytest.mark.asyncio
async def test_daily_schedule():
    """Test the schedule endpoint chains naps from the first wake-up."""
    _install()

    async with _client() as client:
        r = await client.get(
            "/v1/schedule",
            params={"birth_date": "2026-08-19", "first_wake_time": "2026-10-19T07:00:00Z", "naps": 2},
        )
        bad = await client.get(
            "/v1/schedule",
            params={"birth_date": "2026-08-19", "first_wake_time": "2026-10-19T07:00:00Z", "nap_minutes": 0},
        )

    assert r.status_code == 200
    data = r.json()
    assert data["age_in_months"] == 2
    assert data["awake_window_minutes"] == 90
    assert [s["activity"] for s in data["slots"]] == ["Nap 1", "Nap 2"]
    assert data["slots"][0]["start"].startswith("2026-10-19T08:30:00")
    assert data["slots"][1]["start"].startswith("2026-10-19T11:00:00")
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_request_id_echoed():
    """Test the request id header is preserved or generated."""
    _install()

    async with _client() as client:
        given = await client.get("/health", headers={"X-Request-ID": "req-abc"})
        generated = await client.get("/health")

    assert given.headers["x-request-id"] == "req-abc"
    assert generated.headers["x-request-id"]
