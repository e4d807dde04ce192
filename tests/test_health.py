"""
Tests for health check endpoints.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from cradle.health import HealthChecker
from cradle.main import app

client = TestClient(app)


def test_health_liveness():
    """Test liveness health check."""
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["service"] == "cradle"
    assert data["version"] == "0.1.0"
    assert "timestamp" in data


def test_health_readiness():
    """Test readiness health check."""
    r = client.get("/health/ready")
    # Should be 200 (ready/degraded) or 503 (not ready)
    assert r.status_code in [200, 503]
    data = r.json()
    assert data["service"] == "cradle"
    assert "checks" in data
    assert set(data["checks"]) == {"event_store", "change_feed", "disk_space", "memory"}


def test_metrics_endpoint():
    """Test Prometheus metrics endpoint."""
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    content = r.text
    assert "http_requests_total" in content
    assert "cradle_ledgers_active" in content


def _care(event_store: bool, change_feed: bool):
    care = MagicMock()
    care.health_check = AsyncMock(return_value={"event_store": event_store, "change_feed": change_feed})
    return care


def _plenty_of_resources(mock_psutil):
    mock_psutil.disk_usage.return_value = MagicMock(free=50 * 1024**3, percent=40.0)
    mock_psutil.virtual_memory.return_value = MagicMock(available=4 * 1024**3, percent=30.0)


@pytest.mark.asyncio
async def test_readiness_ready():
    """Test all checks passing reports ready."""
    with patch("cradle.health.psutil") as mock_psutil:
        _plenty_of_resources(mock_psutil)
        result = await HealthChecker().readiness(_care(True, True))

    assert result["status"] == "ready"
    assert result["checks"]["event_store"]["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_degraded_without_change_feed():
    """Test a down change feed degrades rather than fails readiness."""
    with patch("cradle.health.psutil") as mock_psutil:
        _plenty_of_resources(mock_psutil)
        result = await HealthChecker().readiness(_care(True, False))

    assert result["status"] == "degraded"
    assert result["checks"]["change_feed"]["status"] == "warning"


@pytest.mark.asyncio
async def test_readiness_not_ready_without_event_store():
    """Test an unreachable event store fails readiness."""
    with patch("cradle.health.psutil") as mock_psutil:
        _plenty_of_resources(mock_psutil)
        result = await HealthChecker().readiness(_care(False, True))

    assert result["status"] == "not_ready"


@pytest.mark.asyncio
async def test_readiness_low_disk():
    """Test low disk space fails readiness."""
    with patch("cradle.health.psutil") as mock_psutil:
        _plenty_of_resources(mock_psutil)
        mock_psutil.disk_usage.return_value = MagicMock(free=100 * 1024**2, percent=99.0)
        result = await HealthChecker().readiness(_care(True, True))

    assert result["status"] == "not_ready"
    assert result["checks"]["disk_space"]["status"] == "error"
