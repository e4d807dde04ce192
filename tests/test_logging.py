"""Tests for structured logging processors."""
from cradle.logging import service_name_adder


def test_service_name_stamped():
    """Test each processor carries its own service name."""
    cradle = service_name_adder("cradle")
    worker = service_name_adder("cradle-worker")

    assert cradle(None, "info", {"event": "ledger.refetched"})["service"] == "cradle"
    assert worker(None, "info", {"event": "ledger.refetched"})["service"] == "cradle-worker"


def test_service_name_not_overwritten():
    """Test an explicitly bound service is kept."""
    entry = service_name_adder("cradle")(None, "info", {"event": "x", "service": "bridge"})
    assert entry["service"] == "bridge"
