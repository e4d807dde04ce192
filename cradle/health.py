"""
Health checks for liveness and readiness probes.
"""
from datetime import datetime, timezone
from typing import Dict, Any
import psutil
from .logging import get_logger
from .services.care_service import CareService

logger = get_logger()


class HealthChecker:
    """
    Liveness: is the process up. Readiness: can it serve ledger traffic
    (event store and change feed reachable, disk and memory available).

    A down change feed only degrades readiness: reads stay available from the
    last-known snapshot.
    """

    def __init__(self, service_name: str = "cradle", version: str = "0.1.0"):
        self.service_name = service_name
        self.version = version

    def _stamp(self) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "version": self.version,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    def liveness(self) -> Dict[str, Any]:
        return {"status": "ok", **self._stamp()}

    async def readiness(self, care: CareService) -> Dict[str, Any]:
        """
        Run all readiness checks.

        Returns:
            dict: "ready", "degraded" (change feed down) or "not_ready", with
            per-check detail
        """
        backends = await care.health_check()
        checks = {
            "event_store": {"status": "ok" if backends["event_store"] else "error"},
            "change_feed": {"status": "ok" if backends["change_feed"] else "warning"},
            "disk_space": self._check_disk_space(),
            "memory": self._check_memory(),
        }

        statuses = {c["status"] for c in checks.values()}
        if "error" in statuses:
            overall = "not_ready"
        elif checks["change_feed"]["status"] != "ok":
            overall = "degraded"
        else:
            overall = "ready"

        return {"status": overall, **self._stamp(), "checks": checks}

    def _check_disk_space(self, threshold_gb: float = 1.0) -> Dict[str, Any]:
        try:
            disk = psutil.disk_usage("/")
        except OSError as e:
            logger.warning("disk_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_gb = disk.free / (1024**3)
        return {
            "status": _threshold_status(available_gb, threshold_gb),
            "available_gb": round(available_gb, 2),
            "used_percent": disk.percent,
        }

    def _check_memory(self, threshold_mb: float = 50.0) -> Dict[str, Any]:
        try:
            memory = psutil.virtual_memory()
        except (OSError, psutil.Error) as e:
            logger.warning("memory_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_mb = memory.available / (1024**2)
        return {
            "status": _threshold_status(available_mb, threshold_mb),
            "available_mb": round(available_mb, 2),
            "used_percent": memory.percent,
        }


def _threshold_status(available: float, threshold: float) -> str:
    if available < threshold:
        return "error"
    if available < threshold * 2:
        return "warning"
    return "ok"
