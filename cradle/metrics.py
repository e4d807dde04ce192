"""
Prometheus metrics for the cradle ledger service.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os


class Metrics:
    """
    Centralized metrics: HTTP traffic, ledger consistency events, predictions
    and process resources.
    """

    def __init__(self, service_name: str = "cradle", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=service_name).set(0)

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Ledger
        self.ledger_appends_total = Counter(
            "cradle_ledger_appends_total",
            "Care event appends by outcome",
            ["event_type", "outcome"],
            registry=self.registry,
        )

        self.ledger_rollbacks_total = Counter(
            "cradle_ledger_rollbacks_total",
            "Optimistic entries removed after a failed remote write",
            registry=self.registry,
        )

        self.ledger_refetches_total = Counter(
            "cradle_ledger_refetches_total",
            "Snapshot refetches by outcome (applied, superseded, failed)",
            ["outcome"],
            registry=self.registry,
        )

        self.remote_write_seconds = Histogram(
            "cradle_remote_write_seconds",
            "Latency of remote event store inserts",
            registry=self.registry,
        )

        self.ledgers_active = Gauge(
            "cradle_ledgers_active",
            "Owners with a live ledger snapshot",
            registry=self.registry,
        )

        # Realtime sync
        self.sync_notifications_total = Counter(
            "cradle_sync_notifications_total",
            "Change notifications received from the realtime feed",
            ["kind"],
            registry=self.registry,
        )

        self.stream_connections = Gauge(
            "cradle_stream_connections",
            "Open snapshot WebSocket connections",
            registry=self.registry,
        )

        # Prediction
        self.predictions_total = Counter(
            "cradle_predictions_total",
            "Sleep window predictions by pressure status",
            ["status"],
            registry=self.registry,
        )

        self._setup_process_metrics()

    def _setup_process_metrics(self):
        """Set up process-level metrics using psutil."""
        self.process_cpu_seconds = Counter(
            "process_cpu_seconds_total",
            "Total CPU time consumed by process",
            ["service"],
            registry=self.registry,
        )

        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Update system metrics from psutil."""
        try:
            process = psutil.Process(os.getpid())

            cpu_times = process.cpu_times()
            cpu_total = cpu_times.user + cpu_times.system
            # Counter can't be set; increment by the delta since last sample
            cpu_diff = cpu_total - getattr(self, "_last_cpu_total", 0)
            if cpu_diff > 0:
                self.process_cpu_seconds.labels(service=self.service_name).inc(cpu_diff)
            self._last_cpu_total = cpu_total

            self.process_memory_bytes.labels(service=self.service_name).set(process.memory_info().rss)
        except psutil.Error:
            pass

    def record_append(self, event_type: str, outcome: str):
        self.ledger_appends_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_rollback(self):
        self.ledger_rollbacks_total.inc()

    def record_refetch(self, outcome: str):
        self.ledger_refetches_total.labels(outcome=outcome).inc()

    def observe_remote_write(self, seconds: float):
        self.remote_write_seconds.observe(seconds)

    def set_active_ledgers(self, count: int):
        self.ledgers_active.set(count)

    def record_sync_notification(self, kind: str):
        self.sync_notifications_total.labels(kind=kind).inc()

    def record_prediction(self, status: str):
        self.predictions_total.labels(status=status).inc()
