"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) per method/route/status
- Request count (counter) per method/route/status
- Database query latency (histogram) per operation/success
- Client telemetry events received (counter) per event type
- Client web vitals (histogram) per vital name
- Event loop lag (gauge), sampled on a timer
- Default process metrics (memory, CPU, open fds, GC, platform)

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- One MetricsRegistry per application; tests build their own

Cardinality:
- route is always a registered route template or UNMATCHED_ROUTE
- vital name is restricted to WEB_VITALS
"""

import asyncio
import contextlib
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from crm_backend.observability.logging import get_logger
from crm_backend.telemetry.events import WEB_VITALS

logger = get_logger(__name__)

# Label used when no route matched the request (404s, probes for random paths)
UNMATCHED_ROUTE = "unmatched"

# Buckets shared by HTTP and DB latency histograms
LATENCY_BUCKETS = (
    0.1,  # 100ms
    0.5,  # 500ms
    1.0,  # 1s (slow request threshold)
    2.0,  # 2s
    5.0,  # 5s
)


class MetricsRegistry:
    """
    Process metrics registry.

    Owns a ``CollectorRegistry`` and every instrument registered on it.
    Instruments are created in ``__init__`` so two registries never share
    state, which keeps per-test registries isolated.
    """

    def __init__(self, registry: CollectorRegistry | None = None, default_collectors: bool = True):
        self.registry = registry or CollectorRegistry()

        if default_collectors:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        # ====================================================================
        # REQUEST METRICS
        # ====================================================================

        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            labelnames=["method", "route", "status_code"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            labelnames=["method", "route", "status_code"],
            registry=self.registry,
        )

        # ====================================================================
        # DATABASE METRICS
        # ====================================================================

        self.db_query_duration_seconds = Histogram(
            "db_query_duration_seconds",
            "Duration of database queries in seconds",
            labelnames=["operation", "success"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

        # ====================================================================
        # CLIENT TELEMETRY METRICS
        # ====================================================================

        self.client_telemetry_events_total = Counter(
            "client_telemetry_events_total",
            "Telemetry events received from clients",
            labelnames=["type"],
            registry=self.registry,
        )

        self.client_web_vitals = Histogram(
            "client_web_vitals",
            "Web vitals reported by clients (milliseconds, CLS unitless)",
            labelnames=["name"],
            buckets=(0.1, 0.25, 1, 10, 100, 500, 1000, 2500, 4000, 10000),
            registry=self.registry,
        )

        # ====================================================================
        # RUNTIME METRICS
        # ====================================================================

        self.event_loop_lag_seconds = Gauge(
            "event_loop_lag_seconds",
            "Delay between a scheduled wake-up and the event loop running it",
            registry=self.registry,
        )

    # ========================================================================
    # HELPER FUNCTIONS
    # ========================================================================

    def track_request(
        self,
        method: str,
        route: str,
        status_code: int,
        duration_seconds: float,
    ) -> None:
        """
        Track HTTP request metrics.

        Args:
            method: HTTP method (GET, POST, etc.)
            route: Route template, e.g. /api/students/{student_id}
            status_code: HTTP status code
            duration_seconds: Request duration in seconds
        """
        self.http_request_duration_seconds.labels(
            method=method,
            route=route,
            status_code=status_code,
        ).observe(duration_seconds)

        self.http_requests_total.labels(
            method=method,
            route=route,
            status_code=status_code,
        ).inc()

    def track_db_query(self, operation: str, success: bool, duration_seconds: float) -> None:
        """
        Track database query latency.

        Args:
            operation: Query kind (select, insert, update, delete)
            success: Whether the query succeeded
            duration_seconds: Query duration
        """
        self.db_query_duration_seconds.labels(
            operation=operation,
            success="true" if success else "false",
        ).observe(duration_seconds)

    @contextlib.contextmanager
    def time_db_query(self, operation: str):
        """
        Time the enclosed block as a database query.

        Usage:
            with metrics.time_db_query("select"):
                rows = await db.fetch_all(query)
        """
        start_time = time.perf_counter()
        success = False
        try:
            yield
            success = True
        finally:
            self.track_db_query(operation, success, time.perf_counter() - start_time)

    def track_client_event(self, event_type: str) -> None:
        """Count one telemetry event received from a client."""
        self.client_telemetry_events_total.labels(type=event_type).inc()

    def track_web_vital(self, name: str, value: float) -> bool:
        """
        Record a client web vital.

        Returns:
            bool: False (and nothing recorded) for names outside WEB_VITALS
        """
        if name not in WEB_VITALS:
            return False
        self.client_web_vitals.labels(name=name).observe(value)
        return True

    def set_event_loop_lag(self, lag_seconds: float) -> None:
        self.event_loop_lag_seconds.set(lag_seconds)

    # ========================================================================
    # EXPOSITION
    # ========================================================================

    def generate(self) -> tuple[bytes, str]:
        """
        Generate Prometheus metrics in exposition format (bytes).

        Returns:
            tuple: (metrics_bytes, content_type)
        """
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


class EventLoopLagMonitor:
    """
    Samples event loop lag on a timer.

    Sleeps for ``interval`` seconds and records how late the wake-up was.
    Started and stopped by the application lifespan.
    """

    def __init__(self, metrics: MetricsRegistry, interval: float = 5.0):
        self.metrics = metrics
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            expected = time.perf_counter() + self.interval
            await asyncio.sleep(self.interval)
            lag = max(0.0, time.perf_counter() - expected)
            self.metrics.set_event_loop_lag(lag)
            if lag > 1.0:
                logger.warning("Event loop lag detected", lag_seconds=round(lag, 3))


# Global registry instance (lazy-loaded)
_metrics: MetricsRegistry | None = None


def get_metrics_registry() -> MetricsRegistry:
    """
    Get global metrics registry (used by the default application).

    Returns:
        MetricsRegistry: Global registry
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
