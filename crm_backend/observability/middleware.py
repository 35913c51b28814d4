"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count) and logs
  slow requests

Cardinality:
- The route label is the template the matched route was registered with
  (``/api/students/{student_id}``), read from the ASGI scope after routing.
- Requests that match no route share the UNMATCHED_ROUTE label, whatever
  their raw path is.
"""

import time
from typing import Any

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crm_backend.observability.logging import get_logger
from crm_backend.observability.metrics import UNMATCHED_ROUTE, MetricsRegistry

logger = get_logger(__name__)


def route_template(scope: Scope) -> str:
    """
    Resolve the metrics label for a routed request.

    FastAPI stores the matched APIRoute in ``scope["route"]`` during routing;
    its ``path`` is the template the route was registered with.
    """
    route = scope.get("route")
    template = getattr(route, "path", None)
    if not template:
        return UNMATCHED_ROUTE
    return template


class PrometheusMiddleware:
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)

    Logs a warning for requests slower than ``slow_request_threshold``
    seconds.
    """

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsRegistry,
        slow_request_threshold: float = 1.0,
    ):
        self.app = app
        self.metrics = metrics
        self.slow_request_threshold = slow_request_threshold

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        captured: dict[str, Any] = {"status": None}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                captured["status"] = message["status"]
            await send(message)

        start_time = time.perf_counter()
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            if captured["status"] is None:
                captured["status"] = 500
            raise
        finally:
            duration_seconds = time.perf_counter() - start_time
            self._record(scope, captured["status"] or 499, duration_seconds)

    def _record(self, scope: Scope, status_code: int, duration_seconds: float) -> None:
        try:
            self.metrics.track_request(
                method=scope["method"],
                route=route_template(scope),
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

            if duration_seconds > self.slow_request_threshold:
                logger.warning(
                    "Slow request detected",
                    method=scope["method"],
                    path=scope["path"],
                    duration=round(duration_seconds, 3),
                    status=status_code,
                )
        except Exception as e:
            logger.error("Failed to record request metrics", error=str(e))
