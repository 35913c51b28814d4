"""
Client telemetry: buffers error, performance, network and interaction
events and ships them in batches to the backend ingestion route.

Lifecycle:
    Uninitialized --init()--> Active --shutdown()--> Closed

While Active:
- Uncaught exceptions (sys.excepthook, threading.excepthook) and unhandled
  asyncio task errors (loop exception handler) become ``error`` events and
  trigger an immediate flush. The previously installed hooks still run.
- A periodic task flushes the queue every ``flush_interval_seconds``.

Delivery:
- The queue is swapped for an empty one before sending, so events recorded
  during the POST go to the next batch and are never sent twice.
- A failed batch is put back at the head of the queue. The queue is bounded
  (oldest events dropped) and timer retries wait out an exponential backoff.
  Error-triggered flushes always make an attempt.
- Batches the server refuses (4xx other than 408/429) and events that cannot
  be encoded as JSON are dropped and counted; retrying them cannot succeed.

Usage:
    telemetry = TelemetryClient(settings.telemetry)
    telemetry.init()                      # inside a running event loop
    telemetry.track_page_view("/students")
    ...
    await telemetry.shutdown()
"""

import asyncio
import contextlib
import json
import random
import sys
import threading
import time
import traceback
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from crm_backend.config import TelemetryConfig, get_settings
from crm_backend.observability.logging import get_logger
from crm_backend.telemetry.events import (
    WEB_VITALS,
    ErrorEvent,
    InteractionEvent,
    NetworkEvent,
    PerformanceEvent,
    event_payload,
    now_ms,
)

logger = get_logger(__name__)

DEFAULT_USER_AGENT = "va-crm-telemetry/0.1.0"


class TelemetryState(str, Enum):
    """Telemetry client lifecycle state."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


class TelemetryClient:
    """
    Batching telemetry client.

    Args:
        config: Delivery settings (endpoint, interval, queue bound, backoff)
        http_client: Client used to POST batches (created lazily if omitted)
        user_agent: Reported on every event
    """

    def __init__(
        self,
        config: TelemetryConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
    ):
        self.config = config or TelemetryConfig()
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.current_path: str | None = None
        self.state = TelemetryState.UNINITIALIZED

        self._queue: list[Any] = []
        self._lock = threading.Lock()

        self._http = http_client
        self._owns_http = http_client is None

        self.dropped_events = 0
        self.rejected_events = 0
        self._consecutive_failures = 0
        self._retry_after = 0.0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._flush_task: asyncio.Task | None = None
        self._pending_flushes: set[asyncio.Task] = set()

        self._previous_excepthook = None
        self._previous_threading_excepthook = None
        self._previous_loop_handler = None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def active(self) -> bool:
        return self.state is TelemetryState.ACTIVE

    def init(self) -> None:
        """
        Start error interception and periodic flushing.

        Must be called from a running event loop. Calling it again is a no-op.
        """
        if self.state is not TelemetryState.UNINITIALIZED:
            return

        self._loop = asyncio.get_running_loop()
        self.state = TelemetryState.ACTIVE
        self._install_error_hooks()
        self._flush_task = self._loop.create_task(self._flush_periodically())

        logger.info(
            "Telemetry initialized",
            endpoint=self.config.ingest_url,
            flush_interval_seconds=self.config.flush_interval_seconds,
        )

    async def shutdown(self, flush: bool = True) -> None:
        """Stop the timer, restore hooks, and make a final flush attempt."""
        if self.state is not TelemetryState.ACTIVE:
            self.state = TelemetryState.CLOSED
            return
        self.state = TelemetryState.CLOSED

        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        if self._pending_flushes:
            await asyncio.gather(*self._pending_flushes, return_exceptions=True)

        self._restore_error_hooks()

        if flush:
            await self.flush(force=True)

        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self):
        self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ========================================================================
    # ERROR INTERCEPTION
    # ========================================================================

    def _install_error_hooks(self) -> None:
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

        self._previous_threading_excepthook = threading.excepthook
        threading.excepthook = self._threading_excepthook

        self._previous_loop_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._loop_exception_handler)

    def _restore_error_hooks(self) -> None:
        # Leave hooks alone if something else replaced ours in the meantime
        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook
        if threading.excepthook == self._threading_excepthook:
            threading.excepthook = self._previous_threading_excepthook
        if self._loop is not None and not self._loop.is_closed():
            if self._loop.get_exception_handler() == self._loop_exception_handler:
                self._loop.set_exception_handler(self._previous_loop_handler)

    def _excepthook(self, exc_type, exc_value, exc_tb) -> None:
        self._capture_exception("uncaught_error", exc_value, exc_tb)
        self._previous_excepthook(exc_type, exc_value, exc_tb)

    def _threading_excepthook(self, args) -> None:
        if args.exc_type is not SystemExit:
            self._capture_exception("uncaught_error", args.exc_value, args.exc_traceback)
        self._previous_threading_excepthook(args)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is not None:
            self._capture_exception("unhandled_rejection", exc, exc.__traceback__)
        else:
            self.track_error(
                "unhandled_rejection",
                message=context.get("message") or "Unhandled task error",
            )

        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    def _capture_exception(self, error_type: str, exc: BaseException | None, tb) -> None:
        data: dict[str, Any] = {
            "message": str(exc) if exc is not None and str(exc) else "Unknown error",
        }
        if exc is not None:
            data["stack"] = "".join(traceback.format_exception(type(exc), exc, tb))
        if tb is not None:
            frames = traceback.extract_tb(tb)
            if frames:
                data["source"] = frames[-1].filename
                data["line"] = frames[-1].lineno
        self.track_error(error_type, **data)

    # ========================================================================
    # TRACKING
    # ========================================================================

    def track_error(self, error_type: str, **data: Any) -> None:
        """Queue an error event and flush immediately (errors are never sampled)."""
        data.pop("type", None)
        event = self._build(ErrorEvent, {**self._context(), **data, "error_type": error_type})
        if event is None:
            return
        self._enqueue(event, sampled=False)
        if self.active:
            self._schedule_flush()

    def track_performance(self, name: str, **data: Any) -> None:
        """Queue a performance sample (component timings, custom marks)."""
        data.pop("type", None)
        self._enqueue(self._build(PerformanceEvent, {**self._context(), **data, "name": name}))

    def record_web_vital(self, name: str, value: float, **attrs: Any) -> None:
        """
        Queue one of the five web vitals (CLS, FID, LCP, FCP, TTFB).

        Raises:
            ValueError: If name is not a known vital
        """
        if name not in WEB_VITALS:
            raise ValueError(f"Unknown web vital {name!r}, expected one of {', '.join(WEB_VITALS)}")
        self.track_performance(name, value=value, **attrs)

    def track_network(self, network_type: str, **data: Any) -> None:
        """Queue a network request observation."""
        data.pop("type", None)
        self._enqueue(
            self._build(NetworkEvent, {**self._context(), **data, "network_type": network_type})
        )

    def track_user_interaction(self, action: str, data: dict[str, Any] | None = None) -> None:
        """Queue a user interaction; keys in ``data`` override the defaults (e.g. path)."""
        payload = {key: value for key, value in (data or {}).items() if key != "type"}
        self._enqueue(self._build(InteractionEvent, {**self._context(), **payload, "action": action}))

    def track_page_view(self, path: str, query: str = "") -> None:
        """Record a navigation and remember the path for subsequent events."""
        self.current_path = path
        self.track_user_interaction("page_view", {"path": path, "query": query})

    def _context(self) -> dict[str, Any]:
        return {
            "timestamp": now_ms(),
            "path": self.current_path,
            "user_agent": self.user_agent,
        }

    def _build(self, model: type, fields: dict[str, Any]) -> Any:
        try:
            return model(**fields)
        except ValidationError as e:
            self.rejected_events += 1
            logger.warning(
                "Discarded invalid telemetry event",
                event_type=model.model_fields["type"].default,
                errors=e.error_count(),
                rejected=self.rejected_events,
            )
            return None

    # ========================================================================
    # QUEUE
    # ========================================================================

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def pending_events(self) -> list[dict[str, Any]]:
        """Snapshot of the queued events, oldest first."""
        with self._lock:
            events = list(self._queue)
        return [event_payload(event) for event in events]

    def _enqueue(self, event: Any, sampled: bool = True) -> None:
        if event is None:
            return
        if sampled and self.config.sample_rate < 1.0 and random.random() >= self.config.sample_rate:
            return
        with self._lock:
            self._queue.append(event)
            self._trim_locked()

    def _requeue(self, batch: list[Any]) -> None:
        with self._lock:
            self._queue = batch + self._queue
            self._trim_locked()

    def _trim_locked(self) -> None:
        overflow = len(self._queue) - self.config.max_queue_size
        if overflow > 0:
            del self._queue[:overflow]
            self.dropped_events += overflow

    # ========================================================================
    # DELIVERY
    # ========================================================================

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.request_timeout_seconds)
        return self._http

    def _schedule_flush(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._spawn_flush()
        else:
            # Hook fired on another thread
            loop.call_soon_threadsafe(self._spawn_flush)

    def _spawn_flush(self) -> None:
        # One attempt per error, even inside the backoff window
        task = self._loop.create_task(self.flush(force=True))
        self._pending_flushes.add(task)
        task.add_done_callback(self._pending_flushes.discard)

    def _backoff_delay(self) -> float:
        delay = self.config.backoff_initial_seconds * (2 ** (self._consecutive_failures - 1))
        return min(delay, self.config.backoff_max_seconds)

    async def flush(self, force: bool = False) -> bool:
        """
        Send every queued event as one batch.

        Args:
            force: Ignore the retry backoff window

        Returns:
            bool: True if the queue was delivered (or empty), False otherwise.
            Delivery errors are logged, never raised.
        """
        if not force and time.monotonic() < self._retry_after:
            return False

        with self._lock:
            if not self._queue:
                return True
            batch, self._queue = self._queue, []

        batch, payloads = self._encodable(batch)
        if not batch:
            return True

        body = {
            "metrics": payloads,
            "environment": self.config.environment or get_settings().environment,
            "timestamp": now_ms(),
        }

        try:
            response = await self._get_http_client().post(self.config.ingest_url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if _is_permanent_rejection(e.response.status_code):
                self.rejected_events += len(batch)
                self._consecutive_failures = 0
                self._retry_after = 0.0
                logger.warning(
                    "Telemetry batch rejected by server",
                    status=e.response.status_code,
                    events=len(batch),
                    rejected=self.rejected_events,
                )
                return False
            return self._delivery_failed(batch, e)
        except asyncio.CancelledError:
            self._requeue(batch)
            raise
        except Exception as e:
            return self._delivery_failed(batch, e)

        self._consecutive_failures = 0
        self._retry_after = 0.0
        logger.debug("Telemetry batch sent", events=len(batch))
        return True

    def _encodable(self, batch: list[Any]) -> tuple[list[Any], list[dict[str, Any]]]:
        """Split off events that cannot be encoded; returns (events, payloads)."""
        events, payloads = [], []
        for event in batch:
            try:
                payload = event_payload(event)
                json.dumps(payload, allow_nan=False)
            except (TypeError, ValueError) as e:
                self.rejected_events += 1
                logger.warning(
                    "Dropped unserializable telemetry event",
                    event_type=getattr(event, "type", None),
                    error=str(e),
                    rejected=self.rejected_events,
                )
                continue
            events.append(event)
            payloads.append(payload)
        return events, payloads

    def _delivery_failed(self, batch: list[Any], error: Exception) -> bool:
        self._requeue(batch)
        self._consecutive_failures += 1
        delay = self._backoff_delay()
        self._retry_after = time.monotonic() + delay
        logger.warning(
            "Failed to send telemetry",
            error=str(error) or type(error).__name__,
            events=len(batch),
            queued=self.queue_size,
            dropped=self.dropped_events,
            retry_in_seconds=delay,
        )
        return False

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval_seconds)
            await self.flush()


def _is_permanent_rejection(status_code: int) -> bool:
    """4xx responses other than timeout and rate limiting will fail again."""
    return 400 <= status_code < 500 and status_code not in (408, 429)


# Global client instance (lazy-loaded)
_telemetry: TelemetryClient | None = None


def get_telemetry_client() -> TelemetryClient:
    """
    Get the process-wide telemetry client, configured from TELEMETRY_* settings.

    Returns:
        TelemetryClient: Global client (call init() once a loop is running)
    """
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryClient(get_settings().telemetry)
    return _telemetry
