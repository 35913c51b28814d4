"""
Tests for the client telemetry singleton.

Tests:
- init() is idempotent (one hook registration, one flush timer)
- Uncaught errors are captured and flushed immediately
- Page views set the current path and reach the backend
- Failed flushes requeue the batch ahead of newer events
- Retry backoff, bounded queue, sampling
- Errors are flushed even inside the backoff window
- Undeliverable events (non-finite, unencodable, refused by the server) are dropped
- Shutdown restores hooks and sends what is left
"""

import asyncio
import sys
import threading

import httpx
import pytest

from crm_backend.telemetry import TelemetryState


def _coroutine_tasks(name):
    return [
        task
        for task in asyncio.all_tasks()
        if getattr(task.get_coro(), "__name__", None) == name
    ]


async def _drain(telemetry):
    if telemetry._pending_flushes:
        await asyncio.gather(*telemetry._pending_flushes)


# ============================================================================
# LIFECYCLE
# ============================================================================


@pytest.mark.asyncio
async def test_init_is_idempotent(make_telemetry, transport):
    """Test a second init() neither re-registers hooks nor starts a second timer."""
    original_excepthook = sys.excepthook
    telemetry = make_telemetry()

    telemetry.init()
    installed_hook = sys.excepthook
    flush_task = telemetry._flush_task
    telemetry.init()

    assert telemetry.state is TelemetryState.ACTIVE
    assert sys.excepthook == installed_hook
    assert telemetry._previous_excepthook is original_excepthook
    assert telemetry._flush_task is flush_task
    assert len(_coroutine_tasks("_flush_periodically")) == 1

    await telemetry.shutdown()


@pytest.mark.asyncio
async def test_uncaught_exception_reported_once(make_telemetry, transport):
    """Test an uncaught exception becomes exactly one error event, sent immediately."""
    telemetry = make_telemetry()
    telemetry.init()
    telemetry.init()

    try:
        raise ValueError("student record corrupted")
    except ValueError as e:
        sys.excepthook(type(e), e, e.__traceback__)

    await _drain(telemetry)

    errors = [event for event in transport.events if event["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["error_type"] == "uncaught_error"
    assert errors[0]["message"] == "student record corrupted"
    assert "ValueError" in errors[0]["stack"]
    assert errors[0]["source"].endswith("test_telemetry_client.py")
    assert errors[0]["line"] > 0

    await telemetry.shutdown()


@pytest.mark.asyncio
async def test_unhandled_task_error_reported(make_telemetry, transport):
    """Test loop-level task errors are reported as unhandled_rejection."""
    telemetry = make_telemetry()
    telemetry.init()
    loop = asyncio.get_running_loop()

    loop.call_exception_handler(
        {
            "message": "Task exception was never retrieved",
            "exception": RuntimeError("payment sync failed"),
        }
    )
    await _drain(telemetry)

    errors = [event for event in transport.events if event["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["error_type"] == "unhandled_rejection"
    assert errors[0]["message"] == "payment sync failed"

    await telemetry.shutdown()


@pytest.mark.asyncio
@pytest.mark.filterwarnings("ignore::pytest.PytestUnhandledThreadExceptionWarning")
async def test_thread_exception_reported(make_telemetry, transport):
    """Test exceptions escaping worker threads are reported from the loop."""
    telemetry = make_telemetry()
    telemetry.init()

    def worker():
        raise KeyError("enrollment_id")

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()
    await asyncio.sleep(0.01)
    await _drain(telemetry)

    errors = [event for event in transport.events if event["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["error_type"] == "uncaught_error"
    assert "enrollment_id" in errors[0]["message"]

    await telemetry.shutdown()


@pytest.mark.asyncio
async def test_shutdown_restores_hooks_and_flushes(make_telemetry, transport):
    """Test shutdown puts the previous hooks back and sends queued events."""
    original_excepthook = sys.excepthook
    loop = asyncio.get_running_loop()
    original_loop_handler = loop.get_exception_handler()
    telemetry = make_telemetry()

    telemetry.init()
    telemetry.track_user_interaction("click", {"target": "save-student"})
    await telemetry.shutdown()

    assert telemetry.state is TelemetryState.CLOSED
    assert sys.excepthook is original_excepthook
    assert loop.get_exception_handler() is original_loop_handler
    assert telemetry._flush_task is None
    assert [event["action"] for event in transport.events] == ["click"]
    assert transport.events[0]["target"] == "save-student"


@pytest.mark.asyncio
async def test_init_after_shutdown_is_noop(make_telemetry):
    """Test a closed client cannot be re-activated."""
    telemetry = make_telemetry()
    telemetry.init()
    await telemetry.shutdown()

    telemetry.init()

    assert telemetry.state is TelemetryState.CLOSED
    assert telemetry._flush_task is None


@pytest.mark.asyncio
async def test_periodic_flush(make_telemetry, transport):
    """Test the timer ships queued events without an explicit flush."""
    telemetry = make_telemetry(flush_interval_seconds=0.05)

    async with telemetry:
        telemetry.track_performance("LCP", value=1500.0)
        await asyncio.sleep(0.2)

        assert len(transport.batches) == 1
        assert transport.batches[0]["metrics"][0]["name"] == "LCP"


# ============================================================================
# EVENTS
# ============================================================================


@pytest.mark.asyncio
async def test_page_view_round_trip(make_telemetry, transport):
    """Test a page view reaches the backend with action and path."""
    telemetry = make_telemetry()

    telemetry.track_page_view("/students", query="?page=2")
    assert await telemetry.flush() is True

    assert telemetry.current_path == "/students"
    batch = transport.batches[0]
    assert batch["environment"] == "test"
    assert isinstance(batch["timestamp"], int)

    event = batch["metrics"][0]
    assert event["type"] == "interaction"
    assert event["action"] == "page_view"
    assert event["path"] == "/students"
    assert event["query"] == "?page=2"
    assert event["user_agent"] == "pytest-agent"


@pytest.mark.asyncio
async def test_events_carry_current_path(make_telemetry):
    """Test events recorded after a page view carry its path."""
    telemetry = make_telemetry()

    telemetry.track_page_view("/courses")
    telemetry.track_performance("FCP", value=800.0)

    assert telemetry.pending_events()[-1]["path"] == "/courses"


@pytest.mark.asyncio
async def test_interaction_data_overrides_defaults(make_telemetry):
    """Test interaction data may override path but never the event type."""
    telemetry = make_telemetry()

    telemetry.track_user_interaction(
        "submit", {"path": "/enrollments/new", "type": "performance", "form": "enrollment"}
    )

    event = telemetry.pending_events()[0]
    assert event["type"] == "interaction"
    assert event["path"] == "/enrollments/new"
    assert event["form"] == "enrollment"


@pytest.mark.asyncio
async def test_record_web_vital(make_telemetry):
    """Test web vitals are queued and unknown vital names rejected."""
    telemetry = make_telemetry()

    telemetry.record_web_vital("CLS", 0.02)

    with pytest.raises(ValueError, match="Unknown web vital"):
        telemetry.record_web_vital("SPEED", 1.0)

    pending = telemetry.pending_events()
    assert len(pending) == 1
    assert pending[0]["type"] == "performance"
    assert pending[0]["name"] == "CLS"
    assert pending[0]["value"] == 0.02


@pytest.mark.asyncio
async def test_track_error_before_init_is_queued(make_telemetry, transport):
    """Test errors recorded before init() wait for the next flush."""
    telemetry = make_telemetry()

    telemetry.track_error("uncaught_error", message="early failure")

    assert transport.batches == []
    assert telemetry.queue_size == 1


# ============================================================================
# DELIVERY
# ============================================================================


@pytest.mark.asyncio
async def test_empty_flush_sends_nothing(make_telemetry, transport):
    """Test flushing an empty queue makes no request."""
    telemetry = make_telemetry()

    assert await telemetry.flush() is True
    assert transport.batches == []


@pytest.mark.asyncio
async def test_failed_flush_requeues_ahead_of_new_events(make_telemetry, transport):
    """Test a failed batch goes back in front of events recorded during the attempt."""
    telemetry = make_telemetry()
    telemetry.track_user_interaction("first")
    telemetry.track_performance("LCP", value=2100.0)

    def record_during_flush(request):
        telemetry.track_user_interaction("during_flush")

    transport.on_request = record_during_flush
    transport.fail_with = httpx.ConnectError("connection refused")

    assert await telemetry.flush() is False

    pending = telemetry.pending_events()
    assert [event.get("action") or event.get("name") for event in pending] == [
        "first",
        "LCP",
        "during_flush",
    ]


@pytest.mark.asyncio
async def test_events_sent_once_after_recovery(make_telemetry, transport):
    """Test a requeued batch is delivered exactly once when the backend recovers."""
    telemetry = make_telemetry()
    telemetry.track_user_interaction("first")
    transport.fail_with = httpx.ConnectError("connection refused")

    assert await telemetry.flush() is False

    transport.fail_with = None
    telemetry.track_user_interaction("second")
    assert await telemetry.flush(force=True) is True
    assert await telemetry.flush(force=True) is True

    assert [event["action"] for event in transport.events] == ["first", "second"]
    assert telemetry.queue_size == 0


@pytest.mark.asyncio
async def test_server_error_counts_as_failure(make_telemetry, transport):
    """Test a non-2xx response keeps the batch queued."""
    telemetry = make_telemetry()
    telemetry.track_user_interaction("click")
    transport.status_code = 503

    assert await telemetry.flush() is False
    assert telemetry.queue_size == 1


@pytest.mark.asyncio
async def test_backoff_window(make_telemetry, transport):
    """Test flushes inside the backoff window are skipped unless forced."""
    telemetry = make_telemetry()
    telemetry.track_user_interaction("click")
    transport.fail_with = httpx.ConnectError("connection refused")
    attempts = []
    transport.on_request = attempts.append

    assert await telemetry.flush() is False
    assert await telemetry.flush() is False
    assert len(attempts) == 1

    transport.fail_with = None
    assert await telemetry.flush(force=True) is True
    assert len(attempts) == 2
    assert telemetry._consecutive_failures == 0


@pytest.mark.asyncio
async def test_backoff_grows_and_caps(make_telemetry, transport):
    """Test the retry delay doubles per failure up to the configured maximum."""
    telemetry = make_telemetry(backoff_initial_seconds=1.0, backoff_max_seconds=8.0)
    telemetry.track_user_interaction("click")
    transport.fail_with = httpx.ConnectError("connection refused")

    delays = []
    for _ in range(5):
        await telemetry.flush(force=True)
        delays.append(telemetry._backoff_delay())

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]


@pytest.mark.asyncio
async def test_failure_logged_not_raised(make_telemetry, transport):
    """Test delivery errors are logged and swallowed."""
    from structlog.testing import capture_logs

    telemetry = make_telemetry()
    telemetry.track_user_interaction("click")
    transport.fail_with = httpx.ConnectError("connection refused")

    with capture_logs() as logs:
        await telemetry.flush()

    warning = next(entry for entry in logs if entry["event"] == "Failed to send telemetry")
    assert warning["log_level"] == "warning"
    assert warning["events"] == 1
    assert warning["retry_in_seconds"] == 1.0


@pytest.mark.asyncio
async def test_queue_bound_drops_oldest(make_telemetry):
    """Test the queue keeps the newest events when it overflows."""
    telemetry = make_telemetry(max_queue_size=3)

    for i in range(5):
        telemetry.track_user_interaction(f"click-{i}")

    assert [event["action"] for event in telemetry.pending_events()] == [
        "click-2",
        "click-3",
        "click-4",
    ]
    assert telemetry.dropped_events == 2


@pytest.mark.asyncio
async def test_requeue_respects_bound(make_telemetry, transport):
    """Test requeueing a failed batch never grows the queue past its bound."""
    telemetry = make_telemetry(max_queue_size=2)
    telemetry.track_user_interaction("a")
    telemetry.track_user_interaction("b")

    transport.on_request = lambda request: telemetry.track_user_interaction("c")
    transport.fail_with = httpx.ConnectError("connection refused")

    await telemetry.flush()

    assert [event["action"] for event in telemetry.pending_events()] == ["b", "c"]
    assert telemetry.dropped_events == 1


@pytest.mark.asyncio
async def test_sampling_never_drops_errors(make_telemetry):
    """Test sample_rate=0 drops everything except errors."""
    telemetry = make_telemetry(sample_rate=0.0)

    telemetry.track_performance("LCP", value=1000.0)
    telemetry.track_user_interaction("click")
    telemetry.track_network("fetch", url="/api/students", duration=12.0, success=True)
    telemetry.track_error("uncaught_error", message="kept")

    pending = telemetry.pending_events()
    assert [event["type"] for event in pending] == ["error"]


@pytest.mark.asyncio
async def test_posts_to_ingest_url(make_telemetry, transport):
    """Test batches are posted to <api_url>/api/metrics."""
    seen = []
    transport.on_request = seen.append
    telemetry = make_telemetry()

    telemetry.track_user_interaction("click")
    await telemetry.flush()

    assert seen[0].method == "POST"
    assert str(seen[0].url) == "http://api.test/api/metrics"


def test_global_client_is_shared():
    """Test the module-level accessor returns one configured client."""
    from crm_backend.telemetry import get_telemetry_client

    client = get_telemetry_client()

    assert get_telemetry_client() is client
    assert client.state is TelemetryState.UNINITIALIZED
    assert client.config.ingest_url.endswith("/api/metrics")


# ============================================================================
# UNDELIVERABLE EVENTS
# ============================================================================


@pytest.mark.asyncio
async def test_non_finite_value_discarded_at_tracking(make_telemetry, transport):
    """Test NaN/Infinity samples are discarded and do not block valid events."""
    telemetry = make_telemetry()

    telemetry.track_performance("LCP", value=float("nan"))
    telemetry.record_web_vital("CLS", float("inf"))
    telemetry.track_user_interaction("click")

    assert telemetry.rejected_events == 2
    assert await telemetry.flush() is True
    assert [event["action"] for event in transport.events] == ["click"]
    assert telemetry.queue_size == 0


@pytest.mark.asyncio
async def test_unserializable_event_dropped_at_flush(make_telemetry, transport):
    """Test an event whose extra data cannot be encoded is dropped, the rest delivered."""
    telemetry = make_telemetry()

    telemetry.track_performance("component_render", value=3.0, props=object())
    telemetry.track_user_interaction("click")

    assert await telemetry.flush() is True
    assert [event["action"] for event in transport.events] == ["click"]
    assert telemetry.rejected_events == 1
    assert telemetry.queue_size == 0


@pytest.mark.asyncio
async def test_rejected_batch_not_retried(make_telemetry, transport):
    """Test a 4xx answer drops the batch instead of blocking the queue."""
    from structlog.testing import capture_logs

    telemetry = make_telemetry()
    telemetry.track_user_interaction("click")
    transport.status_code = 422

    with capture_logs() as logs:
        assert await telemetry.flush() is False

    assert telemetry.queue_size == 0
    assert telemetry.rejected_events == 1
    assert telemetry._consecutive_failures == 0
    warning = next(entry for entry in logs if entry["event"] == "Telemetry batch rejected by server")
    assert warning["status"] == 422

    transport.status_code = 202
    telemetry.track_user_interaction("save")
    assert await telemetry.flush() is True
    assert transport.batches[-1]["metrics"][0]["action"] == "save"


@pytest.mark.parametrize("status_code", [408, 429])
@pytest.mark.asyncio
async def test_timeout_and_rate_limit_are_retried(make_telemetry, transport, status_code):
    """Test 408 and 429 keep the batch queued for a retry."""
    telemetry = make_telemetry()
    telemetry.track_user_interaction("click")
    transport.status_code = status_code

    assert await telemetry.flush() is False
    assert telemetry.queue_size == 1
    assert telemetry.rejected_events == 0


# ============================================================================
# ERROR FLUSHES
# ============================================================================


@pytest.mark.asyncio
async def test_error_flush_attempted_inside_backoff_window(make_telemetry, transport):
    """Test an error is sent immediately even while timer retries are backing off."""
    telemetry = make_telemetry(backoff_initial_seconds=60.0, backoff_max_seconds=300.0)
    telemetry.init()
    telemetry.track_user_interaction("click")
    transport.fail_with = httpx.ConnectError("connection refused")
    assert await telemetry.flush() is False
    assert await telemetry.flush() is False

    attempts = []
    transport.on_request = attempts.append
    transport.fail_with = None
    telemetry.track_error("uncaught_error", message="grade export failed")
    await _drain(telemetry)

    assert len(attempts) == 1
    assert [event.get("action") or event["type"] for event in transport.events] == [
        "click",
        "error",
    ]

    await telemetry.shutdown()


@pytest.mark.asyncio
async def test_batch_environment_defaults_to_service_environment(
    make_telemetry, transport, monkeypatch
):
    """Test batches without a telemetry environment report the service environment."""
    from crm_backend import config

    monkeypatch.setattr(config, "_settings", config.Settings(environment="production", _env_file=None))
    telemetry = make_telemetry(environment=None)

    telemetry.track_user_interaction("click")
    await telemetry.flush()

    assert transport.batches[0]["environment"] == "production"
