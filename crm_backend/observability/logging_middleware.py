"""
ASGI middleware for HTTP request logging with request context.

Automatically:
- Reads or generates request_id for each request (X-Request-ID)
- Propagates request_id to every log call made while handling the request
- Emits exactly one "HTTP Request" record per completed request

The record is written from a ``finally`` block around the downstream app,
with the status taken from the ``http.response.start`` message. A handler
that raises is recorded as 500, a client that disconnects mid-response is
recorded with whatever status was already sent.
"""

import time
import traceback
import uuid
from typing import Any

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crm_backend.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = b"x-request-id"


def _header(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _client_ip(scope: Scope) -> str | None:
    forwarded = _header(scope, b"x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else None


class HTTPLoggingMiddleware:
    """
    Middleware for request logging with structured context.

    Logging output (development):
        2025-01-15T10:30:45.123Z [info]: HTTP Request {"method":"GET",
        "path":"/api/students/7","status":200,"duration_ms":3.41,
        "ip":"10.0.0.4","user_agent":"Mozilla/5.0","request_id":"req_ab12"}
    """

    def __init__(self, app: ASGIApp, logger=None):
        self.app = app
        self.logger = logger or get_logger(__name__)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _header(scope, REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:16]}"
        captured: dict[str, Any] = {"status": None}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                captured["status"] = message["status"]
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        start_time = time.perf_counter()
        with RequestContext(request_id=request_id):
            try:
                await self.app(scope, receive, send_wrapper)
            except Exception:
                if captured["status"] is None:
                    captured["status"] = 500
                raise
            finally:
                duration_ms = (time.perf_counter() - start_time) * 1000
                self._emit(scope, captured["status"], duration_ms)

    def _emit(self, scope: Scope, status: int | None, duration_ms: float) -> None:
        # A response that never started (client went away) has no status
        try:
            self.logger.info(
                "HTTP Request",
                method=scope["method"],
                path=scope["path"],
                status=status if status is not None else 499,
                duration_ms=round(duration_ms, 2),
                ip=_client_ip(scope),
                user_agent=_header(scope, b"user-agent"),
            )
        except Exception:
            # Logging must never fail the request
            pass


def log_unhandled_error(request: Request, exc: BaseException) -> None:
    """
    Log an unhandled request error with full request details.

    Headers are passed through the redaction processor, so Authorization and
    Cookie values never reach the sinks.
    """
    logger.error(
        "Unhandled Error",
        error={
            "type": type(exc).__name__,
            "message": str(exc),
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        },
        method=request.method,
        url=str(request.url),
        headers=dict(request.headers),
        query=dict(request.query_params),
    )
