"""
Request size limiting middleware.

Rejects JSON/form bodies larger than the configured limit, so telemetry
batches and uploads cannot exhaust memory:
- A declared Content-Length above the limit is answered with 413 before
  the body is read.
- Bodies streamed without a Content-Length are counted as they arrive; the
  read that crosses the limit raises a 413 HTTPException.
"""

from fastapi import HTTPException
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crm_backend.observability.logging import get_logger

logger = get_logger(__name__)


class RequestSizeLimitMiddleware:
    """
    Enforce a maximum request body size.

    Configuration:
        max_body_size: Maximum request body size in bytes (default: 10MB)
    """

    def __init__(self, app: ASGIApp, max_body_size: int = 10 * 1024 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    @property
    def limit_description(self) -> str:
        return f"Request body too large. Maximum allowed: {self.max_body_size / 1024 / 1024:.1f}MB"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                response = JSONResponse(
                    status_code=400,
                    content={"error": "Invalid Content-Length header"},
                )
                await response(scope, receive, send)
                return

            if declared_size > self.max_body_size:
                self._log_rejection(scope, declared_size)
                response = JSONResponse(
                    status_code=413,
                    content={
                        "error": self.limit_description,
                        "max_size_bytes": self.max_body_size,
                        "received_size_bytes": declared_size,
                    },
                )
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    self._log_rejection(scope, received)
                    raise HTTPException(status_code=413, detail=self.limit_description)
            return message

        await self.app(scope, limited_receive, send)

    def _log_rejection(self, scope: Scope, size: int) -> None:
        logger.warning(
            "Request body too large",
            path=scope["path"],
            method=scope["method"],
            content_length=size,
            max_allowed=self.max_body_size,
        )
