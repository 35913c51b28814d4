"""
Origin allow-list enforcement.

CORSMiddleware only decides which response headers a browser sees; the
request itself still reaches the route. This middleware rejects requests
whose Origin is present and not allowed before they are routed, so handlers
never run (and never record side effects) for foreign sites.

Rules:
- No Origin header (server-to-server, curl, health probes): passed through
- Origin in the allow-list or matching the platform domain pattern: passed
- Anything else: 403 {"error": "Not allowed by CORS"}
"""

import re
from collections.abc import Iterable

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from crm_backend.observability.logging import get_logger

logger = get_logger(__name__)


class OriginGuardMiddleware:
    """
    Reject cross-origin requests from origins outside the allow-list.

    Configuration:
        allow_origins: Exact origins allowed
        allow_origin_regex: Pattern an origin must fully match to be allowed
    """

    def __init__(
        self,
        app: ASGIApp,
        allow_origins: Iterable[str] = (),
        allow_origin_regex: str | None = None,
    ):
        self.app = app
        self.allow_origins = frozenset(allow_origins)
        self.allow_origin_regex = re.compile(allow_origin_regex) if allow_origin_regex else None

    def is_allowed_origin(self, origin: str) -> bool:
        if origin in self.allow_origins:
            return True
        return self.allow_origin_regex is not None and bool(
            self.allow_origin_regex.fullmatch(origin)
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        if origin is None or self.is_allowed_origin(origin):
            await self.app(scope, receive, send)
            return

        logger.warning(
            "Rejected cross-origin request",
            origin=origin,
            method=scope["method"],
            path=scope["path"],
        )
        response = JSONResponse(status_code=403, content={"error": "Not allowed by CORS"})
        await response(scope, receive, send)
