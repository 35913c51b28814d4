"""
Telemetry event models shared by the client and the ingestion route.

Every event carries ``type`` (the discriminator), ``timestamp`` (epoch
milliseconds), ``path`` and ``user_agent``. Type-specific payload keys that
the models do not name are kept as extra fields, so whatever a client sends
is forwarded verbatim.

Browser clients send camelCase keys (``errorType``, ``networkType``,
``userAgent``); both spellings are accepted, events are always dumped in
snake_case. Non-finite floats (NaN, Infinity) are rejected because they have
no JSON encoding.
"""

import time
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

WEB_VITALS = ("CLS", "FID", "LCP", "FCP", "TTFB")


def now_ms() -> int:
    return int(time.time() * 1000)


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="allow", allow_inf_nan=False)

    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    path: str | None = Field(default=None, description="Page or route path")
    user_agent: str | None = Field(
        default=None, validation_alias=AliasChoices("user_agent", "userAgent")
    )


class ErrorEvent(_EventBase):
    """Uncaught exception or unhandled rejection."""

    type: Literal["error"] = "error"
    error_type: str = Field(
        description="uncaught_error | unhandled_rejection (browsers: unhandled_promise)",
        validation_alias=AliasChoices("error_type", "errorType"),
    )
    message: str = "Unknown error"
    stack: str | None = None
    source: str | None = None
    line: int | None = None
    column: int | None = None


class PerformanceEvent(_EventBase):
    """Web vital or custom performance sample."""

    type: Literal["performance"] = "performance"
    name: str
    value: float | None = None


class NetworkEvent(_EventBase):
    """Outgoing HTTP request observed by the instrumented client."""

    type: Literal["network"] = "network"
    network_type: str = Field(
        default="fetch", validation_alias=AliasChoices("network_type", "networkType")
    )
    url: str
    duration: float = Field(description="Milliseconds")
    status: int | None = None
    error: str | None = None
    success: bool


class InteractionEvent(_EventBase):
    """User interaction such as a page view."""

    type: Literal["interaction"] = "interaction"
    action: str


TelemetryEvent = Annotated[
    ErrorEvent | PerformanceEvent | NetworkEvent | InteractionEvent,
    Field(discriminator="type"),
]


class TelemetryBatch(BaseModel):
    """Body of ``POST /api/metrics``."""

    metrics: list[TelemetryEvent] = Field(default_factory=list)
    environment: str | None = None
    timestamp: int = Field(default_factory=now_ms)


def event_payload(event: Any) -> dict[str, Any]:
    """JSON-ready dict of an event, without unset optional fields."""
    return event.model_dump(mode="json", exclude_none=True)
