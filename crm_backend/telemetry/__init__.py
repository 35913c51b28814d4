"""
Client-side telemetry.

Components:
- events.py: Telemetry event models (error, performance, network, interaction)
- client.py: Batching client with error interception and periodic flush
- http.py: Opt-in instrumented HTTP client (network events)
- components.py: UI component lifecycle timings
"""

from crm_backend.telemetry.client import TelemetryClient, TelemetryState, get_telemetry_client
from crm_backend.telemetry.components import ComponentTracker
from crm_backend.telemetry.events import (
    WEB_VITALS,
    ErrorEvent,
    InteractionEvent,
    NetworkEvent,
    PerformanceEvent,
    TelemetryBatch,
)
from crm_backend.telemetry.http import InstrumentedHTTPClient

__all__ = [
    "TelemetryClient",
    "TelemetryState",
    "get_telemetry_client",
    "ComponentTracker",
    "InstrumentedHTTPClient",
    "WEB_VITALS",
    "ErrorEvent",
    "InteractionEvent",
    "NetworkEvent",
    "PerformanceEvent",
    "TelemetryBatch",
]
