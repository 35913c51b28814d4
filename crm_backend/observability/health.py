"""
Health check models.

The CRM backend exposes a single liveness-style probe: it answers as long as
the process can serve requests. Dependency checks (database, storage) belong
to the route handlers that own those dependencies.
"""

import time
from datetime import UTC, datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health probe response."""

    status: str = Field(default="OK", description="Always OK while the service is up")
    timestamp: datetime = Field(description="Check timestamp (UTC)")
    uptime_seconds: float = Field(description="Seconds since the service started")


class HealthChecker:
    """Tracks service start time and builds health responses."""

    def __init__(self):
        self.start_time = time.time()

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def check(self) -> HealthResponse:
        return HealthResponse(
            status="OK",
            timestamp=datetime.now(UTC),
            uptime_seconds=round(self.get_uptime_seconds(), 3),
        )
