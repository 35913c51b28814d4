"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Development / production settings
- Isolated metrics registries
- FastAPI app with sample CRM routes and test client
- Telemetry client backed by an httpx MockTransport
"""

import asyncio
import json

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from crm_backend.config import (
    LoggingConfig,
    MetricsConfig,
    ServiceConfig,
    Settings,
    TelemetryConfig,
)
from crm_backend.main import create_app
from crm_backend.observability.logging import configure_logging
from crm_backend.observability.metrics import MetricsRegistry
from crm_backend.telemetry.client import TelemetryClient

METRICS_USER = "prometheus"
METRICS_PASSWORD = "scrape-secret-2024"


@pytest.fixture(autouse=True)
def reset_logging():
    """Every test starts and ends with plain development logging."""
    configure_logging(log_level="DEBUG", environment="development", colorized=False)
    yield
    configure_logging(log_level="DEBUG", environment="development", colorized=False)


@pytest.fixture
def dev_settings(tmp_path) -> Settings:
    """Development settings (no metrics auth, no file sinks)."""
    return Settings(
        environment="development",
        logging=LoggingConfig(level="DEBUG", colorized=False, dir=str(tmp_path / "logs")),
        metrics=MetricsConfig(slow_request_threshold_seconds=1.0),
    )


@pytest.fixture
def prod_settings(tmp_path) -> Settings:
    """Production settings with metrics credentials and temp log dir."""
    return Settings(
        environment="production",
        logging=LoggingConfig(level="INFO", dir=str(tmp_path / "logs")),
        metrics=MetricsConfig(username=METRICS_USER, password=METRICS_PASSWORD),
    )


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Registry isolated from every other test."""
    return MetricsRegistry(default_collectors=False)


def add_sample_routes(app):
    """Stand-ins for the CRM routers (students) plus failure cases."""

    @app.get("/api/students/{student_id}")
    async def get_student(student_id: int):
        if student_id == 404:
            raise HTTPException(status_code=404, detail="Student not found")
        return {"id": student_id, "name": "Ada Lovelace"}

    @app.post("/api/students", status_code=201)
    async def create_student(payload: dict):
        return {"id": 1, **payload}

    @app.get("/api/boom")
    async def boom():
        raise RuntimeError("database connection lost")

    @app.get("/api/slow")
    async def slow():
        await asyncio.sleep(0.05)
        return {"ok": True}

    return app


@pytest.fixture
def make_app(metrics_registry):
    """Factory: build an app for the given settings with sample routes."""

    def _make(settings: Settings, metrics: MetricsRegistry | None = None):
        return add_sample_routes(create_app(settings, metrics or metrics_registry))

    return _make


@pytest.fixture
def app(make_app, dev_settings):
    return make_app(dev_settings)


@pytest.fixture
def client(app) -> TestClient:
    """Test client that turns unhandled errors into 500 responses."""
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def small_body_settings(tmp_path) -> Settings:
    return Settings(
        environment="development",
        logging=LoggingConfig(colorized=False, dir=str(tmp_path / "logs")),
        service=ServiceConfig(max_request_body_size=1024),
    )


# === Telemetry fixtures ===


class RecordingTransport:
    """MockTransport handler that records batches and can be told to fail."""

    def __init__(self):
        self.batches: list[dict] = []
        self.fail_with: Exception | None = None
        self.status_code = 202
        self.on_request = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.on_request is not None:
            self.on_request(request)
        if self.fail_with is not None:
            raise self.fail_with
        self.batches.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"accepted": 0})

    @property
    def events(self) -> list[dict]:
        return [event for batch in self.batches for event in batch["metrics"]]


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def telemetry_config() -> TelemetryConfig:
    return TelemetryConfig(
        api_url="http://api.test",
        environment="test",
        flush_interval_seconds=30.0,
        backoff_initial_seconds=1.0,
        backoff_max_seconds=8.0,
    )


@pytest.fixture
def make_telemetry(transport, telemetry_config):
    """Factory: TelemetryClient posting through the recording transport."""

    def _make(**overrides):
        config = telemetry_config.model_copy(update=overrides)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        return TelemetryClient(config, http_client=http_client, user_agent="pytest-agent")

    return _make
