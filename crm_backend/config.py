"""
Configuration management for the CRM backend.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:3000",
    "https://va-crm-sandbox.up.railway.app",
)


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    reload: bool = Field(default=False)

    # Matches the JSON/urlencoded body limit of the API
    max_request_body_size: int = Field(
        default=10 * 1024 * 1024,  # 10MB
        ge=1024,
        description="Maximum request body size in bytes (default: 10MB)",
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    colorized: bool = Field(
        default=True, description="Colorize console output (development only)"
    )

    # File sinks (production only)
    dir: str = Field(default="/var/log/app", description="Directory for rotating log files")
    max_bytes: int = Field(
        default=5 * 1024 * 1024,  # 5MB
        ge=1024,
        description="Rotate a log file once it reaches this size",
    )
    backup_count: int = Field(default=5, ge=1, le=100, description="Rotated files retained")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        """Accept lowercase and npm-style names (LOG_LEVEL=warn)."""
        if isinstance(v, str):
            v = v.strip().upper()
            if v == "WARN":
                return "WARNING"
        return v


class MetricsConfig(BaseSettings):
    """Metrics endpoint and middleware configuration."""

    model_config = SettingsConfigDict(env_prefix="METRICS_")

    username: str | None = Field(default=None, description="Basic auth user for /metrics")
    password: str | None = Field(default=None, description="Basic auth password for /metrics")

    slow_request_threshold_seconds: float = Field(
        default=1.0, gt=0.0, description="Log a warning for requests slower than this"
    )
    event_loop_lag_interval_seconds: float = Field(
        default=5.0, gt=0.0, description="Sampling period of the event loop lag gauge"
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class CORSConfig(BaseSettings):
    """CORS configuration for the SPA frontend."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    allowed_origins: str = Field(
        default=",".join(DEFAULT_ALLOWED_ORIGINS),
        description="Comma-separated list of allowed origins",
    )
    custom_domain: str | None = Field(
        default=None, description="Extra allowed origin, e.g. https://crm.example.com"
    )
    origin_regex: str = Field(
        default=r"https://.*\.up\.railway\.app",
        description="Origins matching this pattern are allowed (hosting platform domains)",
    )

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        origins = [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]
        if self.custom_domain and self.custom_domain not in origins:
            origins.append(self.custom_domain)
        return origins


class TelemetryConfig(BaseSettings):
    """Client telemetry configuration (batching, delivery, retry)."""

    model_config = SettingsConfigDict(env_prefix="TELEMETRY_")

    api_url: str = Field(default="", description="API base URL the client posts batches to")
    environment: str | None = Field(
        default=None, description="Reported in every batch (defaults to ENVIRONMENT)"
    )
    flush_interval_seconds: float = Field(default=30.0, gt=0.0)
    request_timeout_seconds: float = Field(default=10.0, gt=0.0)

    max_queue_size: int = Field(
        default=1000, ge=1, description="Oldest events are dropped beyond this size"
    )
    backoff_initial_seconds: float = Field(default=1.0, gt=0.0)
    backoff_max_seconds: float = Field(default=300.0, gt=0.0)

    sample_rate: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Fraction of non-error events kept"
    )

    @field_validator("backoff_max_seconds")
    @classmethod
    def validate_backoff(cls, v: float, info) -> float:
        initial = info.data.get("backoff_initial_seconds")
        if initial is not None and v < initial:
            raise ValueError(
                f"backoff_max_seconds ({v}) must be >= backoff_initial_seconds ({initial})"
            )
        return v

    @property
    def ingest_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/api/metrics"


class Settings(BaseSettings):
    """Root configuration for the CRM backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["development", "test", "production"] = Field(
        default="development", description="Deployment environment"
    )
    service_name: str = Field(default="va-crm-backend")
    service_version: str = Field(default="0.1.0")

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @model_validator(mode="after")
    def inherit_telemetry_environment(self) -> "Settings":
        """Batches report the service environment unless TELEMETRY_ENVIRONMENT is set."""
        if self.telemetry.environment is None:
            self.telemetry.environment = self.environment
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def metrics_auth_required(self) -> bool:
        return self.is_production

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if self.is_production and not self.metrics.has_credentials:
            logging.warning(
                "METRICS_USERNAME/METRICS_PASSWORD not set in production - "
                "/metrics will reject every request"
            )

        if self.metrics.password and len(self.metrics.password) < 12:
            logging.warning("metrics password seems too short - use at least 12 characters")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
