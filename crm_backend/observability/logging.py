"""
Structured logging for the CRM backend.

Features:
- Human-readable, colorized lines in development
- Newline-delimited JSON in production (log aggregation friendly)
- Size-rotated file sinks in production (error-only + combined)
- Request context propagation (request_id)
- Sensitive field redaction

Architecture:
- structlog processors build and render the record
- stdlib logging handlers are the sinks (console, rotating files)
- Sink failures are swallowed by the handlers, never raised to callers
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from structlog.types import EventDict, Processor

# Context variable for request-scoped data
# Propagates across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# stdlib method name -> record level
LEVEL_NAMES = {
    "critical": "error",
    "exception": "error",
    "error": "error",
    "warning": "warn",
    "warn": "warn",
    "info": "info",
    "debug": "debug",
}

_RESET = "\033[0m"
LEVEL_COLORS = {
    "error": "\033[31m",  # red
    "warn": "\033[33m",  # yellow
    "info": "\033[32m",  # green
    "debug": "\033[34m",  # blue
}

SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "password",
        "authorization",
        "cookie",
        "set-cookie",
        "secret",
        "token",
    }
)

# Handlers installed by the last configure_logging() call
_installed_handlers: list[logging.Handler] = []


# ============================================================================
# SINKS
# ============================================================================


class _QuietHandlerMixin:
    """Drop records that a sink failed to write instead of reporting them."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return


class ConsoleHandler(_QuietHandlerMixin, logging.StreamHandler):
    """
    Console sink.

    Writes to whatever ``sys.stdout`` is when the record is emitted, so output
    follows later redirections (test capture, contextlib.redirect_stdout).
    """

    @property
    def stream(self):
        return sys.stdout

    @stream.setter
    def stream(self, value):
        pass


class RotatingFileSink(_QuietHandlerMixin, RotatingFileHandler):
    """Size-capped file sink; the oldest backup is dropped on rotation."""


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject request_id of the request currently being handled (if any)."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 UTC timestamp with millisecond precision.

    Format: 2025-01-15T10:30:45.123Z
    """
    now = datetime.now(UTC)
    event_dict["timestamp"] = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return event_dict


def add_log_level(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Map the stdlib method name onto the error/warn/info/debug levels."""
    event_dict["level"] = LEVEL_NAMES.get(method_name, method_name)
    return event_dict


def _redact(value):
    if isinstance(value, str):
        # Keep a short prefix for debugging (e.g. "Basic YWRt***")
        if len(value) > 12:
            return f"{value[:10]}***"
        return "***REDACTED***"
    return "***REDACTED***"


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials before anything is rendered.

    Top-level keys and the keys of a nested ``headers`` mapping are checked,
    so request headers logged by the error logger never leak Authorization
    or Cookie values.
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = _redact(event_dict[key])

    headers = event_dict.get("headers")
    if isinstance(headers, dict):
        event_dict["headers"] = {
            name: _redact(value) if name.lower() in SENSITIVE_FIELDS else value
            for name, value in headers.items()
        }

    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service, version, environment for log aggregation filters.

    Only used for JSON output.
    """
    try:
        from crm_backend.config import get_settings

        settings = get_settings()
        event_dict.setdefault("service", settings.service_name)
        event_dict.setdefault("version", settings.service_version)
        event_dict.setdefault("environment", settings.environment)
    except Exception:
        event_dict.setdefault("service", "va-crm-backend")
    return event_dict


class DevLineRenderer:
    """
    Render ``<timestamp> [<level>]: <message> <metadata-json>``.

    Metadata is omitted when empty. The level is wrapped in ANSI colors
    unless ``colors`` is False. A formatted traceback, if present, goes on
    the following lines.
    """

    def __init__(self, colors: bool = True):
        self.colors = colors

    def __call__(self, logger: logging.Logger, method_name: str, event_dict: EventDict) -> str:
        event_dict = dict(event_dict)
        timestamp = event_dict.pop("timestamp", "")
        level = event_dict.pop("level", method_name)
        if "event" in event_dict:
            message = event_dict.pop("event")
        else:
            message = event_dict.pop("message", "")
        exception = event_dict.pop("exception", None)

        if self.colors and level in LEVEL_COLORS:
            level = f"{LEVEL_COLORS[level]}{level}{_RESET}"

        line = f"{timestamp} [{level}]: {message}"
        if event_dict:
            line += " " + json.dumps(event_dict, default=str, separators=(",", ":"))
        if exception:
            line += "\n" + exception
        return line


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def _build_file_sinks(log_dir: str, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    """Create error-only and combined rotating sinks, skipping any that cannot be opened."""
    sinks: list[logging.Handler] = []
    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logging.getLogger(__name__).warning(f"Log directory {log_dir} unavailable: {e}")
        return sinks

    for filename, level in (("error.log", logging.ERROR), ("combined.log", logging.NOTSET)):
        try:
            sink = RotatingFileSink(
                Path(log_dir) / filename,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            logging.getLogger(__name__).warning(f"File log sink {filename} disabled: {e}")
            continue
        sink.setLevel(level)
        sink.setFormatter(logging.Formatter("%(message)s"))
        sinks.append(sink)
    return sinks


def configure_logging(
    log_level: str = "INFO",
    environment: str = "development",
    colorized: bool = True,
    log_dir: str = "/var/log/app",
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
) -> list[logging.Handler]:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: "production" switches to JSON output and file sinks
        colorized: Colorize the level in development output
        log_dir: Directory of error.log / combined.log (production only)
        max_bytes: Size at which a file sink rotates
        backup_count: Rotated files kept per sink

    Returns:
        list: The stdlib handlers now attached to the root logger

    Output formats:

    JSON (production):
        {"method": "GET", "path": "/health", "status": 200, "duration_ms": 1.2,
         "timestamp": "2025-01-15T10:30:45.123Z", "level": "info",
         "message": "HTTP Request", "service": "va-crm-backend"}

    Console (development):
        2025-01-15T10:30:45.123Z [info]: HTTP Request {"method":"GET","path":"/health"}
    """
    production = environment == "production"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        redact_sensitive_fields,
        add_timestamp,
        add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if production:
        processors = shared_processors + [
            add_service_metadata,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [DevLineRenderer(colors=colorized)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    # Replace whatever a previous call installed
    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    console = ConsoleHandler()
    console.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console)
    _installed_handlers.append(console)
    root.setLevel(getattr(logging, log_level.upper()))

    if production:
        for sink in _build_file_sinks(log_dir, max_bytes, backup_count):
            root.addHandler(sink)
            _installed_handlers.append(sink)

    return list(_installed_handlers)


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Payment recorded", payment_id=42, amount=120.0)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Usage:
        with RequestContext() as ctx:
            logger.info("Processing request")  # request_id auto-injected
    """

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self._token = None

    def __enter__(self):
        self._token = request_id_var.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            request_id_var.reset(self._token)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()
