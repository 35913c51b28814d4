"""VA CRM backend: HTTP API with structured logging, metrics and client telemetry."""

__version__ = "0.1.0"
