"""
Observability infrastructure for production monitoring.

Components:
- logging.py: Structured logging (colorized dev lines, JSON + rotating files in prod)
- logging_middleware.py: One structured record per HTTP request
- metrics.py: Prometheus registry (request, DB, client telemetry, runtime metrics)
- middleware.py: Request metrics labelled by route template
- health.py: Health probe models
- request_limits.py: Request body size cap
- origin_guard.py: Rejects requests from origins outside the CORS allow-list
"""
