"""
API routers for the CRM backend.

Routers:
- system: /health and /metrics
- telemetry: client telemetry ingestion (POST /api/metrics)
"""

from crm_backend.routers.system import router as system_router
from crm_backend.routers.telemetry import router as telemetry_router

__all__ = ["system_router", "telemetry_router"]
