"""
Client telemetry ingestion.

Receives batches posted by TelemetryClient and turns them into:
- one structured log record per batch (plus one per client error)
- client_telemetry_events_total{type} increments
- client_web_vitals{name} observations for the five web vitals
"""

from collections import Counter

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from crm_backend.observability.logging import get_logger
from crm_backend.observability.metrics import MetricsRegistry
from crm_backend.routers.system import get_metrics
from crm_backend.telemetry.events import ErrorEvent, PerformanceEvent, TelemetryBatch

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Telemetry"])


class IngestResponse(BaseModel):
    accepted: int


@router.post(
    "/metrics",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_client_metrics(
    batch: TelemetryBatch,
    metrics: MetricsRegistry = Depends(get_metrics),
) -> IngestResponse:
    """Accept a batch of client telemetry events."""
    by_type = Counter()

    for event in batch.metrics:
        by_type[event.type] += 1
        metrics.track_client_event(event.type)

        if isinstance(event, PerformanceEvent) and event.value is not None:
            metrics.track_web_vital(event.name, event.value)

        elif isinstance(event, ErrorEvent):
            logger.warning(
                "Client error reported",
                error_type=event.error_type,
                client_message=event.message,
                source=event.source,
                line=event.line,
                page=event.path,
                user_agent=event.user_agent,
            )

    logger.info(
        "Client telemetry received",
        events=len(batch.metrics),
        by_type=dict(by_type),
        environment=batch.environment,
    )

    return IngestResponse(accepted=len(batch.metrics))
