"""
FastAPI application for the VA CRM backend.

Provides:
- Health probe (/health)
- Prometheus metrics (/metrics, Basic auth in production)
- Client telemetry ingestion (POST /api/metrics)

The CRUD routers (students, courses, enrollments, payments, dashboard,
upload) are mounted by the deployment on top of this application and are
observed by the same logging and metrics middleware.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_backend import __version__
from crm_backend.config import Settings, get_settings
from crm_backend.observability.health import HealthChecker
from crm_backend.observability.logging import configure_logging, get_logger
from crm_backend.observability.logging_middleware import (
    HTTPLoggingMiddleware,
    log_unhandled_error,
)
from crm_backend.observability.metrics import (
    EventLoopLagMonitor,
    MetricsRegistry,
    get_metrics_registry,
)
from crm_backend.observability.middleware import PrometheusMiddleware
from crm_backend.observability.origin_guard import OriginGuardMiddleware
from crm_backend.observability.request_limits import RequestSizeLimitMiddleware
from crm_backend.routers import system_router, telemetry_router

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Terminal error handling: unmatched routes and unhandled exceptions."""

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        # No "route" in scope means the router found nothing to dispatch to
        if exc.status_code == status.HTTP_404_NOT_FOUND and "route" not in request.scope:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "Route not found"},
            )
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log_unhandled_error(request, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Something went wrong!",
                "message": str(exc)
                if settings.environment == "development"
                else "Internal server error",
            },
        )


def create_app(
    settings: Settings | None = None,
    metrics: MetricsRegistry | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to environment-derived settings)
        metrics: Metrics registry (defaults to the process-wide registry)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    metrics = metrics or get_metrics_registry()

    configure_logging(
        log_level=settings.logging.level,
        environment=settings.environment,
        colorized=settings.logging.colorized,
        log_dir=settings.logging.dir,
        max_bytes=settings.logging.max_bytes,
        backup_count=settings.logging.backup_count,
    )

    lag_monitor = EventLoopLagMonitor(
        metrics, interval=settings.metrics.event_loop_lag_interval_seconds
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "=== VA CRM API starting ===",
            environment=settings.environment,
            version=settings.service_version,
        )
        lag_monitor.start()
        try:
            yield
        finally:
            await lag_monitor.stop()
            logger.info("=== Shutdown complete ===")

    app = FastAPI(
        title="VA CRM API",
        description="CRM backend: students, courses, enrollments, payments",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.metrics = metrics
    app.state.health_checker = HealthChecker()

    # Middleware order (processed in reverse order of registration):
    # 1. RequestSizeLimitMiddleware (innermost) - Rejects oversized bodies
    # 2. OriginGuardMiddleware - 403 for origins outside the allow-list
    # 3. CORSMiddleware - Preflight answers and CORS response headers
    # 4. PrometheusMiddleware - Request metrics by route template
    # 5. HTTPLoggingMiddleware (outermost) - Request context + request log
    app.add_middleware(
        RequestSizeLimitMiddleware,
        max_body_size=settings.service.max_request_body_size,
    )
    app.add_middleware(
        OriginGuardMiddleware,
        allow_origins=settings.cors.origins_list,
        allow_origin_regex=settings.cors.origin_regex,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origins_list,
        allow_origin_regex=settings.cors.origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        PrometheusMiddleware,
        metrics=metrics,
        slow_request_threshold=settings.metrics.slow_request_threshold_seconds,
    )
    app.add_middleware(HTTPLoggingMiddleware)

    register_exception_handlers(app, settings)

    app.include_router(system_router)
    app.include_router(telemetry_router)

    logger.info(
        "Application configured",
        cors_origins=settings.cors.origins_list,
        metrics_auth=settings.metrics_auth_required,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "crm_backend.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level="info",
    )
