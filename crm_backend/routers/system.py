"""
System endpoints: health probe and Prometheus metrics exposition.

Security:
- /metrics requires HTTP Basic credentials in production. Credentials are
  compared with secrets.compare_digest so response timing does not reveal
  how much of a guess matched.
- /health is always public.
"""

import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from crm_backend.config import MetricsConfig, Settings
from crm_backend.observability.health import HealthChecker, HealthResponse
from crm_backend.observability.logging import get_logger
from crm_backend.observability.metrics import MetricsRegistry

logger = get_logger(__name__)

router = APIRouter(tags=["System"])

METRICS_REALM = "Metrics"

basic_auth = HTTPBasic(realm=METRICS_REALM, auto_error=False)


# Dependencies: application-scoped components stored on app.state
def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_health_checker(request: Request) -> HealthChecker:
    return request.app.state.health_checker


def credentials_match(credentials: HTTPBasicCredentials, config: MetricsConfig) -> bool:
    """Constant-time check of Basic credentials against the configured pair."""
    if not config.has_credentials:
        return False
    username_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), config.username.encode("utf-8")
    )
    password_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), config.password.encode("utf-8")
    )
    return username_ok and password_ok


async def verify_metrics_credentials(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Require valid Basic credentials when running in production.

    The Authorization header is only parsed when auth is required, so a
    malformed header cannot fail an otherwise public scrape.

    Raises:
        HTTPException: 401 with a Basic challenge if credentials are missing,
            malformed or wrong
    """
    if not settings.metrics_auth_required:
        return

    credentials = await basic_auth(request)
    if credentials is None or not credentials_match(credentials, settings.metrics):
        logger.warning("Rejected metrics scrape", reason="missing or invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": f'Basic realm="{METRICS_REALM}"'},
        )


@router.get("/health", response_model=HealthResponse)
async def health(health_checker: HealthChecker = Depends(get_health_checker)) -> HealthResponse:
    """Health check: 200 with status OK while the service is up."""
    return health_checker.check()


@router.get("/metrics", dependencies=[Depends(verify_metrics_credentials)])
async def metrics(registry: MetricsRegistry = Depends(get_metrics)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus exposition format for scraping.
    Serialization failures are logged and answered with an empty 500.
    """
    try:
        metrics_data, content_type = registry.generate()
    except Exception as e:
        logger.error("Error generating metrics", error=str(e), exc_info=True)
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return Response(content=metrics_data, media_type=content_type)
