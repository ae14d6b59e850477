"""
Health check endpoints for service monitoring.

/healthz answers as long as the process is up; the deeper probes report tool
provider connectivity (probed live on every call) and cache statistics.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status

from assistant_core.routers.deps import get_services
from assistant_core.services.container import AppServices
from assistant_core.utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/healthz",
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health status and version information",
)
async def health_check(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, str]:
    logger.debug("Health check requested")
    return {
        "status": "ok",
        "version": services.settings.app_version,
        "environment": services.settings.app_env,
    }


@router.get("/healthz/live", include_in_schema=False)
async def liveness_probe() -> Dict[str, str]:
    """Returns 200 if the process is alive, regardless of dependencies."""
    return {"status": "alive"}


@router.get("/healthz/ready", include_in_schema=False)
async def readiness_probe(
    response: Response,
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, bool]:
    ready = services.tool_router.ready
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"ready": ready}


@router.get(
    "/healthz/tools",
    summary="Tool provider health",
    description="Probes each connected provider live; failing providers are omitted",
)
async def tools_health(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, Any]:
    connected = await services.tool_router.connected_providers()
    router_status = services.tool_router.status()
    return {
        "status": "ok" if connected or not router_status["active"] else "degraded",
        "connected": connected,
        **router_status,
    }


@router.get("/healthz/cache", summary="Cache statistics")
async def cache_health(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, Any]:
    return {
        "response_cache": await services.response_cache.stats(),
        "session_cache": services.session_cache.stats(),
    }
