"""
Administrative cache operations.

Rebuilding the semantic index is destructive; readers see cache misses while
it runs.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from assistant_core.routers.deps import get_services, verify_api_key
from assistant_core.services.container import AppServices
from assistant_core.utils.logging import get_logger

router = APIRouter(prefix="/admin/cache", dependencies=[Depends(verify_api_key)])
logger = get_logger(__name__)


class InvalidateRequest(BaseModel):
    topics: List[str] = Field(..., min_length=1, description="Topic tags to invalidate")


def _require(ok: bool, operation: str) -> None:
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Cache {operation} failed",
        )


@router.post("/recreate", summary="Drop and rebuild the semantic index")
async def recreate_index(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, str]:
    logger.warning("Semantic index recreate requested")
    _require(await services.response_cache.recreate_index(), "recreate")
    return {"status": "recreated"}


@router.post("/refresh", summary="Apply the index schema without clearing data")
async def refresh_index(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, str]:
    _require(await services.response_cache.refresh_index(), "refresh")
    return {"status": "refreshed"}


@router.post("/clear", summary="Remove all exact and semantic entries")
async def clear_cache(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, int]:
    return {"removed": await services.response_cache.clear_all()}


@router.post("/invalidate", summary="Remove semantic entries by topic")
async def invalidate_topics(
    body: InvalidateRequest,
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, int]:
    return {"removed": await services.response_cache.invalidate_topics(*body.topics)}


@router.get("/stats", summary="Response cache statistics")
async def cache_stats(
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, Any]:
    return await services.response_cache.stats()
