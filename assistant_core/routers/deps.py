"""
Shared FastAPI dependencies: API key check, caller identity, services.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from assistant_core.config import Settings
from assistant_core.services.container import AppServices
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


def get_services(request: Request) -> AppServices:
    services: Optional[AppServices] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


def get_app_settings(services: AppServices = Depends(get_services)) -> Settings:  # noqa: B008
    return services.settings


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> str:
    """Verify the API key from the request header."""
    if not x_api_key or x_api_key != settings.api_key:
        logger.warning(
            "Invalid API key attempt",
            provided_key_prefix=x_api_key[:8] if x_api_key else None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """
    Caller identity, resolved upstream by the authentication layer.

    The gateway in front of this service authenticates users and forwards
    the user id in a header.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    return x_user_id.strip()
