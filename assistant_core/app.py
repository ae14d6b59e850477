"""
FastAPI application entry point for Assistant Core.

This module initializes the FastAPI app with routers, middleware, error
handlers and the service lifecycle. All configuration is loaded from
environment variables via the config module.
"""

import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from assistant_core.config import Settings, get_settings
from assistant_core.errors import (
    AssistantCoreError,
    GenerationFailed,
    MessageNotFound,
    OwnershipViolation,
    ProviderInitFailed,
    TurnInProgress,
)
from assistant_core.routers import admin, chat, health
from assistant_core.services.container import AppServices, build_services
from assistant_core.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

ERROR_STATUS = {
    OwnershipViolation: status.HTTP_404_NOT_FOUND,
    MessageNotFound: status.HTTP_404_NOT_FOUND,
    TurnInProgress: status.HTTP_409_CONFLICT,
    GenerationFailed: status.HTTP_502_BAD_GATEWAY,
    ProviderInitFailed: status.HTTP_503_SERVICE_UNAVAILABLE,
}

HTTP_ERROR_CODES = {
    400: "APP-400-VALIDATION",
    401: "APP-401-AUTH",
    403: "APP-403-FORBIDDEN",
    404: "APP-404-NOT-FOUND",
    409: "APP-409-CONFLICT",
    500: "APP-500-INTERNAL",
    503: "APP-503-UNAVAILABLE",
}


def status_for(exc: AssistantCoreError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AppServices] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings override (defaults to the environment)
        services: Pre-built services; when given, the lifespan neither
            builds nor starts them
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.app_env, settings.app_version)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Starting {settings.app_name}",
            version=settings.app_version,
            environment=settings.app_env,
        )
        settings.log_config()

        if services is not None:
            app.state.services = services
            yield
            return

        try:
            settings.validate_required_for_production()
            built = build_services(settings)
        except ValueError as e:
            logger.error("Startup configuration invalid", error=str(e))
            sys.exit(1)

        if settings.database_url and settings.database_url.startswith("sqlite"):
            from assistant_core.db import create_tables

            await create_tables()

        await built.startup()
        app.state.services = built
        try:
            yield
        finally:
            logger.info(f"Shutting down {settings.app_name}...")
            await built.shutdown()

    app = FastAPI(
        title=settings.app_name,
        description="Conversational assistant with layered response caching and MCP tool routing",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Attach a request ID for tracing and report it back with timing."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{(time.time() - start_time) * 1000:.2f}ms"
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(AssistantCoreError)
    async def core_error_handler(request: Request, exc: AssistantCoreError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log("Request failed", error=exc.code, message=str(exc), status_code=status_code)
        return JSONResponse(
            status_code=status_code,
            content={**exc.to_dict(), "origin": "app", "requestId": _request_id(request)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": HTTP_ERROR_CODES.get(exc.status_code, f"APP-{exc.status_code}"),
                "message": exc.detail,
                "origin": "app",
                "requestId": _request_id(request),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "APP-400-VALIDATION",
                "message": "Request validation failed",
                "details": errors,
                "origin": "app",
                "requestId": _request_id(request),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id(request)
        logger.error(
            "Unhandled exception",
            request_id=request_id,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "APP-500-INTERNAL",
                "message": "An internal error occurred",
                "origin": "app",
                "requestId": request_id,
            },
        )

    app.include_router(health.router, tags=["health"])
    app.include_router(chat.router, prefix="/api/v1", tags=["chat"])
    app.include_router(admin.router, prefix="/api/v1", tags=["admin"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/healthz",
        }

    return app


def main() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    uvicorn.run(
        "assistant_core.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
    )
