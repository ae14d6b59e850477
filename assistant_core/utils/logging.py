"""
Structured logging configuration for Assistant Core.

This module provides centralized logging configuration using structlog,
with support for turn context tracking and environment-specific formatting.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for turn-scoped data (request_id, conversation_id, user_id)
turn_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "turn_context", default=None
)


class TurnContextProcessor:
    """
    Add turn context to all log entries.

    Every log line emitted while a turn is being processed carries the
    conversation and request identifiers bound by `set_turn_context`.
    """

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        ctx = turn_context.get()
        if ctx is not None:
            for key, value in ctx.items():
                event_dict.setdefault(key, value)
        return event_dict


class EnvironmentProcessor:
    """Add app version and environment to log entries."""

    def __init__(self, app_env: str, app_version: str):
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Filter sensitive data from log entries.

    Masks fields like API keys and provider tokens to prevent accidental
    exposure in logs. Token *counts* are left alone.
    """
    sensitive_keys = [
        "password",
        "api_key",
        "secret",
        "authorization",
        "access_token",
        "github_token",
        "credential",
    ]

    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in sensitive_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 8:
                value = event_dict[key]
                event_dict[key] = f"{value[:4]}...{value[-4:]}"
            else:
                event_dict[key] = "***REDACTED***"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        app_env: Application environment (development, staging, production)
        app_version: Application version for tracking
        json_format: Force JSON output (None = auto-detect based on environment)

    Development gets human-readable console output, staging and production
    get JSON output for log aggregation.
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        TurnContextProcessor(),
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (usually __name__ from the calling module)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def set_turn_context(**kwargs: Any) -> None:
    """
    Set turn-scoped context that will be included in all logs.

    Args:
        **kwargs: Key-value pairs to add, e.g. request_id, conversation_id, user_id

    Example:
        set_turn_context(request_id="123", conversation_id="abc", user_id="u-1")
    """
    ctx = dict(turn_context.get() or {})
    ctx.update(kwargs)
    turn_context.set(ctx)


def clear_turn_context() -> None:
    """Clear the turn context (called when a turn finishes)."""
    turn_context.set(None)
