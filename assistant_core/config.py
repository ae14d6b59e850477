"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for Assistant Core.
It provides type safety, validation, and automatic loading from environment variables
and .env files. All settings are validated at startup to fail fast with clear errors.
"""

import json
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import (
    AliasChoices,
    BeforeValidator,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.networks import HttpUrl
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_string_list(v: Any) -> List[str]:
    """
    Parse string lists from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - JSON array string: '["github", "repo"]'
    - Comma-separated string: 'github,repo'
    - Empty string or None: returns empty list
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple, set, frozenset)):
        return list(v)
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        # Handle JSON array format
        if s.startswith("["):
            return json.loads(s)
        # Parse comma-separated values
        return [item.strip() for item in s.split(",") if item.strip()]
    return v


StringList = Annotated[List[str], NoDecode, BeforeValidator(parse_string_list)]


DEFAULT_TOOL_TRIGGER_KEYWORDS = [
    # AI development topics
    "mcp",
    "model context protocol",
    "openai",
    "chatgpt",
    "gpt",
    "claude",
    "anthropic",
    "llm",
    "large language model",
    "language model",
    "embeddings",
    "vector",
    "semantic",
    "rag",
    "retrieval augmented generation",
    "chatbot",
    "prompt",
    "prompting",
    "system prompt",
    "tool calling",
    "tools",
    "ai sdk",
    "openai sdk",
    "anthropic sdk",
    "ai",
    "sdk",
    # Temporal keywords (latest/current info)
    "latest",
    "newest",
    "recent",
    "current",
    "new",
    "updated",
    "latest release",
    "new version",
    "what's new",
    "recent changes",
    "new features",
    "most accurate",
    # Code hosting references
    "github",
    "repo",
    "repository",
    # Documentation
    "docs",
    "documentation",
]

DEFAULT_ESSENTIAL_TOOLS = [
    "docs_microsoft_docs_search",
    "docs_microsoft_docs_fetch",
    "tavily_tavily-search",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Assistant Core",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    # ===== API Security =====
    api_key: Optional[str] = Field(
        default=None,
        description="API key for authenticating requests to this service",
        min_length=32,
    )

    cors_origins: StringList = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # ===== Database Configuration =====
    database_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="SQLAlchemy async URL for the conversation store",
    )

    database_pool_size: int = Field(
        default=10, description="Database connection pool size", ge=1, le=100
    )

    # ===== Generation Engine =====
    openai_api_key: Optional[str] = Field(
        default=None, description="API key for the chat and embedding models"
    )

    openai_base_url: HttpUrl = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-compatible API",
    )

    chat_model: str = Field(
        default="openai:gpt-4o-mini",
        description="pydantic-ai model identifier used for generation",
    )

    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model used for the semantic cache",
    )

    embedding_dimensions: int = Field(
        default=1536, description="Embedding vector length", ge=8, le=8192
    )

    max_output_tokens: int = Field(
        default=4096, description="Maximum tokens per generated answer", ge=1
    )

    # ===== Session Cache =====
    session_ttl_hours: float = Field(
        default=2, description="Lifetime of a cached session after its last write", gt=0
    )

    session_cache_maxsize: int = Field(
        default=5000, description="Maximum cached sessions before LRU eviction", ge=1
    )

    # ===== Response Cache =====
    exact_max_depth: int = Field(
        default=2, description="Deepest context served by the exact tier", ge=0
    )

    semantic_min_depth: int = Field(
        default=3, description="Shallowest context searched in the semantic tier", ge=0
    )

    semantic_max_depth: int = Field(
        default=8, description="Deepest context served by the semantic tier", ge=0
    )

    similarity_threshold: float = Field(
        default=0.85,
        description="Minimum cosine similarity for a semantic hit",
        ge=0.0,
        le=1.0,
    )

    base_cache_lifetime_days: int = Field(
        default=21, description="Lifetime of a single-message answer", ge=1
    )

    cache_lifetime_decay_factor: float = Field(
        default=0.7,
        description="Per-message lifetime decay factor",
        gt=0.0,
        le=1.0,
    )

    resource_cache_days: int = Field(
        default=15, description="Lifetime of resource summaries keyed by URL", ge=1
    )

    response_cache_maxsize: int = Field(
        default=20000, description="Maximum entries per response cache tier", ge=1
    )

    # ===== Tool Routing =====
    tool_trigger_keywords: StringList = Field(
        default=DEFAULT_TOOL_TRIGGER_KEYWORDS,
        description="Words that expose the full tool catalog for a turn",
    )

    essential_tools: StringList = Field(
        default=DEFAULT_ESSENTIAL_TOOLS,
        description="Tools offered when no trigger keyword is present",
    )

    mcp_github_token: Optional[str] = Field(
        default=None, description="GitHub personal access token for the GitHub MCP server"
    )

    mcp_github_image: str = Field(
        default="ghcr.io/github/github-mcp-server",
        description="Container image for the GitHub MCP server",
    )

    mcp_docs_server_url: Optional[HttpUrl] = Field(
        default="https://learn.microsoft.com/api/mcp",
        description="Microsoft Docs MCP server URL",
    )

    mcp_youtube_token: Optional[str] = Field(
        default=None, description="YouTube Data API key for the YouTube MCP server"
    )

    mcp_youtube_server_url: Optional[HttpUrl] = Field(
        default=None, description="YouTube MCP server URL"
    )

    mcp_tavily_token: Optional[str] = Field(
        default=None, description="Tavily API key for the Tavily MCP server"
    )

    mcp_tavily_server_url: HttpUrl = Field(
        default="https://mcp.tavily.com/mcp/",
        description="Tavily MCP server URL",
    )

    # ===== Conversation limits =====
    context_message_ceiling: int = Field(
        default=100,
        description="Message count at which a conversation is marked context-full",
        ge=1,
    )

    context_token_ceiling: int = Field(
        default=50000,
        description="Token usage at which a conversation is marked context-full",
        ge=1,
    )

    # ===== Streaming =====
    stream_chunk_words: int = Field(
        default=3, description="Words per chunk when replaying a cached answer", ge=1
    )

    stream_chunk_delay_ms: int = Field(
        default=50, description="Delay between replayed chunks", ge=0, le=5000
    )

    chunk_channel_size: int = Field(
        default=256, description="Bounded chunk channel capacity per turn", ge=1
    )

    persist_partial_on_cancel: bool = Field(
        default=True,
        description="Persist text produced before a turn was cancelled",
    )

    # ===== Timeouts =====
    tool_call_timeout_seconds: float = Field(
        default=30, description="Deadline for a single tool invocation", gt=0
    )

    provider_probe_timeout_seconds: float = Field(
        default=5, description="Deadline for a liveness probe", gt=0
    )

    provider_start_timeout_seconds: float = Field(
        default=60, description="Deadline for bringing up one provider", gt=0
    )

    cache_timeout_seconds: float = Field(
        default=2, description="Deadline for a single cache operation", gt=0
    )

    embedding_timeout_seconds: float = Field(
        default=10, description="Deadline for computing an embedding", gt=0
    )

    generation_timeout_seconds: float = Field(
        default=300, description="Deadline for one generation call", gt=0
    )
    title_timeout_seconds: float = Field(
        default=15, description="Deadline for generating a conversation title", gt=0
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("tool_trigger_keywords", "essential_tools")
    @classmethod
    def normalize_vocabulary(cls, v: List[str]) -> List[str]:
        """Lowercase and de-duplicate vocabulary while preserving order."""
        seen = []
        for item in v:
            item = item.strip().lower()
            if item and item not in seen:
                seen.append(item)
        return seen

    @model_validator(mode="after")
    def validate_depth_buckets(self) -> "Settings":
        """The exact and semantic depth buckets must not overlap."""
        if self.semantic_min_depth <= self.exact_max_depth:
            raise ValueError(
                "semantic_min_depth must be greater than exact_max_depth "
                f"({self.semantic_min_depth} <= {self.exact_max_depth})"
            )
        if self.semantic_max_depth < self.semantic_min_depth:
            raise ValueError("semantic_max_depth must be >= semantic_min_depth")
        return self

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def session_ttl_seconds(self) -> float:
        return self.session_ttl_hours * 3600

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        sensitive_fields = [
            "api_key",
            "openai_api_key",
            "mcp_github_token",
            "mcp_youtube_token",
            "mcp_tavily_token",
            "database_url",
        ]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                # Show first 4 chars for debugging, mask the rest
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        # Vocabularies are long and not useful in startup logs
        config_dict["tool_trigger_keywords"] = len(self.tool_trigger_keywords)

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if not self.database_url:
                errors.append("DATABASE_URL is required in production")

            if not self.api_key:
                errors.append("API_KEY is required in production")

            if not self.openai_api_key:
                errors.append("OPENAI_API_KEY is required in production")

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    This ensures we only load and validate settings once during application startup.
    Use this function as a FastAPI dependency for injecting settings.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise
        except Exception as e:
            logger.error("Unexpected error loading settings", error=str(e))
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
