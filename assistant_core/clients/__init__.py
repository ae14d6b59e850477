"""Client modules for external service integrations."""

from .generation import PydanticAIEngine
from .mcp_providers import MCPToolProvider, build_providers

__all__ = [
    "PydanticAIEngine",
    "MCPToolProvider",
    "build_providers",
]
