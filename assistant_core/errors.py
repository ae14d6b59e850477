"""
Error taxonomy for Assistant Core.

Cache- and tool-layer errors are absorbed or handed to the generation engine
and never reach the caller as failures. Ownership, concurrency and generation
errors do.
"""

from typing import Any, Dict, Optional


class AssistantCoreError(Exception):
    """Base exception for all pipeline errors."""

    code = "APP_UNEXPECTED"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class CacheUnavailable(AssistantCoreError):
    """A cache backend, vector index or embedding call failed."""

    code = "CACHE_UNAVAILABLE"


class IndexRebuildInProgress(CacheUnavailable):
    """The semantic index is being rebuilt; reads must behave as misses."""

    code = "INDEX_REBUILD_IN_PROGRESS"


class ToolError(AssistantCoreError):
    """Base class for tool routing errors."""

    code = "TOOL_EXEC_ERROR"

    def __init__(self, message: str, tool_name: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFound(ToolError):
    """No connected provider exposes the requested tool."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found in any connected provider", tool_name)


class ToolInvocationFailed(ToolError):
    """The owning provider raised or timed out while running a tool."""

    code = "TOOL_INVOCATION_FAILED"

    def __init__(self, tool_name: str, provider: str, reason: str):
        super().__init__(
            f"Tool '{tool_name}' failed on provider '{provider}': {reason}", tool_name
        )
        self.provider = provider
        self.reason = reason


class ProviderInitFailed(AssistantCoreError):
    """A tool provider could not be brought up."""

    code = "MCP_UNAVAILABLE"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Provider '{provider}' failed to initialize: {reason}")
        self.provider = provider


class GenerationFailed(AssistantCoreError):
    """The generation engine failed before or during streaming."""

    code = "MODEL_PROVIDER_ERROR"

    def __init__(self, message: str, partial_content: str = "", message_id: Optional[str] = None):
        super().__init__(message)
        self.partial_content = partial_content
        self.message_id = message_id


class OwnershipViolation(AssistantCoreError):
    """The requesting user does not own the target conversation."""

    code = "CONVERSATION_NOT_FOUND"

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class TurnInProgress(AssistantCoreError):
    """Another turn is already generating for this conversation."""

    code = "TURN_IN_PROGRESS"

    def __init__(self, conversation_id: str):
        super().__init__(
            f"A response is already being generated for conversation '{conversation_id}'"
        )
        self.conversation_id = conversation_id


class MessageNotFound(AssistantCoreError):
    """A message flag update referenced an unknown message."""

    code = "MESSAGE_NOT_FOUND"
