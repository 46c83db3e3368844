from .completion import (
    ChatMessage,
    Completion,
    CompletionService,
    PydanticAICompletionService,
    ToolCall,
)
from .prompts import CAPABILITY_TOOLS, DEFAULT_READ_ONLY_TOOLS, allowed_tool_names, build_system_prompt
from .runtime import AgentRuntime, RunResult

__all__ = [
    "AgentRuntime",
    "CAPABILITY_TOOLS",
    "ChatMessage",
    "Completion",
    "CompletionService",
    "DEFAULT_READ_ONLY_TOOLS",
    "PydanticAICompletionService",
    "RunResult",
    "ToolCall",
    "allowed_tool_names",
    "build_system_prompt",
]
