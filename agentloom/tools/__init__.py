from .base import ToolContext, ToolExecutor, ToolName, ToolRegistry, ToolResult, ToolSpec
from .self_adjust import SELF_ADJUST_TOOLS
from .workspace import WORKSPACE_TOOLS


def build_default_registry() -> ToolRegistry:
    """Registry holding every built-in tool."""
    return ToolRegistry([*SELF_ADJUST_TOOLS, *WORKSPACE_TOOLS])


__all__ = [
    "SELF_ADJUST_TOOLS",
    "WORKSPACE_TOOLS",
    "ToolContext",
    "ToolExecutor",
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "build_default_registry",
]
