"""Exception hierarchy for the orchestration core."""

from __future__ import annotations

from typing import Any, Optional


class AgentloomError(Exception):
    """Base class for all agentloom errors."""

    kind = "error"

    def __init__(self, message: str, *, step_id: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.details = details


class WorkflowValidationError(AgentloomError):
    """A submission was rejected before any execution started."""

    kind = "validation_error"


class NotFoundError(AgentloomError):
    kind = "not_found"


class StepTimeout(AgentloomError):
    """A step exceeded its configured timeout."""

    kind = "step_timeout"


class ToolExecutionError(AgentloomError):
    """Raised inside tool handlers; converted to a failed ToolResult at the boundary."""

    kind = "tool_error"


class AgentRuntimeError(AgentloomError):
    """The completion service failed after the retry budget was spent."""

    kind = "agent_runtime_error"

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class CycleDetected(AgentloomError):
    """The per-run step execution bound was exceeded."""

    kind = "cycle_detected"


class DispatchError(AgentloomError):
    """Handing an execution to the task runtime failed."""

    kind = "dispatch_error"
