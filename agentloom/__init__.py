"""agentloom: step-graph orchestration of LLM agents."""

from .agent import AgentRuntime, PydanticAICompletionService, RunResult
from .config import AgentloomConfig, load_config
from .contracts import (
    Agent,
    AgentExecution,
    Step,
    StepCondition,
    Team,
    WorkflowDefinition,
    WorkflowExecution,
)
from .dispatch import AgentExecutionWorker, DispatchReceipt, ExecutionDispatcher
from .engine import StepGraphExecutor
from .messaging import AgentMessageBus
from .persistence import get_repository
from .services import build_services
from .team import TeamCoordinator, TeamRunResult
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Agent",
    "AgentExecution",
    "AgentExecutionWorker",
    "AgentMessageBus",
    "AgentRuntime",
    "AgentloomConfig",
    "DispatchReceipt",
    "ExecutionDispatcher",
    "PydanticAICompletionService",
    "RunResult",
    "Step",
    "StepCondition",
    "StepGraphExecutor",
    "Team",
    "TeamCoordinator",
    "TeamRunResult",
    "WorkflowDefinition",
    "WorkflowExecution",
    "build_services",
    "get_repository",
    "get_transport",
    "load_config",
]
