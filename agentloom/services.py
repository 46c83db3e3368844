"""Wire repository, task runtime, tools and runtime into ready-to-use services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .agent import AgentRuntime, CompletionService, PydanticAICompletionService
from .config import AgentloomConfig, load_config
from .dispatch import AgentExecutionWorker, ExecutionDispatcher
from .engine import StepGraphExecutor
from .persistence import OrchestrationRepository, get_repository
from .team import TeamCoordinator
from .tools import ToolExecutor, build_default_registry
from .transports import BaseTransport, get_transport


@dataclass
class Services:
    config: AgentloomConfig
    repository: OrchestrationRepository
    transport: BaseTransport
    runtime: AgentRuntime
    engine: StepGraphExecutor
    dispatcher: ExecutionDispatcher
    worker: AgentExecutionWorker
    teams: TeamCoordinator


def build_services(
    config: Optional[AgentloomConfig] = None,
    completion: Optional[CompletionService] = None,
    repository: Optional[OrchestrationRepository] = None,
    transport: Optional[BaseTransport] = None,
) -> Services:
    """Build the full service graph from configuration.

    ``completion`` defaults to a pydantic-ai backed service for
    ``config.runtime.model``; tests pass a scripted one instead.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    tools = ToolExecutor(build_default_registry(), timeout=config.runtime.tool_timeout)
    runtime = AgentRuntime(
        completion or PydanticAICompletionService(config.runtime.model),
        tools,
        max_iterations=config.runtime.max_iterations,
        retry_attempts=config.runtime.retry_attempts,
        retry_base=config.runtime.retry_base,
    )
    note_limit = config.tools.note_limit
    engine = StepGraphExecutor(repository, runtime, transport, note_limit=note_limit)
    dispatcher = ExecutionDispatcher(
        repository,
        transport,
        engine=engine,
        idempotency_ttl=config.dispatch.idempotency_ttl,
    )
    worker = AgentExecutionWorker(
        repository, transport, runtime, engine=engine, note_limit=note_limit
    )
    return Services(
        config=config,
        repository=repository,
        transport=transport,
        runtime=runtime,
        engine=engine,
        dispatcher=dispatcher,
        worker=worker,
        teams=TeamCoordinator(repository, runtime, note_limit=note_limit),
    )
