"""Execution ledger, idempotent dispatch and the background worker."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from .agent import AgentRuntime
from .constants import (
    AGENT_EXECUTION_TOPIC,
    COST_PER_1K_TOKENS,
    DEFAULT_IDEMPOTENCY_TTL,
    DEFAULT_NOTE_LIMIT,
    MAX_DELIVERY_ATTEMPTS,
    WORKFLOW_EXECUTION_TOPIC,
)
from .context import run_output
from .contracts import (
    AgentExecution,
    AgentExecutionStatus,
    DefinitionStatus,
    ProgressEvent,
    TaskEnvelope,
    TriggerType,
    dispatch_handle_for,
    new_id,
    utcnow,
)
from .engine import StepGraphExecutor
from .errors import DispatchError, WorkflowValidationError
from .persistence import OrchestrationRepository
from .tools import ToolContext
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class DispatchReceipt(BaseModel):
    execution_id: str
    dispatch_handle: str
    duplicate: bool = False


class ExecutionDispatcher:
    """Service responsible for recording and dispatching agent executions.

    The ledger row is written in ``pending`` before the task runtime sees the
    job, so the execution id is always resolvable by the time a worker
    claims it.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        transport: BaseTransport,
        engine: Optional[StepGraphExecutor] = None,
        idempotency_ttl: int = DEFAULT_IDEMPOTENCY_TTL,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.engine = engine
        self.idempotency_ttl = idempotency_ttl

    async def enqueue(
        self,
        agent_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        workspace_id: str = "default",
    ) -> DispatchReceipt:
        """Record and dispatch one agent execution.

        Args:
            agent_id: Agent to run.
            inputs: Task inputs stored on the ledger row.
            triggered_by: Free-form origin of the request.
            idempotency_key: Caller key; a repeat within the TTL returns the
                first receipt instead of creating a second execution.
            workspace_id: Workspace the agent must belong to.

        Returns:
            Receipt with the execution id and dispatch handle.
        """
        agent = await self.repository.get_agent(agent_id)
        if agent is None or agent.workspace_id != workspace_id:
            raise WorkflowValidationError(f"Agent {agent_id} not found")
        if agent.status != DefinitionStatus.ACTIVE:
            raise WorkflowValidationError(
                f"Agent {agent_id} is {agent.status.value}, not active"
            )

        execution_id = new_id()
        key = idempotency_key or f"agent:{agent_id}:exec:{execution_id}"
        handle = dispatch_handle_for(execution_id)
        execution = AgentExecution(
            id=execution_id,
            workspace_id=workspace_id,
            agent_id=agent_id,
            input=inputs or {},
            triggered_by=triggered_by,
            idempotency_key=key,
            dispatch_handle=handle,
        )
        # The row exists before the key is bound, so a bound key always
        # resolves to a row.
        await self.repository.save_agent_execution(execution)

        if idempotency_key:
            existing = await self._claim_key(idempotency_key, execution_id)
            if existing is not None:
                logger.info(
                    f"Duplicate enqueue for key={idempotency_key}; returning execution_id={existing.id}"
                )
                return DispatchReceipt(
                    execution_id=existing.id,
                    dispatch_handle=existing.dispatch_handle or dispatch_handle_for(existing.id),
                    duplicate=True,
                )

        try:
            handle = await self.transport.submit(
                AGENT_EXECUTION_TOPIC,
                {"executionId": execution_id, "agentId": agent_id},
                handle=handle,
                idempotency_key=key,
                ttl=self.idempotency_ttl,
            )
        except Exception as e:
            logger.error(f"Dispatch failed for execution_id={execution_id}: {e}")
            await self.repository.transition_agent_execution(
                execution_id,
                AgentExecutionStatus.PENDING,
                AgentExecutionStatus.FAILED,
                error=f"Dispatch failed: {e}",
                completed_at=utcnow(),
            )
            if idempotency_key:
                await self.repository.release_idempotency_key(idempotency_key)
            raise DispatchError(
                f"Failed to dispatch execution {execution_id}: {e}",
                details={"executionId": execution_id},
            ) from e

        logger.info(
            f"Enqueued execution_id={execution_id} for agent_id={agent_id} handle={handle}"
        )
        return DispatchReceipt(execution_id=execution_id, dispatch_handle=handle)

    async def _claim_key(self, key: str, execution_id: str) -> Optional[AgentExecution]:
        """Bind ``key`` to our saved row, or drop the row and return the bound one."""
        existing_id = await self.repository.claim_idempotency_key(
            key, execution_id, self.idempotency_ttl
        )
        if existing_id is None:
            return None

        existing = await self.repository.get_agent_execution(existing_id)
        if existing is None:
            # The bound row was removed out of band; the key is ours to take.
            logger.warning(f"Key {key} bound to missing execution {existing_id}; reclaiming")
            await self.repository.release_idempotency_key(key)
            existing_id = await self.repository.claim_idempotency_key(
                key, execution_id, self.idempotency_ttl
            )
            if existing_id is None:
                return None
            existing = await self.repository.get_agent_execution(existing_id)
            if existing is None:
                await self.repository.delete_agent_execution(execution_id)
                raise DispatchError(f"Idempotency key {key} is bound to a missing execution")

        await self.repository.delete_agent_execution(execution_id)
        return existing

    async def submit_workflow(
        self,
        workflow_id: str,
        trigger_input: Optional[Dict[str, Any]] = None,
        workspace_id: str = "default",
        *,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> Dict[str, str]:
        """Accept a workflow run and return ``{"executionId": ...}`` immediately."""
        if self.engine is None:
            raise DispatchError("No workflow engine configured for this dispatcher")
        execution = await self.engine.create_execution(
            workflow_id,
            trigger_input,
            workspace_id,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
        )
        try:
            await self.transport.submit(
                WORKFLOW_EXECUTION_TOPIC,
                {"executionId": execution.id, "workflowId": workflow_id},
                handle=dispatch_handle_for(execution.id),
                idempotency_key=f"workflow:{workflow_id}:exec:{execution.id}",
                ttl=self.idempotency_ttl,
            )
        except Exception as e:
            logger.error(f"Dispatch failed for workflow execution_id={execution.id}: {e}")
            await self.engine.cancel(execution.id)
            raise DispatchError(
                f"Failed to dispatch workflow execution {execution.id}: {e}",
                details={"executionId": execution.id},
            ) from e
        return {"executionId": execution.id}


def build_agent_task(inputs: Dict[str, Any]) -> str:
    """Derive the task text from ledger inputs."""
    for field in ("task", "message", "prompt"):
        value = inputs.get(field)
        if isinstance(value, str) and value:
            return value
    if inputs:
        return f"Execute your task with these inputs:\n{json.dumps(inputs, indent=2, default=str)}"
    return "Execute your task."


class AgentExecutionWorker:
    """Executes queued agent and workflow jobs from the task runtime."""

    def __init__(
        self,
        repository: OrchestrationRepository,
        transport: BaseTransport,
        runtime: AgentRuntime,
        engine: Optional[StepGraphExecutor] = None,
        note_limit: int = DEFAULT_NOTE_LIMIT,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.runtime = runtime
        self.engine = engine
        self.note_limit = note_limit

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume both job topics until ``lifespan`` seconds have passed."""
        consumers = [self._consume(AGENT_EXECUTION_TOPIC, lifespan)]
        if self.engine is not None:
            consumers.append(self._consume(WORKFLOW_EXECUTION_TOPIC, lifespan))
        await asyncio.gather(*consumers)

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        async for raw_message, envelope in self.transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.handle(envelope)
            except Exception:
                requeue = envelope.attempt < MAX_DELIVERY_ATTEMPTS
                logger.exception(
                    f"Job {envelope.handle} on {topic} crashed (attempt {envelope.attempt}); "
                    f"requeue={requeue}"
                )
                await self.transport.nack(raw_message, requeue=requeue)
                continue
            await self.transport.ack(raw_message)

    async def handle(self, envelope: TaskEnvelope) -> None:
        execution_id = envelope.payload.get("executionId")
        if not execution_id:
            logger.error(f"Job {envelope.handle} on {envelope.topic} has no executionId")
            return
        if envelope.topic == WORKFLOW_EXECUTION_TOPIC:
            await self.run_workflow_execution(execution_id)
        else:
            await self.run_agent_execution(execution_id)

    async def run_workflow_execution(self, execution_id: str) -> None:
        if self.engine is None:
            logger.error(f"No engine to run workflow execution_id={execution_id}")
            return
        try:
            await self.engine.run_execution(execution_id)
        except Exception:
            logger.exception(f"Workflow execution_id={execution_id} crashed")

    async def run_agent_execution(self, execution_id: str) -> Optional[AgentExecution]:
        """Claim and run one ledger row. Returns ``None`` if another worker owns it."""
        started = time.monotonic()
        claimed = await self.repository.transition_agent_execution(
            execution_id,
            AgentExecutionStatus.PENDING,
            AgentExecutionStatus.RUNNING,
            started_at=utcnow(),
        )
        if claimed is None:
            logger.info(f"Execution {execution_id} already claimed or finished; skipping")
            return None

        await self._broadcast(claimed, "execution_started")
        status, fields = await self._run(claimed)
        fields["duration_ms"] = int((time.monotonic() - started) * 1000)
        fields["completed_at"] = utcnow()

        finished = await self.repository.transition_agent_execution(
            execution_id, AgentExecutionStatus.RUNNING, status, **fields
        )
        if finished is None:
            logger.warning(f"Execution {execution_id} left running state before completion")
            return await self.repository.get_agent_execution(execution_id)

        await self._record_agent_run(finished.agent_id)
        await self._broadcast(finished, "execution_finished")
        logger.info(
            f"Execution {execution_id} {status.value} in {fields['duration_ms']}ms"
        )
        return finished

    async def _run(
        self, execution: AgentExecution
    ) -> Tuple[AgentExecutionStatus, Dict[str, Any]]:
        agent = await self.repository.get_agent(execution.agent_id)
        if agent is None:
            return AgentExecutionStatus.FAILED, {"error": f"Agent {execution.agent_id} not found"}

        tool_context = ToolContext(
            workspace_id=execution.workspace_id,
            acting_identity=execution.triggered_by or f"agent:{agent.id}",
            repository=self.repository,
            agent_id=agent.id,
            note_limit=self.note_limit,
        )
        try:
            run = await self.runtime.run(agent, build_agent_task(execution.input), tool_context)
        except Exception as e:
            logger.exception(f"Agent run failed for execution_id={execution.id}")
            return AgentExecutionStatus.FAILED, {"error": str(e)}

        return AgentExecutionStatus.COMPLETED, {
            "output": {**run_output(run), "toolResults": run.tool_results},
            "tokens_used": run.tokens_used,
            "cost": round(run.tokens_used / 1000 * COST_PER_1K_TOKENS, 6),
        }

    async def _record_agent_run(self, agent_id: str) -> None:
        agent = await self.repository.get_agent(agent_id)
        if agent is None:
            return
        agent.execution_count += 1
        agent.last_executed_at = utcnow()
        await self.repository.save_agent(agent)

    async def _broadcast(self, execution: AgentExecution, event: str) -> None:
        progress = ProgressEvent(
            event=event,
            execution_id=execution.id,
            workspace_id=execution.workspace_id,
            status=execution.status.value,
            data={"agentId": execution.agent_id, "error": execution.error},
        )
        channel = execution.dispatch_handle or dispatch_handle_for(execution.id)
        try:
            await self.transport.broadcast(channel, progress)
        except Exception as e:
            logger.warning(f"Failed to broadcast {event} on {channel}: {e}")
