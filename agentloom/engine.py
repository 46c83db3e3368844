"""StepGraph executor: sequential traversal of a workflow's step graph."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from .agent import AgentRuntime
from .conditions import conditions_met
from .constants import CYCLE_BOUND_FACTOR, DEFAULT_NOTE_LIMIT, MAX_STEP_RETRIES
from .context import build_task, fold_output, run_output
from .contracts import (
    DefinitionStatus,
    ExecutionError,
    ExecutionStatus,
    ProgressEvent,
    Step,
    StepResult,
    StepStatus,
    TriggerType,
    WorkflowDefinition,
    WorkflowExecution,
    dispatch_handle_for,
    utcnow,
)
from .errors import CycleDetected, NotFoundError, StepTimeout, WorkflowValidationError
from .persistence import OrchestrationRepository
from .templates import render_inputs
from .tools import ToolContext
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepGraphExecutor:
    """Drive workflow executions one step at a time.

    A step whose conditions are not met is recorded as a skipped success and
    follows ``on_success`` without calling its agent. A failed step follows
    ``on_failure``; without one the execution fails. No run executes more
    than ``CYCLE_BOUND_FACTOR * len(steps)`` steps.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        runtime: AgentRuntime,
        transport: Optional[BaseTransport] = None,
        note_limit: int = DEFAULT_NOTE_LIMIT,
    ) -> None:
        self.repository = repository
        self.runtime = runtime
        self.transport = transport
        self.note_limit = note_limit

    async def execute(
        self,
        workflow_id: str,
        trigger_input: Optional[Dict[str, Any]] = None,
        workspace_id: str = "default",
        *,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> WorkflowExecution:
        """Validate, create and run an execution to its end (or a pause)."""
        execution = await self.create_execution(
            workflow_id,
            trigger_input,
            workspace_id,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
        )
        return await self.run_execution(execution.id)

    async def create_execution(
        self,
        workflow_id: str,
        trigger_input: Optional[Dict[str, Any]] = None,
        workspace_id: str = "default",
        *,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> WorkflowExecution:
        """Persist a ``pending`` execution. Raises ``WorkflowValidationError`` first if invalid."""
        workflow = await self._load_runnable(workflow_id, workspace_id)
        execution = WorkflowExecution(
            workspace_id=workspace_id,
            workflow_id=workflow.id,
            context=dict(trigger_input or {}),
            trigger_type=trigger_type,
            triggered_by=triggered_by,
        )
        await self.repository.save_execution(execution)
        logger.info(
            f"Created execution_id={execution.id} for workflow_id={workflow.id}"
        )
        return execution

    async def run_execution(self, execution_id: str) -> WorkflowExecution:
        """Run a pending execution, or continue a running one from ``current_step_id``."""
        execution = await self.get_execution(execution_id)
        if execution.status.is_terminal or execution.status == ExecutionStatus.PAUSED:
            return execution

        workflow = await self.repository.get_workflow(execution.workflow_id)
        if workflow is None:
            return await self._finish(
                None,
                execution,
                ExecutionStatus.FAILED,
                ExecutionError(
                    message=f"Workflow {execution.workflow_id} no longer exists",
                    kind=NotFoundError.kind,
                ),
            )

        if execution.status == ExecutionStatus.PENDING:
            first = workflow.first_step()
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = utcnow()
            execution.current_step_id = first.id if first else None
            await self.repository.save_execution(execution)

        return await self._drive(workflow, execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        return await self.repository.list_executions(
            workflow_id=workflow_id, status=status, limit=limit
        )

    async def pause(self, execution_id: str) -> WorkflowExecution:
        """Request a pause; the running traversal stops before its next step."""
        execution = await self.get_execution(execution_id)
        if execution.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            raise WorkflowValidationError(
                f"Cannot pause execution {execution_id} in status {execution.status.value}"
            )
        execution.status = ExecutionStatus.PAUSED
        await self.repository.save_execution(execution)
        logger.info(f"Paused execution_id={execution_id}")
        return execution

    async def resume(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise WorkflowValidationError(
                f"Cannot resume execution {execution_id} in status {execution.status.value}"
            )
        execution.status = (
            ExecutionStatus.RUNNING if execution.started_at else ExecutionStatus.PENDING
        )
        await self.repository.save_execution(execution)
        logger.info(f"Resuming execution_id={execution_id} at step_id={execution.current_step_id}")
        return await self.run_execution(execution_id)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status.is_terminal:
            raise WorkflowValidationError(
                f"Execution {execution_id} already {execution.status.value}"
            )
        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = utcnow()
        await self.repository.save_execution(execution)
        await self._broadcast(execution, "execution_finished")
        logger.info(f"Cancelled execution_id={execution_id}")
        return execution

    async def retry_step(self, execution_id: str, step_id: str) -> WorkflowExecution:
        """Re-run a failed step of a failed execution and continue from there."""
        execution = await self.get_execution(execution_id)
        if execution.status != ExecutionStatus.FAILED:
            raise WorkflowValidationError(
                f"Only failed executions can be retried, got {execution.status.value}"
            )
        previous = execution.step_results.get(step_id)
        if previous is None or previous.status != StepStatus.FAILED:
            raise WorkflowValidationError(
                f"Step {step_id} did not fail in execution {execution_id}", step_id=step_id
            )
        if previous.attempts > MAX_STEP_RETRIES:
            raise WorkflowValidationError(
                f"Step {step_id} exhausted its {MAX_STEP_RETRIES} retries", step_id=step_id
            )
        workflow = await self.repository.get_workflow(execution.workflow_id)
        if workflow is None or step_id not in workflow.step_map():
            raise WorkflowValidationError(
                f"Step {step_id} is not part of workflow {execution.workflow_id}",
                step_id=step_id,
            )

        execution.status = ExecutionStatus.RUNNING
        execution.error = None
        execution.completed_at = None
        execution.current_step_id = step_id
        execution.steps_executed = 0
        await self.repository.save_execution(execution)
        logger.info(
            f"Retrying step_id={step_id} of execution_id={execution_id} (attempt {previous.attempts + 1})"
        )
        return await self._drive(workflow, execution, count_run=False)

    async def _load_runnable(self, workflow_id: str, workspace_id: str) -> WorkflowDefinition:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None or workflow.workspace_id != workspace_id:
            raise WorkflowValidationError(f"Workflow {workflow_id} not found")
        if workflow.status != DefinitionStatus.ACTIVE:
            raise WorkflowValidationError(
                f"Workflow {workflow_id} is {workflow.status.value}, not active"
            )
        workflow.validate_graph()
        return workflow

    async def _drive(
        self,
        workflow: WorkflowDefinition,
        execution: WorkflowExecution,
        count_run: bool = True,
    ) -> WorkflowExecution:
        steps = workflow.step_map()
        bound = CYCLE_BOUND_FACTOR * len(workflow.steps)
        next_id = execution.current_step_id

        while next_id is not None:
            latest = await self.repository.get_execution(execution.id)
            if latest is not None and latest.status in (
                ExecutionStatus.PAUSED,
                ExecutionStatus.CANCELLED,
            ):
                logger.info(
                    f"Execution {execution.id} is {latest.status.value}; stopping before step_id={next_id}"
                )
                return latest

            step = steps.get(next_id)
            if step is None:
                return await self._finish(
                    workflow,
                    execution,
                    ExecutionStatus.FAILED,
                    ExecutionError(
                        message=f"Step {next_id} not found in workflow",
                        kind=WorkflowValidationError.kind,
                        step_id=next_id,
                    ),
                    count_run,
                )

            if execution.steps_executed >= bound:
                logger.error(
                    f"Execution {execution.id} exceeded {bound} steps at step_id={step.id}"
                )
                return await self._finish(
                    workflow,
                    execution,
                    ExecutionStatus.FAILED,
                    ExecutionError(
                        message=f"Cycle detected: more than {bound} steps executed",
                        kind=CycleDetected.kind,
                        step_id=step.id,
                        details={"stepsExecuted": execution.steps_executed},
                    ),
                    count_run,
                )

            execution.current_step_id = step.id
            await self._broadcast(execution, "step_started", step.id)
            result, failure_kind = await self._run_step(workflow, step, execution)
            execution.steps_executed += 1
            execution.step_results[step.id] = result
            execution.context["lastStepId"] = step.id
            execution.context["lastStepStatus"] = result.status.value

            if result.status == StepStatus.COMPLETED:
                if not result.skipped:
                    fold_output(execution.context, step.id, result.output)
                next_id = step.next_on_success()
            else:
                next_id = step.next_on_failure()
                if next_id is None:
                    await self._broadcast(
                        execution, "step_completed", step.id, {"status": result.status.value}
                    )
                    return await self._finish(
                        workflow,
                        execution,
                        ExecutionStatus.FAILED,
                        ExecutionError(
                            message=result.error or f"Step {step.id} failed",
                            kind=failure_kind or "step_failed",
                            step_id=step.id,
                        ),
                        count_run,
                    )

            if next_id is not None:
                execution.current_step_id = next_id
            await self._save_progress(execution)
            await self._broadcast(
                execution,
                "step_completed",
                step.id,
                {"status": result.status.value, "skipped": result.skipped},
            )

        return await self._finish(
            workflow, execution, ExecutionStatus.COMPLETED, None, count_run
        )

    async def _run_step(
        self, workflow: WorkflowDefinition, step: Step, execution: WorkflowExecution
    ) -> Tuple[StepResult, Optional[str]]:
        """Run one step. Returns the result and, on failure, the error kind."""
        started_at = utcnow()
        previous = execution.step_results.get(step.id)
        attempts = previous.attempts + 1 if previous else 1

        def failed(message: str, kind: str) -> Tuple[StepResult, Optional[str]]:
            logger.warning(
                f"Step step_id={step.id} of execution_id={execution.id} failed: {message}"
            )
            return (
                StepResult(
                    status=StepStatus.FAILED,
                    error=message,
                    started_at=started_at,
                    completed_at=utcnow(),
                    attempts=attempts,
                ),
                kind,
            )

        if not conditions_met(step.conditions, execution.context):
            logger.info(f"Skipping step_id={step.id}: conditions not met")
            return (
                StepResult(
                    status=StepStatus.COMPLETED,
                    skipped=True,
                    output={"reason": "conditions not met"},
                    started_at=started_at,
                    completed_at=utcnow(),
                    attempts=attempts,
                ),
                None,
            )

        agent = await self.repository.get_agent(step.agent_id)
        if agent is None or agent.workspace_id != workflow.workspace_id:
            return failed(f"Agent {step.agent_id} not found", NotFoundError.kind)
        if agent.status != DefinitionStatus.ACTIVE:
            return failed(f"Agent {agent.name} is {agent.status.value}", "agent_inactive")

        outputs = {sid: r.output for sid, r in execution.step_results.items()}
        inputs = render_inputs(step.inputs, execution.context, outputs)
        task = build_task(step.action, inputs)
        tool_context = ToolContext(
            workspace_id=workflow.workspace_id,
            acting_identity=f"workflow:{workflow.id}",
            repository=self.repository,
            agent_id=agent.id,
            note_limit=self.note_limit,
        )

        logger.info(
            f"Running step_id={step.id} of execution_id={execution.id} with agent_id={agent.id}"
        )
        try:
            run = await asyncio.wait_for(
                self.runtime.run(agent, task, tool_context), timeout=step.timeout
            )
        except asyncio.TimeoutError:
            return failed(
                f"Step {step.id} timed out after {step.timeout}s", StepTimeout.kind
            )
        except Exception as e:
            logger.exception(f"Agent run failed for step_id={step.id}")
            return failed(str(e), getattr(e, "kind", "step_failed"))

        await self._record_agent_run(agent.id)
        return (
            StepResult(
                status=StepStatus.COMPLETED,
                output=run_output(run),
                started_at=started_at,
                completed_at=utcnow(),
                attempts=attempts,
            ),
            None,
        )

    async def _record_agent_run(self, agent_id: str) -> None:
        agent = await self.repository.get_agent(agent_id)
        if agent is None:
            return
        agent.execution_count += 1
        agent.last_executed_at = utcnow()
        await self.repository.save_agent(agent)

    async def _save_progress(self, execution: WorkflowExecution) -> None:
        """Persist progress without clobbering a concurrent pause or cancel."""
        latest = await self.repository.get_execution(execution.id)
        if latest is not None and latest.status in (
            ExecutionStatus.PAUSED,
            ExecutionStatus.CANCELLED,
        ):
            execution.status = latest.status
            execution.completed_at = latest.completed_at
        await self.repository.save_execution(execution)

    async def _finish(
        self,
        workflow: Optional[WorkflowDefinition],
        execution: WorkflowExecution,
        status: ExecutionStatus,
        error: Optional[ExecutionError],
        count_run: bool = True,
    ) -> WorkflowExecution:
        latest = await self.repository.get_execution(execution.id)
        if latest is not None and latest.status == ExecutionStatus.CANCELLED:
            return latest

        execution.status = status
        execution.error = error
        execution.completed_at = utcnow()
        await self.repository.save_execution(execution)

        if workflow is not None:
            stored = await self.repository.get_workflow(workflow.id)
            if stored is not None:
                if count_run:
                    stored.total_executions += 1
                if status == ExecutionStatus.COMPLETED:
                    stored.successful_executions += 1
                stored.last_executed_at = execution.completed_at
                await self.repository.save_workflow(stored)

        await self._broadcast(
            execution,
            "execution_finished",
            data={"error": error.to_wire() if error else None},
        )
        logger.info(
            f"Execution {execution.id} finished with status={status.value} after {execution.steps_executed} steps"
        )
        return execution

    async def _broadcast(
        self,
        execution: WorkflowExecution,
        event: str,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.transport is None:
            return
        progress = ProgressEvent(
            event=event,
            execution_id=execution.id,
            workspace_id=execution.workspace_id,
            status=execution.status.value,
            step_id=step_id,
            data=data or {},
        )
        for channel in (
            f"workspace:{execution.workspace_id}",
            dispatch_handle_for(execution.id),
        ):
            try:
                await self.transport.broadcast(channel, progress)
            except Exception as e:
                logger.warning(f"Failed to broadcast {event} on {channel}: {e}")
