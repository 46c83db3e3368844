"""Execution ledger and dispatch tests."""

import asyncio

import pytest

from agentloom.constants import (
    AGENT_EXECUTION_TOPIC,
    MAX_DELIVERY_ATTEMPTS,
    WORKFLOW_EXECUTION_TOPIC,
)
from agentloom.contracts import (
    AgentExecutionStatus,
    DefinitionStatus,
    ExecutionStatus,
    Step,
    WorkflowDefinition,
)
from agentloom.dispatch import AgentExecutionWorker, ExecutionDispatcher, build_agent_task
from agentloom.engine import StepGraphExecutor
from agentloom.errors import AgentRuntimeError, DispatchError, WorkflowValidationError
from agentloom.persistence import InMemoryRepository
from agentloom.transports import InMemoryTransport


class BrokenTransport(InMemoryTransport):
    async def submit(self, topic, payload, *, handle, idempotency_key=None, ttl=3600):
        raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_same_key_returns_same_receipt_without_second_row(repository, transport, make_agent):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)

    first = await dispatcher.enqueue("agent-1", {"task": "Follow up"}, idempotency_key="lead-42")
    second = await dispatcher.enqueue("agent-1", {"task": "Follow up"}, idempotency_key="lead-42")

    assert second.execution_id == first.execution_id
    assert second.dispatch_handle == first.dispatch_handle
    assert not first.duplicate and second.duplicate
    assert len(await repository.list_agent_executions("agent-1")) == 1
    assert transport.pending(AGENT_EXECUTION_TOPIC) == 1


@pytest.mark.asyncio
async def test_row_is_pending_before_dispatch_with_default_key(repository, transport, make_agent):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)

    receipt = await dispatcher.enqueue("agent-1", {"task": "x"}, triggered_by="api")
    other = await dispatcher.enqueue("agent-1", {"task": "x"})

    row = await repository.get_agent_execution(receipt.execution_id)
    assert row.status == AgentExecutionStatus.PENDING
    assert row.idempotency_key == f"agent:agent-1:exec:{receipt.execution_id}"
    assert row.dispatch_handle == receipt.dispatch_handle == f"run_{receipt.execution_id}"
    assert row.triggered_by == "api"
    assert other.execution_id != receipt.execution_id


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_or_inactive_agent(repository, transport, make_agent):
    await repository.save_agent(make_agent("draft", status=DefinitionStatus.DRAFT))
    dispatcher = ExecutionDispatcher(repository, transport)

    with pytest.raises(WorkflowValidationError):
        await dispatcher.enqueue("missing")
    with pytest.raises(WorkflowValidationError):
        await dispatcher.enqueue("draft")
    with pytest.raises(WorkflowValidationError):
        await dispatcher.enqueue("draft", workspace_id="other")


@pytest.mark.asyncio
async def test_dispatch_failure_marks_row_failed(repository, make_agent):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, BrokenTransport())

    with pytest.raises(DispatchError) as exc:
        await dispatcher.enqueue("agent-1", {"task": "x"})

    [row] = await repository.list_agent_executions("agent-1")
    assert row.status == AgentExecutionStatus.FAILED
    assert "broker unreachable" in row.error
    assert exc.value.details == {"executionId": row.id}


@pytest.mark.asyncio
async def test_worker_completes_execution(
    repository, transport, make_agent, make_runtime, scripted, completions
):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    completion = scripted([completions.text("Email drafted", tokens=2000)])
    worker = AgentExecutionWorker(repository, transport, make_runtime(completion))

    receipt = await dispatcher.enqueue("agent-1", {"task": "Draft email to Acme"})
    finished = await worker.run_agent_execution(receipt.execution_id)

    assert finished.status == AgentExecutionStatus.COMPLETED
    assert finished.output["content"] == "Email drafted"
    assert finished.tokens_used == 2000
    assert finished.cost == pytest.approx(0.01)
    assert finished.duration_ms is not None
    assert finished.started_at is not None and finished.completed_at is not None
    assert completion.calls[0]["messages"][-1].content == "Draft email to Acme"
    assert (await repository.get_agent("agent-1")).execution_count == 1


@pytest.mark.asyncio
async def test_concurrent_claims_run_once(
    repository, transport, make_agent, make_runtime, scripted, completions
):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    completion = scripted([completions.text("done")])
    worker = AgentExecutionWorker(repository, transport, make_runtime(completion))

    receipt = await dispatcher.enqueue("agent-1", {"task": "x"})
    results = await asyncio.gather(
        worker.run_agent_execution(receipt.execution_id),
        worker.run_agent_execution(receipt.execution_id),
    )

    assert sum(r is not None for r in results) == 1
    assert len(completion.calls) == 1
    assert await worker.run_agent_execution(receipt.execution_id) is None


@pytest.mark.asyncio
async def test_double_enqueue_runs_once_through_worker(
    repository, transport, make_agent, make_runtime, scripted, completions
):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    completion = scripted([completions.text("done")])
    worker = AgentExecutionWorker(repository, transport, make_runtime(completion))

    receipt = await dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="k")
    await dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="k")
    await worker.start(lifespan=0.3)

    row = await repository.get_agent_execution(receipt.execution_id)
    assert row.status == AgentExecutionStatus.COMPLETED
    assert len(completion.calls) == 1


@pytest.mark.asyncio
async def test_runtime_failure_recorded_on_row(repository, transport, make_agent, make_runtime, scripted):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    completion = scripted([AgentRuntimeError("provider down", retryable=False)])
    worker = AgentExecutionWorker(repository, transport, make_runtime(completion))

    receipt = await dispatcher.enqueue("agent-1", {"task": "x"})
    finished = await worker.run_agent_execution(receipt.execution_id)

    assert finished.status == AgentExecutionStatus.FAILED
    assert "provider down" in finished.error
    assert (await repository.get_agent("agent-1")).execution_count == 1


@pytest.mark.asyncio
async def test_progress_broadcast_on_dispatch_handle(
    repository, transport, make_agent, make_runtime, scripted, completions
):
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    worker = AgentExecutionWorker(
        repository, transport, make_runtime(scripted([completions.text("ok")]))
    )
    receipt = await dispatcher.enqueue("agent-1", {"task": "x"})
    events = []

    async def _listen():
        async for event in transport.listen(receipt.dispatch_handle, lifespan=2):
            events.append((event.event, event.status))
            if event.event == "execution_finished":
                break

    listener = asyncio.create_task(_listen())
    await asyncio.sleep(0.01)
    await worker.run_agent_execution(receipt.execution_id)
    await listener

    assert events == [("execution_started", "running"), ("execution_finished", "completed")]


@pytest.mark.asyncio
async def test_submit_workflow_returns_immediately_and_worker_runs_it(
    repository, transport, make_agent, make_runtime, scripted, completions
):
    await repository.save_agent(make_agent())
    await repository.save_workflow(
        WorkflowDefinition(
            id="wf",
            name="Follow-up",
            status=DefinitionStatus.ACTIVE,
            steps=[Step(id="A", agent_id="agent-1", action="Greet {{leadName}}")],
        )
    )
    runtime = make_runtime(scripted([completions.text("hello")]))
    engine = StepGraphExecutor(repository, runtime, transport)
    dispatcher = ExecutionDispatcher(repository, transport, engine=engine)
    worker = AgentExecutionWorker(repository, transport, runtime, engine=engine)

    accepted = await dispatcher.submit_workflow("wf", {"leadName": "Acme"})
    pending = await repository.get_execution(accepted["executionId"])
    assert pending.status == ExecutionStatus.PENDING
    assert transport.pending(WORKFLOW_EXECUTION_TOPIC) == 1

    await worker.start(lifespan=0.3)

    finished = await repository.get_execution(accepted["executionId"])
    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.context["A_result"] == "hello"


@pytest.mark.asyncio
async def test_submit_workflow_validates_first(repository, transport, make_runtime, scripted):
    engine = StepGraphExecutor(repository, make_runtime(scripted([])))
    dispatcher = ExecutionDispatcher(repository, transport, engine=engine)

    with pytest.raises(WorkflowValidationError):
        await dispatcher.submit_workflow("missing", {})
    assert transport.pending(WORKFLOW_EXECUTION_TOPIC) == 0


def test_build_agent_task():
    assert build_agent_task({"task": "Call Acme"}) == "Call Acme"
    assert build_agent_task({"message": "Hi"}) == "Hi"
    assert '"lead": "Acme"' in build_agent_task({"lead": "Acme"})
    assert build_agent_task({}) == "Execute your task."


@pytest.mark.asyncio
async def test_crashing_job_is_redelivered_a_bounded_number_of_times(
    transport, make_agent, make_runtime, scripted, completions
):
    class FlakyRepository(InMemoryRepository):
        claims = 0

        async def transition_agent_execution(self, execution_id, expected, new, **fields):
            FlakyRepository.claims += 1
            raise ConnectionError("database unavailable")

    repository = FlakyRepository()
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)
    worker = AgentExecutionWorker(
        repository, transport, make_runtime(scripted([completions.text("ok")]))
    )

    await dispatcher.enqueue("agent-1", {"task": "x"})
    await worker.start(lifespan=0.5)

    assert FlakyRepository.claims == MAX_DELIVERY_ATTEMPTS
    assert transport.pending(AGENT_EXECUTION_TOPIC) == 0


class FailsOnceTransport(InMemoryTransport):
    def __init__(self):
        super().__init__()
        self.failures = 1

    async def submit(self, topic, payload, *, handle, idempotency_key=None, ttl=3600):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unreachable")
        return await super().submit(
            topic, payload, handle=handle, idempotency_key=idempotency_key, ttl=ttl
        )


@pytest.mark.asyncio
async def test_retry_after_failed_dispatch_creates_new_row(repository, make_agent):
    await repository.save_agent(make_agent())
    transport = FailsOnceTransport()
    dispatcher = ExecutionDispatcher(repository, transport)

    with pytest.raises(DispatchError) as exc:
        await dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="lead-42")
    failed_id = exc.value.details["executionId"]

    retry = await dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="lead-42")

    assert not retry.duplicate
    assert retry.execution_id != failed_id
    assert (await repository.get_agent_execution(failed_id)).status == AgentExecutionStatus.FAILED
    fresh = await repository.get_agent_execution(retry.execution_id)
    assert fresh.status == AgentExecutionStatus.PENDING
    assert fresh.idempotency_key == "lead-42"
    assert transport.pending(AGENT_EXECUTION_TOPIC) == 1

    again = await dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="lead-42")
    assert again.duplicate and again.execution_id == retry.execution_id


@pytest.mark.asyncio
async def test_concurrent_same_key_with_slow_writes_keeps_one_row(transport, make_agent):
    class SlowRepository(InMemoryRepository):
        async def save_agent_execution(self, execution):
            await asyncio.sleep(0.3)
            await super().save_agent_execution(execution)

    repository = SlowRepository()
    await repository.save_agent(make_agent())
    dispatcher = ExecutionDispatcher(repository, transport)

    first, second = await asyncio.gather(
        dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="k"),
        dispatcher.enqueue("agent-1", {"task": "x"}, idempotency_key="k"),
    )

    assert first.execution_id == second.execution_id
    assert first.dispatch_handle == second.dispatch_handle
    assert sorted([first.duplicate, second.duplicate]) == [False, True]
    rows = await repository.list_agent_executions("agent-1")
    assert [row.id for row in rows] == [first.execution_id]
    assert transport.pending(AGENT_EXECUTION_TOPIC) == 1
