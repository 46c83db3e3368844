"""StepGraph executor scenarios."""

import asyncio

import pytest

from agentloom.agent import Completion
from agentloom.contracts import (
    ConditionOperator,
    DefinitionStatus,
    ExecutionStatus,
    Step,
    StepCondition,
    StepStatus,
    WorkflowDefinition,
)
from agentloom.engine import StepGraphExecutor
from agentloom.errors import AgentRuntimeError, NotFoundError, WorkflowValidationError


class ByAgent:
    """Answers according to which agent's system prompt is in use."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    async def complete(self, system, messages, tools):
        for name, answer in self.answers.items():
            if system.startswith(f"You are {name},"):
                self.calls.append((name, messages[-1].content))
                if isinstance(answer, Exception):
                    raise answer
                if callable(answer):
                    return await answer()
                return Completion(content=answer, tokens_used=10)
        raise AssertionError(f"unexpected system prompt: {system}")


async def _setup(repository, make_agent, steps, names=("Researcher", "Writer", "Closer")):
    for index, name in enumerate(names):
        await repository.save_agent(make_agent(f"agent-{index}", name=name))
    workflow = WorkflowDefinition(
        id="wf", name="Lead follow-up", status=DefinitionStatus.ACTIVE, steps=steps
    )
    await repository.save_workflow(workflow)
    return workflow


def _engine(repository, make_runtime, completion, transport=None):
    return StepGraphExecutor(repository, make_runtime(completion), transport)


@pytest.mark.asyncio
async def test_failed_step_without_on_failure_fails_execution(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Write"),
        ],
    )
    completion = ByAgent(
        {"Researcher": "found it", "Writer": AgentRuntimeError("model refused", retryable=False)}
    )

    execution = await _engine(repository, make_runtime, completion).execute("wf", {})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.step_results["A"].status == StepStatus.COMPLETED
    assert execution.step_results["B"].status == StepStatus.FAILED
    assert execution.current_step_id == "B"
    assert execution.error.step_id == "B"
    assert execution.error.kind == "agent_runtime_error"
    assert execution.context["A_result"] == "found it"
    stored = await repository.get_execution(execution.id)
    assert stored.status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_unmet_conditions_skip_without_calling_agent(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(
                id="A",
                agent_id="agent-0",
                action="Escalate hot lead",
                conditions=[
                    StepCondition(field="leadScore", operator=ConditionOperator.GT, value=80)
                ],
            )
        ],
    )
    completion = ByAgent({"Researcher": "called"})

    execution = await _engine(repository, make_runtime, completion).execute("wf", {"leadScore": 50})

    assert execution.status == ExecutionStatus.COMPLETED
    result = execution.step_results["A"]
    assert result.status == StepStatus.COMPLETED
    assert result.skipped
    assert completion.calls == []


@pytest.mark.asyncio
async def test_two_step_cycle_is_bounded(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Ping", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Pong", on_success="A"),
        ],
    )
    completion = ByAgent({"Researcher": "ping", "Writer": "pong"})

    execution = await _engine(repository, make_runtime, completion).execute("wf", {})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.kind == "cycle_detected"
    assert execution.steps_executed == 4
    assert len(completion.calls) == 4


@pytest.mark.asyncio
async def test_inputs_are_rendered_from_context_and_prior_steps(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_success="B"),
            Step(
                id="B",
                agent_id="agent-1",
                action="Write",
                inputs="Hi {{leadName}}, re: {{A.content}} {{unknown}}",
            ),
        ],
    )
    completion = ByAgent({"Researcher": "pricing", "Writer": "sent"})

    await _engine(repository, make_runtime, completion).execute("wf", {"leadName": "Acme"})

    assert completion.calls[1] == ("Writer", "Write\n\nHi Acme, re: pricing ")


@pytest.mark.asyncio
async def test_on_failure_routes_to_recovery_step(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_failure="C"),
            Step(id="B", agent_id="agent-1", action="Write"),
            Step(id="C", agent_id="agent-2", action="Apologise", on_success="terminal"),
        ],
    )
    completion = ByAgent(
        {"Researcher": AgentRuntimeError("down", retryable=False), "Closer": "sorry"}
    )

    execution = await _engine(repository, make_runtime, completion).execute("wf", {})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.step_results["A"].status == StepStatus.FAILED
    assert execution.step_results["C"].status == StepStatus.COMPLETED
    assert "B" not in execution.step_results
    assert execution.context["lastStepId"] == "C"


@pytest.mark.asyncio
async def test_concurrent_executions_keep_isolated_state(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", inputs="{{leadName}}", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Write", inputs="{{A.content}}"),
        ],
    )

    class Echo:
        async def complete(self, system, messages, tools):
            lead = messages[-1].content.splitlines()[-1]
            await asyncio.sleep(0.01)
            return Completion(content=f"{lead}-{system.split(',')[0][8:]}", tokens_used=1)

    engine = _engine(repository, make_runtime, Echo())

    acme, globex = await asyncio.gather(
        engine.execute("wf", {"leadName": "Acme"}),
        engine.execute("wf", {"leadName": "Globex"}),
    )

    assert acme.id != globex.id
    for execution, lead in ((acme, "Acme"), (globex, "Globex")):
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.context["leadName"] == lead
        assert execution.context["A_result"] == f"{lead}-Researcher"
        assert execution.context["B_result"] == f"{lead}-Researcher-Writer"
        assert execution.step_results["B"].output["content"] == f"{lead}-Researcher-Writer"
        stored = await repository.get_execution(execution.id)
        assert stored.context == execution.context
        assert set(stored.step_results) == {"A", "B"}


@pytest.mark.asyncio
async def test_json_answers_feed_later_conditions(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Score", on_success="B"),
            Step(
                id="B",
                agent_id="agent-1",
                action="Call",
                conditions=[
                    StepCondition(field="leadScore", operator=ConditionOperator.GT, value=80)
                ],
            ),
        ],
    )
    completion = ByAgent({"Researcher": '{"leadScore": 91}', "Writer": "calling"})

    execution = await _engine(repository, make_runtime, completion).execute("wf", {})

    assert execution.context["leadScore"] == 91
    assert not execution.step_results["B"].skipped
    assert execution.step_results["A"].output["data"] == {"leadScore": 91}


@pytest.mark.asyncio
async def test_step_timeout_fails_step(repository, make_agent, make_runtime):
    async def _slow():
        await asyncio.sleep(1)
        return Completion(content="late")

    await _setup(
        repository,
        make_agent,
        [Step(id="A", agent_id="agent-0", action="Slow", timeout=0.05)],
    )

    execution = await _engine(repository, make_runtime, ByAgent({"Researcher": _slow})).execute(
        "wf", {}
    )

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.kind == "step_timeout"
    assert "timed out" in execution.step_results["A"].error


@pytest.mark.asyncio
async def test_missing_or_inactive_agent_fails_step(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="ghost", action="Haunt", on_failure="B"),
            Step(id="B", agent_id="agent-1", action="Write"),
        ],
    )
    writer = await repository.get_agent("agent-1")
    writer.status = DefinitionStatus.PAUSED
    await repository.save_agent(writer)

    execution = await _engine(repository, make_runtime, ByAgent({})).execute("wf", {})

    assert execution.status == ExecutionStatus.FAILED
    assert "not found" in execution.step_results["A"].error
    assert "paused" in execution.step_results["B"].error


@pytest.mark.asyncio
async def test_invalid_submissions_are_rejected_before_persisting(repository, make_agent, make_runtime):
    workflow = await _setup(
        repository, make_agent, [Step(id="A", agent_id="agent-0", action="x", on_success="Z")]
    )
    engine = _engine(repository, make_runtime, ByAgent({}))

    with pytest.raises(WorkflowValidationError):
        await engine.execute("wf", {})
    with pytest.raises(WorkflowValidationError):
        await engine.execute("missing", {})
    with pytest.raises(WorkflowValidationError):
        await engine.execute("wf", {}, workspace_id="other")

    workflow.steps[0].on_success = None
    workflow.status = DefinitionStatus.DRAFT
    await repository.save_workflow(workflow)
    with pytest.raises(WorkflowValidationError):
        await engine.execute("wf", {})

    assert await repository.list_executions() == []


@pytest.mark.asyncio
async def test_stats_are_recorded(repository, make_agent, make_runtime):
    await _setup(repository, make_agent, [Step(id="A", agent_id="agent-0", action="x")])
    engine = _engine(repository, make_runtime, ByAgent({"Researcher": "ok"}))

    await engine.execute("wf", {})
    await engine.execute("wf", {})

    workflow = await repository.get_workflow("wf")
    assert workflow.total_executions == 2
    assert workflow.successful_executions == 2
    assert workflow.last_executed_at is not None
    assert (await repository.get_agent("agent-0")).execution_count == 2
    assert len(await engine.list_executions("wf")) == 2


@pytest.mark.asyncio
async def test_pause_between_steps_and_resume(repository, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Write"),
        ],
    )
    holder = {}

    async def _pause_then_answer():
        [running] = await repository.list_executions(status=ExecutionStatus.RUNNING)
        await holder["engine"].pause(running.id)
        return Completion(content="researched")

    completion = ByAgent({"Researcher": _pause_then_answer, "Writer": "written"})
    engine = holder["engine"] = _engine(repository, make_runtime, completion)

    paused = await engine.execute("wf", {})

    assert paused.status == ExecutionStatus.PAUSED
    assert paused.current_step_id == "B"
    assert set(paused.step_results) == {"A"}

    resumed = await engine.resume(paused.id)

    assert resumed.status == ExecutionStatus.COMPLETED
    assert set(resumed.step_results) == {"A", "B"}
    assert [name for name, _ in completion.calls] == ["Researcher", "Writer"]


@pytest.mark.asyncio
async def test_cancel_pending_execution(repository, make_agent, make_runtime):
    await _setup(repository, make_agent, [Step(id="A", agent_id="agent-0", action="x")])
    completion = ByAgent({"Researcher": "ok"})
    engine = _engine(repository, make_runtime, completion)

    execution = await engine.create_execution("wf", {})
    cancelled = await engine.cancel(execution.id)
    after = await engine.run_execution(execution.id)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert after.status == ExecutionStatus.CANCELLED
    assert completion.calls == []
    with pytest.raises(WorkflowValidationError):
        await engine.cancel(execution.id)
    with pytest.raises(NotFoundError):
        await engine.cancel("nope")


@pytest.mark.asyncio
async def test_retry_failed_step(repository, make_agent, make_runtime, scripted, completions):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Write"),
        ],
    )
    completion = scripted(
        [
            completions.text("researched"),
            AgentRuntimeError("flaky", retryable=False),
            completions.text("written"),
        ]
    )
    engine = _engine(repository, make_runtime, completion)

    failed = await engine.execute("wf", {})
    assert failed.status == ExecutionStatus.FAILED

    with pytest.raises(WorkflowValidationError):
        await engine.retry_step(failed.id, "A")

    retried = await engine.retry_step(failed.id, "B")

    assert retried.status == ExecutionStatus.COMPLETED
    assert retried.error is None
    assert retried.step_results["B"].attempts == 2
    assert retried.step_results["B"].output["content"] == "written"
    workflow = await repository.get_workflow("wf")
    assert workflow.total_executions == 1
    assert workflow.successful_executions == 1


@pytest.mark.asyncio
async def test_progress_events_broadcast(repository, transport, make_agent, make_runtime):
    await _setup(
        repository,
        make_agent,
        [
            Step(id="A", agent_id="agent-0", action="Research", on_success="B"),
            Step(id="B", agent_id="agent-1", action="Write"),
        ],
    )
    engine = _engine(
        repository, make_runtime, ByAgent({"Researcher": "r", "Writer": "w"}), transport
    )
    events = []

    async def _listen():
        async for event in transport.listen("workspace:default", lifespan=2):
            events.append((event.event, event.step_id))
            if event.event == "execution_finished":
                break

    listener = asyncio.create_task(_listen())
    await asyncio.sleep(0.01)
    await engine.execute("wf", {})
    await listener

    assert events == [
        ("step_started", "A"),
        ("step_completed", "A"),
        ("step_started", "B"),
        ("step_completed", "B"),
        ("execution_finished", None),
    ]
