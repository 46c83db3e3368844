"""Tool execution layer tests."""

import asyncio

import pytest
from pydantic import BaseModel

from agentloom.contracts import (
    AgentExecution,
    DefinitionStatus,
    Step,
    WorkflowDefinition,
)
from agentloom.tools import (
    ToolContext,
    ToolExecutor,
    ToolName,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    build_default_registry,
)


def _context(repository, agent_id="agent-1", **kwargs) -> ToolContext:
    return ToolContext(
        workspace_id="default",
        acting_identity="test",
        repository=repository,
        agent_id=agent_id,
        **kwargs,
    )


def test_every_tool_name_is_registered():
    registry = build_default_registry()
    assert set(registry.names()) == set(ToolName)


def test_definitions_carry_json_schema():
    registry = build_default_registry()
    [definition] = registry.definitions([ToolName.ADD_NOTE_TO_SELF])
    assert definition.name == "add_note_to_self"
    assert "note" in definition.parameters_json_schema["properties"]


@pytest.mark.asyncio
async def test_unknown_tool_returns_failure(repository):
    executor = ToolExecutor(build_default_registry())
    result = await executor.execute("delete_everything", {}, _context(repository))
    assert not result.success
    assert "Unknown tool" in result.message


@pytest.mark.asyncio
async def test_invalid_arguments_rejected_before_handler(repository, make_agent):
    await repository.save_agent(make_agent())
    executor = ToolExecutor(build_default_registry())

    result = await executor.execute("add_note_to_self", {"note": ""}, _context(repository))

    assert not result.success
    assert "Invalid arguments" in result.message
    assert (await repository.get_agent("agent-1")).config.notes == []


@pytest.mark.asyncio
async def test_handler_exception_becomes_failure(repository):
    class NoArgs(BaseModel):
        pass

    async def _boom(args, context):
        raise RuntimeError("kaboom")

    registry = ToolRegistry(
        [ToolSpec(name=ToolName.LIST_AGENTS, description="x", args_model=NoArgs, handler=_boom)]
    )
    result = await ToolExecutor(registry).execute("list_agents", {}, _context(repository))
    assert not result.success
    assert "kaboom" in result.message


@pytest.mark.asyncio
async def test_slow_tool_times_out(repository):
    class NoArgs(BaseModel):
        pass

    async def _slow(args, context):
        await asyncio.sleep(1)
        return ToolResult(success=True, message="late")

    registry = ToolRegistry(
        [ToolSpec(name=ToolName.LIST_AGENTS, description="x", args_model=NoArgs, handler=_slow)]
    )
    result = await ToolExecutor(registry, timeout=0.05).execute(
        "list_agents", {}, _context(repository)
    )
    assert not result.success
    assert "timed out" in result.message


@pytest.mark.asyncio
async def test_update_preferences_merges_last_write_wins(repository, make_agent):
    agent = make_agent()
    agent.config.preferences = {"tone": "formal", "length": "short"}
    await repository.save_agent(agent)
    executor = ToolExecutor(build_default_registry())

    result = await executor.execute(
        "update_my_preferences", {"preferences": {"tone": "casual"}}, _context(repository)
    )

    assert result.success
    stored = await repository.get_agent("agent-1")
    assert stored.config.preferences == {"tone": "casual", "length": "short"}


@pytest.mark.asyncio
async def test_notes_are_a_capped_ring_buffer(repository, make_agent):
    await repository.save_agent(make_agent())
    executor = ToolExecutor(build_default_registry())
    context = _context(repository, note_limit=3)

    for i in range(5):
        result = await executor.execute("add_note_to_self", {"note": f"n{i}"}, context)
        assert result.success

    assert (await repository.get_agent("agent-1")).config.notes == ["n2", "n3", "n4"]


@pytest.mark.asyncio
async def test_self_tools_only_touch_invoking_agent_in_workspace(repository, make_agent):
    await repository.save_agent(make_agent("agent-1", workspace_id="elsewhere"))
    executor = ToolExecutor(build_default_registry())

    result = await executor.execute("add_note_to_self", {"note": "hi"}, _context(repository))
    assert not result.success

    no_agent = await executor.execute(
        "add_note_to_self", {"note": "hi"}, _context(repository, agent_id=None)
    )
    assert not no_agent.success


@pytest.mark.asyncio
async def test_recent_activity_lists_own_executions(repository, make_agent):
    await repository.save_agent(make_agent())
    await repository.save_agent_execution(AgentExecution(id="x1", agent_id="agent-1"))
    await repository.save_agent_execution(AgentExecution(id="x2", agent_id="agent-2"))
    executor = ToolExecutor(build_default_registry())

    result = await executor.execute("get_my_recent_activity", {"limit": 5}, _context(repository))

    assert result.success
    assert [e["id"] for e in result.data["executions"]] == ["x1"]


@pytest.mark.asyncio
async def test_workspace_tools_are_scoped(repository, make_agent):
    await repository.save_agent(make_agent("agent-1"))
    await repository.save_agent(make_agent("agent-2", status=DefinitionStatus.PAUSED))
    await repository.save_agent(make_agent("agent-3", workspace_id="other"))
    await repository.save_workflow(
        WorkflowDefinition(
            id="wf-1",
            name="Follow-up",
            status=DefinitionStatus.ACTIVE,
            steps=[Step(id="A", agent_id="agent-1", action="a")],
        )
    )
    executor = ToolExecutor(build_default_registry())
    context = _context(repository)

    agents = await executor.execute("list_agents", {}, context)
    assert {a["id"] for a in agents.data["agents"]} == {"agent-1", "agent-2"}

    active = await executor.execute("list_agents", {"status": "active"}, context)
    assert [a["id"] for a in active.data["agents"]] == ["agent-1"]

    hidden = await executor.execute("get_agent_status", {"agent_id": "agent-3"}, context)
    assert not hidden.success

    workflows = await executor.execute("list_workflows", {}, context)
    assert workflows.data["workflows"][0]["steps"] == 1

    status = await executor.execute("get_workflow_status", {"workflow_id": "wf-1"}, context)
    assert status.success
    assert status.data["recentExecutions"] == []


@pytest.mark.asyncio
async def test_shared_context_store_and_retrieve(repository):
    executor = ToolExecutor(build_default_registry())
    context = _context(repository)

    missing = await executor.execute("retrieve_shared_context", {"key": "icp"}, context)
    assert not missing.success

    stored = await executor.execute(
        "store_shared_context", {"key": "icp", "value": {"industry": "saas"}}, context
    )
    assert stored.success

    found = await executor.execute("retrieve_shared_context", {"key": "icp"}, context)
    assert found.data == {"value": {"industry": "saas"}}
