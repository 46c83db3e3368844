"""Workspace-scoped tools for inspecting agents, workflows and shared context."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import DefinitionStatus
from .base import ToolContext, ToolName, ToolResult, ToolSpec


class ListAgentsArgs(BaseModel):
    status: Optional[DefinitionStatus] = None


class AgentStatusArgs(BaseModel):
    agent_id: str


class ListWorkflowsArgs(BaseModel):
    status: Optional[DefinitionStatus] = None


class WorkflowStatusArgs(BaseModel):
    workflow_id: str
    limit: int = Field(default=5, ge=1, le=50)


class StoreContextArgs(BaseModel):
    key: str = Field(min_length=1)
    value: Any


class RetrieveContextArgs(BaseModel):
    key: str = Field(min_length=1)


async def list_agents(args: ListAgentsArgs, context: ToolContext) -> ToolResult:
    agents = await context.repository.list_agents(context.workspace_id)
    if args.status is not None:
        agents = [agent for agent in agents if agent.status == args.status]
    return ToolResult(
        success=True,
        message=f"Found {len(agents)} agent(s)",
        data={
            "agents": [
                {"id": a.id, "name": a.name, "type": a.type, "status": a.status.value}
                for a in agents
            ]
        },
    )


async def get_agent_status(args: AgentStatusArgs, context: ToolContext) -> ToolResult:
    agent = await context.repository.get_agent(args.agent_id)
    if agent is None or agent.workspace_id != context.workspace_id:
        return ToolResult(success=False, message=f"Agent {args.agent_id} not found")
    recent = await context.repository.list_agent_executions(agent.id, limit=1)
    return ToolResult(
        success=True,
        message=f"Agent {agent.name} is {agent.status.value}",
        data={
            "id": agent.id,
            "name": agent.name,
            "status": agent.status.value,
            "executionCount": agent.execution_count,
            "lastExecutionStatus": recent[0].status.value if recent else None,
        },
    )


async def list_workflows(args: ListWorkflowsArgs, context: ToolContext) -> ToolResult:
    workflows = await context.repository.list_workflows(context.workspace_id)
    if args.status is not None:
        workflows = [wf for wf in workflows if wf.status == args.status]
    return ToolResult(
        success=True,
        message=f"Found {len(workflows)} workflow(s)",
        data={
            "workflows": [
                {
                    "id": wf.id,
                    "name": wf.name,
                    "status": wf.status.value,
                    "triggerType": wf.trigger_type.value,
                    "steps": len(wf.steps),
                }
                for wf in workflows
            ]
        },
    )


async def get_workflow_status(args: WorkflowStatusArgs, context: ToolContext) -> ToolResult:
    workflow = await context.repository.get_workflow(args.workflow_id)
    if workflow is None or workflow.workspace_id != context.workspace_id:
        return ToolResult(success=False, message=f"Workflow {args.workflow_id} not found")
    executions = await context.repository.list_executions(
        workflow_id=workflow.id, limit=args.limit
    )
    return ToolResult(
        success=True,
        message=f"Workflow {workflow.name} is {workflow.status.value}",
        data={
            "id": workflow.id,
            "status": workflow.status.value,
            "totalExecutions": workflow.total_executions,
            "successfulExecutions": workflow.successful_executions,
            "recentExecutions": [
                {"id": e.id, "status": e.status.value, "currentStepId": e.current_step_id}
                for e in executions
            ],
        },
    )


async def store_shared_context(args: StoreContextArgs, context: ToolContext) -> ToolResult:
    await context.repository.set_shared_value(context.workspace_id, args.key, args.value)
    return ToolResult(success=True, message=f"Stored {args.key}")


async def retrieve_shared_context(args: RetrieveContextArgs, context: ToolContext) -> ToolResult:
    value = await context.repository.get_shared_value(context.workspace_id, args.key)
    if value is None:
        return ToolResult(success=False, message=f"No shared value for {args.key}")
    return ToolResult(success=True, message=f"Retrieved {args.key}", data={"value": value})


WORKSPACE_TOOLS = [
    ToolSpec(
        name=ToolName.LIST_AGENTS,
        description="List agents in this workspace.",
        args_model=ListAgentsArgs,
        handler=list_agents,
    ),
    ToolSpec(
        name=ToolName.GET_AGENT_STATUS,
        description="Get status and recent activity of one agent.",
        args_model=AgentStatusArgs,
        handler=get_agent_status,
    ),
    ToolSpec(
        name=ToolName.LIST_WORKFLOWS,
        description="List workflows in this workspace.",
        args_model=ListWorkflowsArgs,
        handler=list_workflows,
    ),
    ToolSpec(
        name=ToolName.GET_WORKFLOW_STATUS,
        description="Get execution statistics and recent runs of a workflow.",
        args_model=WorkflowStatusArgs,
        handler=get_workflow_status,
    ),
    ToolSpec(
        name=ToolName.STORE_SHARED_CONTEXT,
        description="Store a value other agents in this workspace can read.",
        args_model=StoreContextArgs,
        handler=store_shared_context,
        read_only=False,
    ),
    ToolSpec(
        name=ToolName.RETRIEVE_SHARED_CONTEXT,
        description="Read a value stored by an agent in this workspace.",
        args_model=RetrieveContextArgs,
        handler=retrieve_shared_context,
    ),
]
