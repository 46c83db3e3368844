"""Tools an agent uses to adjust its own configuration."""

from __future__ import annotations

import logging
from typing import Any, Dict

from pydantic import BaseModel, Field

from ..contracts import Agent
from ..errors import ToolExecutionError
from .base import ToolContext, ToolName, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


class UpdatePreferencesArgs(BaseModel):
    preferences: Dict[str, Any] = Field(
        description="Preference keys to set; existing keys are overwritten"
    )


class AddNoteArgs(BaseModel):
    note: str = Field(min_length=1, description="Short note to remember for later runs")


class RecentActivityArgs(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)


async def _load_self(context: ToolContext) -> Agent:
    """Resolve the invoking agent inside its own workspace."""
    if not context.agent_id:
        raise ToolExecutionError("Self-adjustment tools need an invoking agent")
    agent = await context.repository.get_agent(context.agent_id)
    if agent is None or agent.workspace_id != context.workspace_id:
        raise ToolExecutionError(f"Agent {context.agent_id} not found in workspace")
    return agent


async def update_my_preferences(args: UpdatePreferencesArgs, context: ToolContext) -> ToolResult:
    agent = await _load_self(context)
    agent.config.preferences.update(args.preferences)
    await context.repository.save_agent(agent)
    logger.info(
        f"Agent {agent.id} updated preferences: {sorted(args.preferences)}"
    )
    return ToolResult(
        success=True,
        message=f"Updated {len(args.preferences)} preference(s)",
        data={"preferences": agent.config.preferences},
    )


async def add_note_to_self(args: AddNoteArgs, context: ToolContext) -> ToolResult:
    agent = await _load_self(context)
    notes = agent.config.notes + [args.note]
    agent.config.notes = notes[-context.note_limit :]
    await context.repository.save_agent(agent)
    return ToolResult(
        success=True,
        message="Note saved",
        data={"notes": agent.config.notes},
    )


async def get_my_recent_activity(args: RecentActivityArgs, context: ToolContext) -> ToolResult:
    agent = await _load_self(context)
    executions = await context.repository.list_agent_executions(agent.id, limit=args.limit)
    activity = [
        {
            "id": execution.id,
            "status": execution.status.value,
            "triggeredBy": execution.triggered_by,
            "durationMs": execution.duration_ms,
            "createdAt": execution.created_at.isoformat(),
            "error": execution.error,
        }
        for execution in executions
    ]
    return ToolResult(
        success=True,
        message=f"Found {len(activity)} recent execution(s)",
        data={"executions": activity},
    )


SELF_ADJUST_TOOLS = [
    ToolSpec(
        name=ToolName.UPDATE_MY_PREFERENCES,
        description="Update your own stored preferences. Later values replace earlier ones.",
        args_model=UpdatePreferencesArgs,
        handler=update_my_preferences,
        read_only=False,
    ),
    ToolSpec(
        name=ToolName.ADD_NOTE_TO_SELF,
        description="Save a short note you will see in future runs.",
        args_model=AddNoteArgs,
        handler=add_note_to_self,
        read_only=False,
    ),
    ToolSpec(
        name=ToolName.GET_MY_RECENT_ACTIVITY,
        description="List your most recent executions and their outcomes.",
        args_model=RecentActivityArgs,
        handler=get_my_recent_activity,
    ),
]
