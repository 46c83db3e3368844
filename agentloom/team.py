"""Team coordinator: run every member of a team against one objective."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import Field

from .agent import AgentRuntime
from .constants import DEFAULT_NOTE_LIMIT
from .context import fold_output, run_output
from .contracts import (
    AgentMessage,
    DefinitionStatus,
    ExecutionStatus,
    MessageType,
    Team,
    TeamMember,
    TeamRole,
    WireModel,
    new_id,
    utcnow,
)
from .errors import WorkflowValidationError
from .messaging import AgentMessageBus
from .persistence import OrchestrationRepository
from .tools import ToolContext

logger = logging.getLogger(__name__)

ROLE_ORDER = {
    TeamRole.COORDINATOR: 0,
    TeamRole.SPECIALIST: 1,
    TeamRole.SUPPORT: 2,
}


class MemberResult(WireModel):
    agent_id: str
    agent_name: Optional[str] = None
    role: TeamRole
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: int = 0


class TeamRunResult(WireModel):
    id: str = Field(default_factory=new_id)
    team_id: str
    objective: str
    status: ExecutionStatus
    context: Dict[str, Any] = Field(default_factory=dict)
    agent_results: List[MemberResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


def order_members(members: List[TeamMember]) -> List[TeamMember]:
    """Coordinator first, then specialists, then support; ties by priority then position."""
    indexed = list(enumerate(members))
    indexed.sort(key=lambda item: (ROLE_ORDER[item[1].role], item[1].priority, item[0]))
    return [member for _, member in indexed]


def build_member_task(
    objective: str,
    role: TeamRole,
    context: Dict[str, Any],
    messages: Sequence[AgentMessage] = (),
) -> str:
    lines = [f"Team objective: {objective}", f"Your role on the team: {role.value}."]
    if context:
        lines.append("Shared team context so far:")
        lines.append(json.dumps(context, indent=2, default=str))
    if messages:
        lines.append("Messages from your teammates:")
        lines.extend(
            f"- [{m.message_type.value}] {m.subject}: {m.body}" for m in messages
        )
    return "\n".join(lines)


class TeamCoordinator:
    def __init__(
        self,
        repository: OrchestrationRepository,
        runtime: AgentRuntime,
        note_limit: int = DEFAULT_NOTE_LIMIT,
    ) -> None:
        self.repository = repository
        self.runtime = runtime
        self.note_limit = note_limit

    async def run_team(
        self,
        team_id: str,
        objective: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TeamRunResult:
        """Run each member in role order, threading one shared context through them.

        A failing member is recorded and the run continues; the result is
        ``failed`` only when every member failed. Each member that succeeds
        hands its answer to the next one through the agent message bus.
        """
        team = await self.repository.get_team(team_id)
        if team is None:
            raise WorkflowValidationError(f"Team {team_id} not found")
        if team.status != DefinitionStatus.ACTIVE:
            raise WorkflowValidationError(
                f"Team {team.name} is {team.status.value} and cannot start new runs"
            )
        if not team.members:
            raise WorkflowValidationError(f"Team {team.name} has no members")

        result = TeamRunResult(
            team_id=team.id,
            objective=objective,
            status=ExecutionStatus.RUNNING,
            context=dict(context or {}),
        )
        logger.info(f"Starting team run team_id={team.id} with {len(team.members)} members")

        bus = AgentMessageBus(self.repository, team.workspace_id)
        ordered = order_members(team.members)
        for index, member in enumerate(ordered):
            member_result = await self._run_member(
                team, member, objective, result.context, bus, result.id
            )
            result.agent_results.append(member_result)
            if member_result.success and member_result.output is not None:
                fold_output(result.context, member.agent_id, member_result.output)
                if index + 1 < len(ordered):
                    await self._hand_off(
                        bus, team, result, member_result, ordered[index + 1]
                    )

        succeeded = any(r.success for r in result.agent_results)
        result.status = ExecutionStatus.COMPLETED if succeeded else ExecutionStatus.FAILED
        result.completed_at = utcnow()
        await self._record_run(team.id, succeeded)

        logger.info(
            f"Team run team_id={team.id} {result.status.value}: "
            f"{sum(r.success for r in result.agent_results)}/{len(result.agent_results)} members succeeded"
        )
        return result

    async def _run_member(
        self,
        team: Team,
        member: TeamMember,
        objective: str,
        context: Dict[str, Any],
        bus: AgentMessageBus,
        run_id: str,
    ) -> MemberResult:
        started = time.monotonic()
        agent = await self.repository.get_agent(member.agent_id)
        if agent is None or agent.workspace_id != team.workspace_id:
            return MemberResult(
                agent_id=member.agent_id,
                role=member.role,
                success=False,
                error=f"Agent {member.agent_id} not found",
            )
        if agent.status != DefinitionStatus.ACTIVE:
            return MemberResult(
                agent_id=agent.id,
                agent_name=agent.name,
                role=member.role,
                success=False,
                error=f"Agent {agent.name} is {agent.status.value}",
            )

        tool_context = ToolContext(
            workspace_id=team.workspace_id,
            acting_identity=f"team:{team.id}",
            repository=self.repository,
            agent_id=agent.id,
            note_limit=self.note_limit,
        )
        inbox = [
            message
            for message in await bus.get_messages(agent.id, unread_only=True, team_id=team.id)
            if message.data.get("teamRunId") == run_id
        ]
        task = build_member_task(objective, member.role, context, inbox)
        for message in inbox:
            await bus.mark_read(message.id)
        try:
            run = await self.runtime.run(agent, task, tool_context)
        except Exception as e:
            logger.exception(f"Team member agent_id={agent.id} failed")
            return MemberResult(
                agent_id=agent.id,
                agent_name=agent.name,
                role=member.role,
                success=False,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        # Reload: the run may have changed the agent through self-adjust tools.
        stored = await self.repository.get_agent(agent.id)
        if stored is not None:
            stored.execution_count += 1
            stored.last_executed_at = utcnow()
            await self.repository.save_agent(stored)
        return MemberResult(
            agent_id=agent.id,
            agent_name=agent.name,
            role=member.role,
            success=True,
            output=run_output(run),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _hand_off(
        self,
        bus: AgentMessageBus,
        team: Team,
        run: TeamRunResult,
        done: MemberResult,
        successor: TeamMember,
    ) -> None:
        await bus.send(
            f"Handoff from {done.agent_name or done.agent_id}",
            (done.output or {}).get("content") or "",
            from_agent_id=done.agent_id,
            to_agent_id=successor.agent_id,
            team_id=team.id,
            message_type=MessageType.HANDOFF,
            data={"teamRunId": run.id, "objective": run.objective, "fromRole": done.role.value},
        )

    async def _record_run(self, team_id: str, succeeded: bool) -> None:
        team = await self.repository.get_team(team_id)
        if team is None:
            return
        team.total_runs += 1
        if succeeded:
            team.successful_runs += 1
        await self.repository.save_team(team)
