"""In-memory implementation of the orchestration repository."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from ..contracts import (
    Agent,
    AgentExecution,
    AgentExecutionStatus,
    AgentMessage,
    ExecutionStatus,
    MessageStatus,
    Team,
    WorkflowDefinition,
    WorkflowExecution,
)
from .repository import OrchestrationRepository


class InMemoryRepository(OrchestrationRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Models are copied on the way in and
    out so no two executions ever share mutable state.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._agents: Dict[str, Agent] = {}
        self._agent_executions: Dict[str, AgentExecution] = {}
        self._teams: Dict[str, Team] = {}
        self._messages: Dict[str, AgentMessage] = {}
        self._idempotency: Dict[str, Tuple[str, float]] = {}
        self._shared: Dict[Tuple[str, str], Any] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, workspace_id: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if workspace_id is None or wf.workspace_id == workspace_id
        ]

    # ------------------------------------------------------------------
    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        ex = self._executions.get(execution_id)
        return ex.model_copy(deep=True) if ex else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        rows = [
            ex
            for ex in self._executions.values()
            if (workflow_id is None or ex.workflow_id == workflow_id)
            and (status is None or ex.status == status)
        ]
        # insertion order is creation order
        rows.reverse()
        if limit is not None:
            rows = rows[:limit]
        return [ex.model_copy(deep=True) for ex in rows]

    # ------------------------------------------------------------------
    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def get_agent(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(self, workspace_id: Optional[str] = None) -> list[Agent]:
        return [
            agent.model_copy(deep=True)
            for agent in self._agents.values()
            if workspace_id is None or agent.workspace_id == workspace_id
        ]

    # ------------------------------------------------------------------
    async def save_agent_execution(self, execution: AgentExecution) -> None:
        self._agent_executions[execution.id] = execution.model_copy(deep=True)

    async def get_agent_execution(self, execution_id: str) -> AgentExecution | None:
        row = self._agent_executions.get(execution_id)
        return row.model_copy(deep=True) if row else None

    async def list_agent_executions(
        self, agent_id: str, limit: Optional[int] = None
    ) -> list[AgentExecution]:
        rows = sorted(
            (r for r in self._agent_executions.values() if r.agent_id == agent_id),
            key=lambda r: r.created_at,
            reverse=True,
        )
        if limit is not None:
            rows = rows[:limit]
        return [r.model_copy(deep=True) for r in rows]

    async def delete_agent_execution(self, execution_id: str) -> None:
        self._agent_executions.pop(execution_id, None)

    async def transition_agent_execution(
        self,
        execution_id: str,
        expected: AgentExecutionStatus,
        new: AgentExecutionStatus,
        **fields: Any,
    ) -> AgentExecution | None:
        row = self._agent_executions.get(execution_id)
        if row is None or row.status != expected:
            return None
        updated = row.model_copy(update={"status": new, **fields}, deep=True)
        self._agent_executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def claim_idempotency_key(
        self, key: str, execution_id: str, ttl: int
    ) -> str | None:
        now = time.monotonic()
        existing = self._idempotency.get(key)
        if existing and existing[1] > now:
            return existing[0]
        self._idempotency[key] = (execution_id, now + ttl)
        return None

    async def release_idempotency_key(self, key: str) -> None:
        self._idempotency.pop(key, None)

    # ------------------------------------------------------------------
    async def save_team(self, team: Team) -> None:
        self._teams[team.id] = team.model_copy(deep=True)

    async def get_team(self, team_id: str) -> Team | None:
        team = self._teams.get(team_id)
        return team.model_copy(deep=True) if team else None

    async def list_teams(self, workspace_id: Optional[str] = None) -> list[Team]:
        return [
            team.model_copy(deep=True)
            for team in self._teams.values()
            if workspace_id is None or team.workspace_id == workspace_id
        ]

    # ------------------------------------------------------------------
    async def save_message(self, message: AgentMessage) -> None:
        self._messages[message.id] = message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> AgentMessage | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_messages(
        self,
        workspace_id: str,
        to_agent_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        status: Optional[MessageStatus] = None,
    ) -> list[AgentMessage]:
        return [
            message.model_copy(deep=True)
            for message in self._messages.values()
            if message.workspace_id == workspace_id
            and (to_agent_id is None or message.to_agent_id == to_agent_id)
            and (thread_id is None or message.thread_id == thread_id)
            and (status is None or message.status == status)
        ]

    # ------------------------------------------------------------------
    async def set_shared_value(self, workspace_id: str, key: str, value: Any) -> None:
        self._shared[(workspace_id, key)] = value

    async def get_shared_value(self, workspace_id: str, key: str) -> Any:
        return self._shared.get((workspace_id, key))
