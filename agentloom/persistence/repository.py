"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

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


class OrchestrationRepository(Protocol):
    """Protocol for persistence backends.

    Every getter returns a private copy; callers mutate it and write it back
    with the matching ``save_*`` call (last write wins).
    """

    # Workflow definitions -------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(
        self, workspace_id: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        """Return workflow definitions, optionally scoped to a workspace."""

    # Workflow executions --------------------------------------------------
    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Insert or replace a workflow execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve a workflow execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    # Agents ---------------------------------------------------------------
    async def save_agent(self, agent: Agent) -> None:
        """Insert or replace an agent."""

    async def get_agent(self, agent_id: str) -> Agent | None:
        """Retrieve an agent by id."""

    async def list_agents(self, workspace_id: Optional[str] = None) -> list[Agent]:
        """Return agents, optionally scoped to a workspace."""

    # Agent execution ledger -----------------------------------------------
    async def save_agent_execution(self, execution: AgentExecution) -> None:
        """Insert or replace a ledger row."""

    async def get_agent_execution(self, execution_id: str) -> AgentExecution | None:
        """Retrieve a ledger row by id."""

    async def list_agent_executions(
        self, agent_id: str, limit: Optional[int] = None
    ) -> list[AgentExecution]:
        """Return ledger rows for an agent, newest first."""

    async def delete_agent_execution(self, execution_id: str) -> None:
        """Remove a ledger row that lost an idempotency race."""

    async def transition_agent_execution(
        self,
        execution_id: str,
        expected: AgentExecutionStatus,
        new: AgentExecutionStatus,
        **fields: Any,
    ) -> AgentExecution | None:
        """Atomically move a row from ``expected`` to ``new``.

        Returns the updated row, or ``None`` when the row was not in
        ``expected`` (another claimant won or it is already terminal).
        """

    async def claim_idempotency_key(
        self, key: str, execution_id: str, ttl: int
    ) -> str | None:
        """Bind ``key`` to ``execution_id`` for ``ttl`` seconds.

        Returns ``None`` if the key was free, else the execution id already
        bound to it.
        """

    async def release_idempotency_key(self, key: str) -> None:
        """Drop a key binding."""

    # Teams ----------------------------------------------------------------
    async def save_team(self, team: Team) -> None:
        """Insert or replace a team."""

    async def get_team(self, team_id: str) -> Team | None:
        """Retrieve a team by id."""

    async def list_teams(self, workspace_id: Optional[str] = None) -> list[Team]:
        """Return teams, optionally scoped to a workspace."""

    # Agent messages -------------------------------------------------------
    async def save_message(self, message: AgentMessage) -> None:
        """Insert or replace an agent message."""

    async def get_message(self, message_id: str) -> AgentMessage | None:
        """Retrieve a message by id."""

    async def list_messages(
        self,
        workspace_id: str,
        to_agent_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        status: Optional[MessageStatus] = None,
    ) -> list[AgentMessage]:
        """Return messages in a workspace, oldest first."""

    # Shared workspace context ---------------------------------------------
    async def set_shared_value(self, workspace_id: str, key: str, value: Any) -> None:
        """Store a shared context value for a workspace."""

    async def get_shared_value(self, workspace_id: str, key: str) -> Any:
        """Read a shared context value, ``None`` if absent."""
