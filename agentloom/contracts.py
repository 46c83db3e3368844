"""Core data contracts for agentloom workflows, agents and executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import TERMINAL
from .errors import WorkflowValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WireModel(BaseModel):
    """Base model exposing camelCase wire names while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TriggerType(str, Enum):
    MANUAL = "manual"
    EVENT = "event"
    SCHEDULE = "schedule"
    AGENT_REQUEST = "agent_request"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class AgentExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            AgentExecutionStatus.COMPLETED,
            AgentExecutionStatus.FAILED,
            AgentExecutionStatus.CANCELLED,
        )


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    CONTAINS = "contains"
    EXISTS = "exists"


class TeamRole(str, Enum):
    COORDINATOR = "coordinator"
    SPECIALIST = "specialist"
    SUPPORT = "support"


class StepCondition(WireModel):
    """A single predicate over the execution context."""

    field: str
    operator: ConditionOperator
    value: Any = None


class Step(WireModel):
    """One node of a workflow graph."""

    id: str
    agent_id: str
    action: str
    inputs: Union[str, Dict[str, Any]] = Field(default_factory=dict)
    conditions: List[StepCondition] = Field(default_factory=list)
    on_success: Optional[str] = None
    on_failure: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")

    def next_on_success(self) -> Optional[str]:
        return None if self.on_success in (None, TERMINAL) else self.on_success

    def next_on_failure(self) -> Optional[str]:
        return None if self.on_failure in (None, TERMINAL) else self.on_failure


class WorkflowDefinition(WireModel):
    """Persisted, user-authored step graph."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: List[Step] = Field(default_factory=list)
    total_executions: int = 0
    successful_executions: int = 0
    last_executed_at: Optional[datetime] = None

    def step_map(self) -> Dict[str, Step]:
        return {step.id: step for step in self.steps}

    def first_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None

    def validate_graph(self) -> None:
        """Reject structurally invalid graphs. Cycles are allowed here."""
        if not self.steps:
            raise WorkflowValidationError(f"Workflow {self.id} has no steps")

        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise WorkflowValidationError(
                    f"Duplicate step id {step.id!r}", step_id=step.id
                )
            seen.add(step.id)

        for step in self.steps:
            for edge in (step.next_on_success(), step.next_on_failure()):
                if edge is not None and edge not in seen:
                    raise WorkflowValidationError(
                        f"Step {step.id!r} references unknown step {edge!r}",
                        step_id=step.id,
                    )


class StepResult(WireModel):
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    skipped: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 1


class ExecutionError(WireModel):
    """Structured failure attached to a terminal execution."""

    message: str
    kind: str = "error"
    step_id: Optional[str] = None
    details: Any = None


class WorkflowExecution(WireModel):
    """One run of a workflow. Owns its context and step results exclusively."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: Optional[str] = None
    steps_executed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[ExecutionError] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={
                "id",
                "status",
                "current_step_id",
                "step_results",
                "context",
                "error",
                "started_at",
                "completed_at",
            },
        )


class AgentConfig(WireModel):
    system_prompt: Optional[str] = None
    tone: str = "professional"
    capabilities: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    notes: List[str] = Field(default_factory=list)
    self_adjust: bool = True


class Agent(WireModel):
    """A configured, reusable LLM-backed actor."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    name: str
    type: str = "custom"
    description: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    config: AgentConfig = Field(default_factory=AgentConfig)
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None


class AgentExecution(WireModel):
    """Ledger row for one agent invocation."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    agent_id: str
    status: AgentExecutionStatus = AgentExecutionStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    tokens_used: int = 0
    cost: float = 0.0
    triggered_by: Optional[str] = None
    idempotency_key: Optional[str] = None
    dispatch_handle: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TeamMember(WireModel):
    agent_id: str
    role: TeamRole = TeamRole.SPECIALIST
    priority: int = 0


class Team(WireModel):
    """Membership and ordering policy over agents sharing one objective."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    name: str
    department: str = "general"
    status: DefinitionStatus = DefinitionStatus.ACTIVE
    members: List[TeamMember] = Field(default_factory=list)
    total_runs: int = 0
    successful_runs: int = 0


class MessageType(str, Enum):
    TASK = "task"
    RESULT = "result"
    CONTEXT = "context"
    HANDOFF = "handoff"
    STATUS = "status"
    QUERY = "query"


class MessagePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"
    PROCESSED = "processed"


class AgentMessage(WireModel):
    """A note from one agent to another, threaded by ``thread_id``."""

    id: str = Field(default_factory=new_id)
    workspace_id: str = "default"
    from_agent_id: Optional[str] = None
    to_agent_id: Optional[str] = None
    team_id: Optional[str] = None
    message_type: MessageType = MessageType.CONTEXT
    subject: str
    body: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority = MessagePriority.NORMAL
    parent_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


def dispatch_handle_for(execution_id: str) -> str:
    """Opaque handle under which an execution is dispatched and broadcast."""
    return f"run_{execution_id}"


class TaskEnvelope(BaseModel):
    """Job exchanged with the background task runtime."""

    handle: str
    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    attempt: int = 1
    submitted_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TaskEnvelope":
        return cls.model_validate_json(data)


class ProgressEvent(BaseModel):
    """Real-time progress notification published on a channel."""

    event: str
    execution_id: str
    workspace_id: str = "default"
    status: Optional[str] = None
    step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ProgressEvent":
        return cls.model_validate_json(data)
