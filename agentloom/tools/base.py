"""Typed tool declarations and the non-throwing tool executor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic_ai.tools import ToolDefinition

from ..constants import DEFAULT_NOTE_LIMIT, DEFAULT_TOOL_TIMEOUT
from ..errors import ToolExecutionError

if TYPE_CHECKING:
    from ..persistence import OrchestrationRepository

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    """Closed set of tools an agent can be granted."""

    UPDATE_MY_PREFERENCES = "update_my_preferences"
    ADD_NOTE_TO_SELF = "add_note_to_self"
    GET_MY_RECENT_ACTIVITY = "get_my_recent_activity"
    LIST_AGENTS = "list_agents"
    GET_AGENT_STATUS = "get_agent_status"
    LIST_WORKFLOWS = "list_workflows"
    GET_WORKFLOW_STATUS = "get_workflow_status"
    STORE_SHARED_CONTEXT = "store_shared_context"
    RETRIEVE_SHARED_CONTEXT = "retrieve_shared_context"

    @classmethod
    def parse(cls, name: str) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


class ToolResult(BaseModel):
    """Outcome of one tool call. Failures are values, never exceptions."""

    success: bool
    message: str
    data: Any = None


@dataclass
class ToolContext:
    """Who is calling and in which scope."""

    workspace_id: str
    acting_identity: str
    repository: "OrchestrationRepository"
    agent_id: Optional[str] = None
    note_limit: int = DEFAULT_NOTE_LIMIT


class ToolSpec(BaseModel):
    """Declaration of a tool: name, argument schema and bound handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: ToolName
    description: str
    args_model: Type[BaseModel]
    handler: Callable[..., Awaitable[ToolResult]]
    read_only: bool = True

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name.value,
            description=self.description,
            parameters_json_schema=self.args_model.model_json_schema(),
        )


class ToolRegistry:
    """Maps every :class:`ToolName` to its specification."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: Dict[ToolName, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._specs[spec.name] = spec

    def get(self, name: ToolName) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def names(self) -> List[ToolName]:
        return list(self._specs)

    def read_only_names(self) -> List[ToolName]:
        return [name for name, spec in self._specs.items() if spec.read_only]

    def definitions(self, names: Iterable[ToolName]) -> List[ToolDefinition]:
        return [self._specs[name].definition() for name in names if name in self._specs]


class ToolExecutor:
    """Validate arguments and run a tool; every failure becomes ``success=False``."""

    def __init__(self, registry: ToolRegistry, timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
        self.registry = registry
        self.timeout = timeout

    async def execute(
        self, tool_name: str, args: Optional[Dict[str, Any]], context: ToolContext
    ) -> ToolResult:
        name = ToolName.parse(tool_name)
        spec = self.registry.get(name) if name else None
        if spec is None:
            logger.error(f"Unknown tool called: {tool_name}")
            return ToolResult(success=False, message=f"Unknown tool: {tool_name}")

        try:
            parsed = spec.args_model.model_validate(args or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
                for err in e.errors()
            )
            return ToolResult(
                success=False, message=f"Invalid arguments for {tool_name}: {problems}"
            )

        logger.info(
            f"Executing tool {tool_name} for workspace={context.workspace_id} agent={context.agent_id}"
        )
        try:
            result = await asyncio.wait_for(
                spec.handler(parsed, context), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Tool {tool_name} timed out after {self.timeout}s")
            return ToolResult(
                success=False, message=f"Tool {tool_name} timed out after {self.timeout}s"
            )
        except ToolExecutionError as e:
            return ToolResult(success=False, message=e.message, data=e.details)
        except Exception as e:
            logger.exception(f"Tool {tool_name} failed")
            return ToolResult(success=False, message=f"Tool execution failed: {e}")

        logger.info(f"Tool {tool_name} completed success={result.success}")
        return result
