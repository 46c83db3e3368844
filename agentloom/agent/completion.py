"""Completion service boundary between the agent loop and an LLM provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field
from pydantic_ai.direct import model_request
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelRequestPart,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import Model, ModelRequestParameters
from pydantic_ai.tools import ToolDefinition

from ..errors import AgentRuntimeError

logger = logging.getLogger(__name__)


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """Provider-neutral conversation entry."""

    role: Literal["user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class Completion(BaseModel):
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tokens_used: int = 0


class CompletionService(Protocol):
    """Anything that turns a conversation into the next assistant turn."""

    async def complete(
        self,
        system: str,
        messages: List[ChatMessage],
        tools: List[ToolDefinition],
    ) -> Completion:
        """Return the model's next turn; raise ``AgentRuntimeError`` on failure."""


def to_model_messages(system: str, messages: List[ChatMessage]) -> List[ModelMessage]:
    """Group request-side entries into ``ModelRequest``s between model turns."""
    result: List[ModelMessage] = []
    pending: List[ModelRequestPart] = [SystemPromptPart(content=system)]

    for message in messages:
        if message.role == "assistant":
            if pending:
                result.append(ModelRequest(parts=pending))
                pending = []
            parts: List[Union[TextPart, ToolCallPart]] = []
            if message.content:
                parts.append(TextPart(content=message.content))
            for call in message.tool_calls:
                parts.append(
                    ToolCallPart(
                        tool_name=call.name,
                        args=call.arguments,
                        tool_call_id=call.id,
                    )
                )
            result.append(ModelResponse(parts=parts))
        elif message.role == "tool":
            pending.append(
                ToolReturnPart(
                    tool_name=message.name or "",
                    content=message.content or "",
                    tool_call_id=message.tool_call_id or "",
                )
            )
        else:
            pending.append(UserPromptPart(content=message.content or ""))

    if pending:
        result.append(ModelRequest(parts=pending))
    return result


def from_model_response(response: ModelResponse) -> Completion:
    texts: List[str] = []
    calls: List[ToolCall] = []
    for part in response.parts:
        if isinstance(part, TextPart):
            texts.append(part.content)
        elif isinstance(part, ToolCallPart):
            calls.append(
                ToolCall(
                    id=part.tool_call_id,
                    name=part.tool_name,
                    arguments=part.args_as_dict(),
                )
            )
    tokens = getattr(response.usage, "total_tokens", 0) or 0
    return Completion(
        content="".join(texts) or None,
        tool_calls=calls,
        tokens_used=tokens,
    )


class PydanticAICompletionService:
    """``CompletionService`` backed by ``pydantic_ai.direct.model_request``.

    ``model`` is anything pydantic-ai accepts: a ``"provider:name"`` string or
    a ``Model`` instance such as ``FunctionModel`` in tests.
    """

    def __init__(self, model: Union[str, Model]) -> None:
        self.model = model

    async def complete(
        self,
        system: str,
        messages: List[ChatMessage],
        tools: List[ToolDefinition],
    ) -> Completion:
        try:
            response = await model_request(
                self.model,
                to_model_messages(system, messages),
                model_request_parameters=ModelRequestParameters(function_tools=tools),
            )
        except Exception as e:
            logger.warning(f"Model request failed: {e}")
            raise AgentRuntimeError(f"Model request failed: {e}") from e
        return from_model_response(response)
