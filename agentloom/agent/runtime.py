"""Bounded tool-calling loop around a completion service."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_MAX_ITERATIONS, FALLBACK_CONTENT
from ..contracts import Agent
from ..errors import AgentRuntimeError
from ..tools import ToolContext, ToolExecutor, ToolName, ToolResult
from ..utils.retry import schedule_retry
from .completion import ChatMessage, Completion, CompletionService
from .prompts import allowed_tool_names, build_system_prompt

logger = logging.getLogger(__name__)


class RunResult(BaseModel):
    content: str
    tools_used: List[str] = Field(default_factory=list)
    tool_results: List[Dict[str, Any]] = Field(default_factory=list)
    iterations: int = 0
    tokens_used: int = 0


class AgentRuntime:
    """Run one agent against one task.

    The model may request tools; each round of tool calls is executed and fed
    back until the model answers without tools or ``max_iterations`` rounds
    have run. Hitting the bound is not an error: the last textual content (or
    a fixed fallback) is returned.
    """

    def __init__(
        self,
        completion: CompletionService,
        tools: ToolExecutor,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        retry_attempts: int = 2,
        retry_base: float = 1.5,
    ) -> None:
        self.completion = completion
        self.tools = tools
        self.max_iterations = max_iterations
        self.retry_attempts = retry_attempts
        self.retry_base = retry_base

    async def run(
        self,
        agent: Agent,
        task: str,
        tool_context: ToolContext,
        history: Optional[List[ChatMessage]] = None,
    ) -> RunResult:
        system = build_system_prompt(agent)
        allowed = allowed_tool_names(agent.config)
        definitions = self.tools.registry.definitions(allowed)
        messages: List[ChatMessage] = list(history or [])
        messages.append(ChatMessage(role="user", content=task))

        logger.info(
            f"Running agent_id={agent.id} with {len(definitions)} tools, max_iterations={self.max_iterations}"
        )

        completion = await self._complete(system, messages, definitions)
        tokens = completion.tokens_used
        last_content = completion.content
        tools_used: List[str] = []
        tool_results: List[Dict[str, Any]] = []
        iterations = 0

        while completion.tool_calls and iterations < self.max_iterations:
            iterations += 1
            messages.append(
                ChatMessage(
                    role="assistant",
                    content=completion.content,
                    tool_calls=completion.tool_calls,
                )
            )
            for call in completion.tool_calls:
                name = ToolName.parse(call.name)
                if name is None or name not in allowed:
                    logger.warning(
                        f"Agent {agent.id} requested tool {call.name} outside its allow-list"
                    )
                    result = ToolResult(
                        success=False,
                        message=f"Tool {call.name} is not available to this agent",
                    )
                else:
                    result = await self.tools.execute(call.name, call.arguments, tool_context)
                tools_used.append(call.name)
                tool_results.append({"tool": call.name, **result.model_dump(mode="json")})
                messages.append(
                    ChatMessage(
                        role="tool",
                        name=call.name,
                        tool_call_id=call.id,
                        content=json.dumps(result.model_dump(mode="json"), default=str),
                    )
                )

            completion = await self._complete(system, messages, definitions)
            tokens += completion.tokens_used
            if completion.content:
                last_content = completion.content

        if completion.tool_calls:
            logger.warning(
                f"Agent {agent.id} still requesting tools after {iterations} iterations; stopping"
            )

        return RunResult(
            content=completion.content or last_content or FALLBACK_CONTENT,
            tools_used=tools_used,
            tool_results=tool_results,
            iterations=iterations,
            tokens_used=tokens,
        )

    async def _complete(self, system, messages, definitions) -> Completion:
        attempt = 1
        while True:
            try:
                return await self.completion.complete(system, list(messages), definitions)
            except Exception as e:
                error = (
                    e
                    if isinstance(e, AgentRuntimeError)
                    else AgentRuntimeError(f"Completion failed: {e}")
                )
                if not error.retryable or attempt > self.retry_attempts:
                    if error is e:
                        raise
                    raise error from e
                logger.warning(
                    f"Completion attempt {attempt} failed: {error.message}; retrying"
                )
                await schedule_retry(attempt, base=self.retry_base)
                attempt += 1
