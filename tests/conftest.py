"""Shared fixtures: scripted completion service, repositories and agents."""

from types import SimpleNamespace
from typing import Callable, List, Optional, Union

import pytest

import agentloom.persistence as persistence
from agentloom.agent import AgentRuntime, ChatMessage, Completion, ToolCall
from agentloom.contracts import Agent, AgentConfig, DefinitionStatus
from agentloom.persistence import InMemoryRepository
from agentloom.tools import ToolExecutor, build_default_registry
from agentloom.transports import InMemoryTransport

ScriptItem = Union[Completion, Exception, Callable[[List[ChatMessage]], Completion]]


class ScriptedCompletion:
    """Completion service replaying a fixed script; the last item repeats."""

    def __init__(self, script: List[ScriptItem]):
        self.script = script
        self.calls: List[dict] = []

    async def complete(self, system, messages, tools):
        self.calls.append({"system": system, "messages": list(messages), "tools": tools})
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item


def text(content: str, tokens: int = 10) -> Completion:
    return Completion(content=content, tokens_used=tokens)


def tool_call(name: str, arguments: Optional[dict] = None, call_id: str = "call-1") -> Completion:
    return Completion(
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {})],
        tokens_used=5,
    )


@pytest.fixture(autouse=True)
def _reset_repository_singleton():
    persistence._repository_instance = None
    persistence._repository_url = None
    yield
    persistence._repository_instance = None
    persistence._repository_url = None


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def make_runtime():
    def _make(completion, **kwargs) -> AgentRuntime:
        return AgentRuntime(completion, ToolExecutor(build_default_registry()), **kwargs)

    return _make


@pytest.fixture
def make_agent():
    def _make(agent_id: str = "agent-1", **kwargs) -> Agent:
        kwargs.setdefault("name", agent_id.title())
        kwargs.setdefault("status", DefinitionStatus.ACTIVE)
        kwargs.setdefault("config", AgentConfig())
        return Agent(id=agent_id, **kwargs)

    return _make


@pytest.fixture
def scripted():
    return ScriptedCompletion


@pytest.fixture
def completions():
    """Builders for scripted turns: ``completions.text(...)``, ``completions.tool_call(...)``."""
    return SimpleNamespace(text=text, tool_call=tool_call)
