from __future__ import annotations

import json
from typing import Dict, List

from ..contracts import Agent, AgentConfig
from ..tools import SELF_ADJUST_TOOLS as SELF_ADJUST_SPECS
from ..tools import WORKSPACE_TOOLS, ToolName, ToolRegistry

CAPABILITY_TOOLS: Dict[str, List[ToolName]] = {
    "agents": [ToolName.LIST_AGENTS, ToolName.GET_AGENT_STATUS],
    "workflows": [ToolName.LIST_WORKFLOWS, ToolName.GET_WORKFLOW_STATUS],
    "memory": [ToolName.STORE_SHARED_CONTEXT, ToolName.RETRIEVE_SHARED_CONTEXT],
}

DEFAULT_READ_ONLY_TOOLS: List[ToolName] = ToolRegistry(WORKSPACE_TOOLS).read_only_names()

SELF_ADJUST_TOOL_NAMES: List[ToolName] = [spec.name for spec in SELF_ADJUST_SPECS]


def allowed_tool_names(config: AgentConfig) -> List[ToolName]:
    """Resolve the tools an agent may call, in a stable order.

    Explicit ``config.tools`` win; otherwise capabilities are projected
    through ``CAPABILITY_TOOLS``; otherwise the workspace tools flagged
    ``read_only`` apply. Unknown names are ignored.
    """
    if config.tools:
        names = [name for name in map(ToolName.parse, config.tools) if name]
    elif config.capabilities:
        names = [
            tool
            for capability in config.capabilities
            for tool in CAPABILITY_TOOLS.get(capability, [])
        ]
    else:
        names = list(DEFAULT_READ_ONLY_TOOLS)

    # Self-adjustment tools ride along even with an explicit allow-list;
    # ``self_adjust: false`` is the only way to withhold them.
    if config.self_adjust:
        names = names + SELF_ADJUST_TOOL_NAMES

    ordered: List[ToolName] = []
    for name in names:
        if name not in ordered:
            ordered.append(name)
    return ordered


def build_system_prompt(agent: Agent) -> str:
    """Return the agent's own system prompt, or synthesize one from its profile."""
    config = agent.config
    if config.system_prompt:
        return config.system_prompt

    lines = [f"You are {agent.name}, a {agent.type} agent."]
    if agent.description:
        lines.append(agent.description)
    lines.append(f"Communicate in a {config.tone} tone.")
    if config.capabilities:
        lines.append(f"Your capabilities: {', '.join(config.capabilities)}.")
    if config.preferences:
        lines.append(
            f"Your saved preferences: {json.dumps(config.preferences, sort_keys=True, default=str)}"
        )
    if config.notes:
        lines.append("Notes you left for yourself:")
        lines.extend(f"- {note}" for note in config.notes)
    lines.append(
        "Use the available tools when they help. Answer with a concise final result."
    )
    return "\n".join(lines)
