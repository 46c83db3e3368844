"""Shaping agent output and folding it into an accumulating context."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .agent import RunResult


def parse_json_object(content: str) -> Optional[Dict[str, Any]]:
    """Return ``content`` as a dict when it is a JSON object, else ``None``."""
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def run_output(run: RunResult) -> Dict[str, Any]:
    return {
        "content": run.content,
        "toolsUsed": run.tools_used,
        "iterations": run.iterations,
        "data": parse_json_object(run.content),
    }


def fold_output(context: Dict[str, Any], key: str, output: Dict[str, Any]) -> None:
    """Merge one output into ``context`` in place.

    ``<key>_result`` holds the text; keys of a JSON object answer are lifted
    to the top level so later templates and conditions can address them.
    """
    context[f"{key}_result"] = output.get("content")
    data = output.get("data")
    if isinstance(data, dict):
        context.update(data)


def build_task(action: str, inputs: Any) -> str:
    """Combine an action with rendered inputs into the agent's task text."""
    if inputs in (None, "", {}):
        return action
    if isinstance(inputs, str):
        return f"{action}\n\n{inputs}"
    return f"{action}\n\nInputs:\n{json.dumps(inputs, indent=2, default=str)}"
