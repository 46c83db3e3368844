"""``{{ key }}`` substitution for step inputs."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_MISSING = object()


def lookup_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` inside nested mappings and sequences."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        elif hasattr(current, "model_dump"):
            current = current.model_dump().get(part, _MISSING)
            if current is _MISSING:
                return default
        else:
            return default
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: str, *sources: Mapping[str, Any]) -> str:
    """Replace placeholders using the first source that defines the key.

    Unknown keys render as an empty string.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        for source in sources:
            value = lookup_path(source, key, _MISSING)
            if value is not _MISSING:
                return _stringify(value)
        return ""

    return _PLACEHOLDER.sub(_replace, template)


def render_inputs(inputs: Any, *sources: Mapping[str, Any]) -> Any:
    """Render every string found in ``inputs``, preserving its shape."""
    if isinstance(inputs, str):
        return render_template(inputs, *sources)
    if isinstance(inputs, Mapping):
        return {key: render_inputs(value, *sources) for key, value in inputs.items()}
    if isinstance(inputs, list):
        return [render_inputs(item, *sources) for item in inputs]
    return inputs
