"""``{{path}}`` substitution in node configuration."""

from __future__ import annotations

import json
import re
from typing import Any

_TEMPLATE = re.compile(r"\{\{([^}]+)\}\}")
_FULL_TEMPLATE = re.compile(r"^\{\{([^}]+)\}\}$")

_MISSING = object()


def get_path(value: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested dicts and lists."""

    current = value
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def set_path(target: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def build_scope(
    trigger: dict[str, Any], node_outputs: dict[str, Any], variables: dict[str, Any]
) -> dict[str, Any]:
    return {"trigger": trigger, "nodes": node_outputs, "variables": variables}


def _render(resolved: Any) -> str:
    if isinstance(resolved, (dict, list)):
        return json.dumps(resolved, default=str)
    if isinstance(resolved, bool):
        return "true" if resolved else "false"
    return str(resolved)


def substitute_string(value: str, scope: dict[str, Any]) -> Any:
    """Resolve templates in ``value``.

    A string that is a single template yields the raw resolved value of any
    type; templates embedded in text are rendered as strings.  Unresolved
    templates are left untouched.
    """

    full = _FULL_TEMPLATE.match(value)
    if full:
        resolved = get_path(scope, full.group(1).strip(), _MISSING)
        return value if resolved is _MISSING else resolved

    def replace(match: re.Match[str]) -> str:
        resolved = get_path(scope, match.group(1).strip(), _MISSING)
        if resolved is _MISSING or resolved is None:
            return match.group(0)
        return _render(resolved)

    return _TEMPLATE.sub(replace, value)


def substitute(value: Any, scope: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return substitute_string(value, scope) if "{{" in value else value
    if isinstance(value, list):
        return [substitute(item, scope) for item in value]
    if isinstance(value, dict):
        return {key: substitute(item, scope) for key, item in value.items()}
    return value
