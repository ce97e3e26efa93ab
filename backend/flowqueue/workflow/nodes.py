"""Registry of node handlers keyed by node type."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flask import current_app

from ..errors import PermanentNodeError
from . import sandbox


@dataclass
class NodeContext:
    """Everything a handler may read while executing one node."""

    execution_id: str
    workflow_id: str
    tenant_id: str
    node_id: str
    trigger: dict[str, Any]
    variables: dict[str, Any]
    node_outputs: dict[str, Any]
    attempt: int = 1
    logs: list[tuple[str, str, dict[str, Any] | None]] = field(default_factory=list)

    def log(self, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        """Buffer a log entry; the runner persists it once the handler returns."""

        self.logs.append((level, message, data))


NodeHandler = Callable[[dict[str, Any], dict[str, Any], NodeContext], Any]

_HANDLERS: dict[str, NodeHandler] = {}


def register_node_handler(node_type: str) -> Callable[[NodeHandler], NodeHandler]:
    def decorator(func: NodeHandler) -> NodeHandler:
        _HANDLERS[node_type] = func
        return func

    return decorator


def unregister_node_handler(node_type: str) -> None:
    _HANDLERS.pop(node_type, None)


def get_node_handler(node_type: str) -> NodeHandler:
    try:
        return _HANDLERS[node_type]
    except KeyError:
        raise PermanentNodeError(
            f"No handler registered for node type '{node_type}'", code="UNKNOWN_NODE_TYPE"
        ) from None


def registered_node_types() -> list[str]:
    return sorted(_HANDLERS)


def _trigger_output(config: dict[str, Any], inputs: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
    payload = ctx.trigger.get("payload") or {}
    return {
        "type": ctx.trigger.get("type"),
        "data": payload.get("data", {}),
        "payload": payload,
    }


for _trigger_type in ("form-trigger", "webhook-trigger", "schedule-trigger", "manual-trigger"):
    register_node_handler(_trigger_type)(_trigger_output)


@register_node_handler("code")
def run_code_node(config: dict[str, Any], inputs: dict[str, Any], ctx: NodeContext) -> Any:
    code = config.get("code")
    if not isinstance(code, str) or not code.strip():
        raise PermanentNodeError("Code node has no code", code="CONFIGURATION_ERROR")
    timeout = float(config.get("timeout") or current_app.config.get("CODE_NODE_TIMEOUT_SECONDS", 1.5))
    result, debug_output = sandbox.run_code(
        code,
        inputs,
        {"variables": ctx.variables, "trigger": ctx.trigger, "attempt": ctx.attempt},
        timeout=timeout,
    )
    if debug_output:
        ctx.log("debug", "code node wrote to stderr", {"stderr": debug_output[-2000:]})
    return result
