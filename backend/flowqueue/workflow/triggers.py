"""Match incoming events to the active workflows that listen for them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError
from ..models.workflow import Workflow, WorkflowVersion

# trigger type -> (node type, config key naming the event source)
TRIGGER_NODE_TYPES: dict[str, tuple[str, str | None]] = {
    "form_submission": ("form-trigger", "formId"),
    "webhook": ("webhook-trigger", "webhookId"),
    "schedule": ("schedule-trigger", "scheduleId"),
    "manual": ("manual-trigger", None),
}


@dataclass(frozen=True)
class TriggerEvent:
    trigger_type: str
    source_id: str | None = None


def _node_matches(node: Any, node_type: str, source_key: str | None, source_id: str | None) -> bool:
    if not isinstance(node, dict) or node.get("type") != node_type:
        return False
    if node.get("enabled", True) is False:
        return False
    if source_key is None:
        return True
    config = node.get("config") or {}
    return isinstance(config, dict) and config.get(source_key) == source_id


def graph_listens_for(graph: dict[str, Any] | None, event: TriggerEvent) -> bool:
    try:
        node_type, source_key = TRIGGER_NODE_TYPES[event.trigger_type]
    except KeyError:
        raise ValidationError(f"unknown trigger type '{event.trigger_type}'") from None
    nodes = (graph or {}).get("nodes") or []
    return any(_node_matches(node, node_type, source_key, event.source_id) for node in nodes)


def find_matching_workflows(tenant_id: str, event: TriggerEvent) -> list[Workflow]:
    """Return active workflows whose published graph has an enabled matching trigger."""

    if event.trigger_type not in TRIGGER_NODE_TYPES:
        raise ValidationError(f"unknown trigger type '{event.trigger_type}'")

    rows = (
        Workflow.query.join(
            WorkflowVersion,
            (WorkflowVersion.workflow_id == Workflow.id) & WorkflowVersion.is_active.is_(True),
        )
        .filter(Workflow.tenant_id == tenant_id, Workflow.status == "active")
        .with_entities(Workflow, WorkflowVersion.snapshot)
        .order_by(Workflow.created_at.asc())
        .all()
    )
    return [
        workflow
        for workflow, snapshot in rows
        if graph_listens_for((snapshot or {}).get("graph"), event)
    ]
