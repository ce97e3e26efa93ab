"""Persistence of editable workflow definitions."""

from __future__ import annotations

import copy
import json
import re
import secrets
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy import update

from ..errors import (
    DuplicateSlugError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkflowDeleteError,
)
from ..extensions import db
from ..models.workflow import (
    DEFAULT_SETTINGS,
    DELETABLE_STATUSES,
    WORKFLOW_STATUSES,
    Workflow,
    WorkflowVersion,
    default_settings,
    default_stats,
    empty_graph,
)
from ..utils.clock import new_id, utcnow

MAX_GRAPH_BYTES = 500_000
MAX_SLUG_LENGTH = 50

STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset(),
    "active": frozenset({"paused"}),
    "paused": frozenset({"active", "archived"}),
    "archived": frozenset(),
}

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def generate_slug(name: str) -> str:
    slug = _SLUG_PATTERN.sub("-", name.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].strip("-") or "workflow"


def _slug_taken(tenant_id: str, slug: str, workflow_id: str | None = None) -> bool:
    query = Workflow.query.filter(Workflow.tenant_id == tenant_id, Workflow.slug == slug)
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return db.session.query(query.exists()).scalar()


def _unique_slug(tenant_id: str, name: str) -> str:
    base = generate_slug(name)
    slug = base
    while _slug_taken(tenant_id, slug):
        slug = f"{base[:MAX_SLUG_LENGTH - 5]}-{secrets.token_hex(2)}"
    return slug


def normalize_graph(value: Any) -> tuple[dict[str, list], list[str]]:
    """Validate a graph payload, returning the graph and a list of errors."""

    errors: list[str] = []
    if value is None:
        return empty_graph(), errors
    if not isinstance(value, dict):
        return empty_graph(), ["graph must be an object with nodes and edges"]

    try:
        graph_text = json.dumps(value)
    except (TypeError, ValueError):
        return empty_graph(), ["graph must be JSON serialisable"]
    if len(graph_text.encode("utf-8")) > MAX_GRAPH_BYTES:
        errors.append("graph exceeds the maximum size")

    nodes = value.get("nodes", [])
    edges = value.get("edges", [])
    if not isinstance(nodes, list):
        errors.append("graph.nodes must be a list")
        nodes = []
    if not isinstance(edges, list):
        errors.append("graph.edges must be a list")
        edges = []

    node_ids: set[str] = set()
    for index, node in enumerate(nodes):
        if not isinstance(node, dict):
            errors.append(f"node #{index} must be an object")
            continue
        node_id = node.get("id")
        if not isinstance(node_id, str) or not node_id:
            errors.append(f"node #{index} needs a string id")
            continue
        if node_id in node_ids:
            errors.append(f"duplicate node id '{node_id}'")
        node_ids.add(node_id)
        if not isinstance(node.get("type"), str):
            errors.append(f"node '{node_id}' needs a type")

    for index, edge in enumerate(edges):
        if not isinstance(edge, dict):
            errors.append(f"edge #{index} must be an object")
            continue
        for end in ("source", "target"):
            if edge.get(end) not in node_ids:
                errors.append(f"edge #{index} {end} '{edge.get(end)}' is not a node")

    return {"nodes": copy.deepcopy(nodes), "edges": copy.deepcopy(edges)}, errors


def _merge_settings(value: Any) -> dict[str, Any]:
    if value is None:
        return default_settings()
    if not isinstance(value, dict):
        raise ValidationError("settings must be an object")
    settings = default_settings()
    for key, item in value.items():
        if key == "retry_policy" and isinstance(item, dict):
            settings["retry_policy"] = {**DEFAULT_SETTINGS["retry_policy"], **item}  # type: ignore[dict-item]
        else:
            settings[key] = item
    if settings.get("error_handling") not in ("stop", "continue"):
        raise ValidationError("settings.error_handling must be 'stop' or 'continue'")
    return settings


def _string_list(value: Any, field: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list")
    return list(value)


def create_workflow(
    tenant_id: str,
    name: str,
    *,
    user_id: str | None = None,
    description: str | None = None,
    slug: str | None = None,
    tags: list[str] | None = None,
    graph: dict[str, Any] | None = None,
    settings: dict[str, Any] | None = None,
    variables: list[dict[str, Any]] | None = None,
) -> Workflow:
    """Create a ``draft`` workflow at version 1."""

    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    normalized, errors = normalize_graph(graph)
    if errors:
        raise ValidationError("invalid workflow graph", errors)

    if slug:
        slug = generate_slug(slug)
        if _slug_taken(tenant_id, slug):
            raise DuplicateSlugError(f"a workflow with slug '{slug}' already exists")
    else:
        slug = _unique_slug(tenant_id, name)

    workflow = Workflow(
        id=new_id("wf"),
        tenant_id=tenant_id,
        name=name,
        description=description,
        slug=slug,
        graph=normalized,
        settings=_merge_settings(settings),
        variables=_string_list(variables, "variables"),
        tags=_string_list(tags, "tags"),
        status="draft",
        version=1,
        stats=default_stats(),
        created_by=user_id,
        last_modified_by=user_id,
    )
    db.session.add(workflow)
    db.session.commit()
    current_app.logger.info("Created workflow %s (%s) for tenant %s", workflow.id, slug, tenant_id)
    return workflow


def find_workflow(workflow_id: str) -> Workflow | None:
    return db.session.get(Workflow, workflow_id)


def get_workflow(tenant_id: str, workflow_id: str) -> Workflow:
    workflow = find_workflow(workflow_id)
    if workflow is None or workflow.tenant_id != tenant_id:
        raise NotFoundError(f"workflow {workflow_id} not found")
    return workflow


def get_workflow_by_slug(tenant_id: str, slug: str) -> Workflow:
    workflow = Workflow.query.filter(
        Workflow.tenant_id == tenant_id, Workflow.slug == slug
    ).first()
    if workflow is None:
        raise NotFoundError(f"workflow '{slug}' not found")
    return workflow


def list_workflows(
    tenant_id: str,
    *,
    status: str | None = None,
    tag: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Workflow], int]:
    query = Workflow.query.filter(Workflow.tenant_id == tenant_id)
    if status:
        if status not in WORKFLOW_STATUSES:
            raise ValidationError(f"unknown workflow status '{status}'")
        query = query.filter(Workflow.status == status)
    workflows = query.order_by(Workflow.updated_at.desc(), Workflow.created_at.desc()).all()
    if tag:
        workflows = [workflow for workflow in workflows if tag in (workflow.tags or [])]
    page = max(1, page)
    page_size = max(1, min(page_size, 100))
    start = (page - 1) * page_size
    return workflows[start : start + page_size], len(workflows)


_EDITABLE_FIELDS = ("name", "description", "tags", "graph", "settings", "variables")


def update_workflow(
    tenant_id: str,
    workflow_id: str,
    changes: dict[str, Any],
    *,
    user_id: str | None = None,
) -> Workflow:
    """Apply content edits and bump ``version`` in the same statement."""

    workflow = get_workflow(tenant_id, workflow_id)
    if workflow.status == "archived":
        raise InvalidTransitionError("archived workflows cannot be edited")

    values: dict[str, Any] = {}
    for field in _EDITABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationError("name must not be empty")
        elif field == "graph":
            value, errors = normalize_graph(value)
            if errors:
                raise ValidationError("invalid workflow graph", errors)
        elif field == "settings":
            value = _merge_settings(value)
        elif field in ("tags", "variables"):
            value = _string_list(value, field)
        values[field] = value

    if not values:
        return workflow

    db.session.execute(
        update(Workflow)
        .where(Workflow.id == workflow.id)
        .values(
            version=Workflow.version + 1,
            last_modified_by=user_id,
            updated_at=utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return get_workflow(tenant_id, workflow_id)


def set_status(tenant_id: str, workflow_id: str, status: str, *, user_id: str | None = None) -> Workflow:
    """Move a workflow between lifecycle states."""

    if status not in WORKFLOW_STATUSES:
        raise ValidationError(f"unknown workflow status '{status}'")
    workflow = get_workflow(tenant_id, workflow_id)
    if status == workflow.status:
        return workflow
    if status not in STATUS_TRANSITIONS[workflow.status]:
        hint = " (publish the workflow to activate it)" if status == "active" else ""
        raise InvalidTransitionError(
            f"cannot change workflow status from '{workflow.status}' to '{status}'{hint}"
        )
    if status == "active" and workflow.published_version is None:
        raise InvalidTransitionError("workflow has no published version")

    workflow.status = status
    workflow.last_modified_by = user_id
    db.session.commit()
    current_app.logger.info("Workflow %s is now %s", workflow_id, status)
    return workflow


def delete_workflow(tenant_id: str, workflow_id: str) -> None:
    workflow = get_workflow(tenant_id, workflow_id)
    if workflow.status not in DELETABLE_STATUSES:
        raise WorkflowDeleteError("active workflows must be paused before deletion")
    WorkflowVersion.query.filter(WorkflowVersion.workflow_id == workflow.id).delete(
        synchronize_session=False
    )
    db.session.delete(workflow)
    db.session.commit()
    current_app.logger.info("Deleted workflow %s", workflow_id)


def record_execution_stats(
    workflow_id: str,
    success: bool,
    duration_ms: int,
    *,
    now: datetime | None = None,
) -> None:
    """Fold one terminal execution into the workflow's running stats."""

    workflow = db.session.get(
        Workflow, workflow_id, with_for_update=True, populate_existing=True
    )
    if workflow is None:
        return
    stats = {**default_stats(), **(workflow.stats or {})}
    total = int(stats["total_executions"]) + 1
    previous_avg = float(stats["avg_execution_time_ms"] or 0)
    stats["total_executions"] = total
    key = "successful_executions" if success else "failed_executions"
    stats[key] = int(stats[key]) + 1
    stats["avg_execution_time_ms"] = round(previous_avg + (duration_ms - previous_avg) / total)
    stats["last_executed_at"] = (now or utcnow()).isoformat() + "Z"
    workflow.stats = stats
    db.session.commit()

