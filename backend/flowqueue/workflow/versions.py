"""Append-only history of published workflow snapshots."""

from __future__ import annotations

import copy
import json
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy import func, update

from ..errors import ActiveVersionRollbackError, InvalidTransitionError, NotFoundError
from ..extensions import db
from ..models.workflow import Workflow, WorkflowVersion
from ..utils.clock import utcnow

PUBLISHABLE_STATUSES = frozenset({"draft", "active", "paused"})


def _lock_workflow(tenant_id: str, workflow_id: str) -> Workflow:
    workflow = db.session.get(
        Workflow, workflow_id, with_for_update=True, populate_existing=True
    )
    if workflow is None or workflow.tenant_id != tenant_id:
        db.session.rollback()
        raise NotFoundError(f"workflow {workflow_id} not found")
    return workflow


def snapshot_of(workflow: Workflow) -> dict[str, Any]:
    return copy.deepcopy(
        {
            "name": workflow.name,
            "description": workflow.description,
            "graph": workflow.graph,
            "settings": workflow.settings,
            "variables": workflow.variables,
        }
    )


def _by_id(items: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(items, list):
        return {}
    return {
        str(item["id"]): item
        for item in items
        if isinstance(item, dict) and item.get("id") is not None
    }


def _edge_key(edge: dict[str, Any]) -> str:
    if edge.get("id") is not None:
        return str(edge["id"])
    return f"{edge.get('source')}->{edge.get('target')}:{edge.get('target_handle') or 'default'}"


def changes_summary(previous: dict[str, Any] | None, current: dict[str, Any]) -> dict[str, int]:
    """Count node and edge differences between two graphs."""

    previous = previous or {}
    old_nodes = _by_id(previous.get("nodes"))
    new_nodes = _by_id(current.get("nodes"))
    old_edges = {_edge_key(e) for e in previous.get("edges") or [] if isinstance(e, dict)}
    new_edges = {_edge_key(e) for e in current.get("edges") or [] if isinstance(e, dict)}

    modified = sum(
        1
        for node_id in new_nodes.keys() & old_nodes.keys()
        if json.dumps(new_nodes[node_id], sort_keys=True)
        != json.dumps(old_nodes[node_id], sort_keys=True)
    )
    return {
        "nodes_added": len(new_nodes.keys() - old_nodes.keys()),
        "nodes_removed": len(old_nodes.keys() - new_nodes.keys()),
        "nodes_modified": modified,
        "edges_added": len(new_edges - old_edges),
        "edges_removed": len(old_edges - new_edges),
    }


def get_active_version(workflow_id: str) -> WorkflowVersion | None:
    return WorkflowVersion.query.filter(
        WorkflowVersion.workflow_id == workflow_id, WorkflowVersion.is_active.is_(True)
    ).first()


def find_version(workflow_id: str, version: int) -> WorkflowVersion | None:
    return WorkflowVersion.query.filter(
        WorkflowVersion.workflow_id == workflow_id, WorkflowVersion.version == version
    ).first()


def get_version(workflow_id: str, version: int) -> WorkflowVersion:
    record = find_version(workflow_id, version)
    if record is None:
        raise NotFoundError(f"version {version} of workflow {workflow_id} not found")
    return record


def _latest_number(workflow_id: str) -> int:
    return (
        db.session.query(func.max(WorkflowVersion.version))
        .filter(WorkflowVersion.workflow_id == workflow_id)
        .scalar()
        or 0
    )


def _append_version(
    workflow: Workflow,
    snapshot: dict[str, Any],
    *,
    user_id: str | None,
    note: str | None,
    source_version: int | None = None,
    now: datetime,
) -> WorkflowVersion:
    previous = get_active_version(workflow.id)
    number = max(_latest_number(workflow.id) + 1, workflow.version)

    # The demotion is flushed before the insert so that at most one row is
    # active at any point of the transaction.
    db.session.execute(
        update(WorkflowVersion)
        .where(WorkflowVersion.workflow_id == workflow.id, WorkflowVersion.is_active.is_(True))
        .values(is_active=False, deprecated_at=now, deprecated_by=user_id)
        .execution_options(synchronize_session=False)
    )
    record = WorkflowVersion(
        workflow_id=workflow.id,
        tenant_id=workflow.tenant_id,
        version=number,
        snapshot=snapshot,
        publish_note=note,
        published_by=user_id,
        published_at=now,
        changes_summary=changes_summary(
            previous.snapshot.get("graph") if previous is not None else None,
            snapshot.get("graph") or {},
        ),
        stats={},
        source_version=source_version,
        is_active=True,
    )
    db.session.add(record)
    workflow.version = number
    workflow.published_version = number
    workflow.last_modified_by = user_id
    workflow.updated_at = now
    return record


def publish(
    tenant_id: str,
    workflow_id: str,
    *,
    user_id: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> WorkflowVersion:
    """Snapshot the current content and make it the active version."""

    now = now or utcnow()
    workflow = _lock_workflow(tenant_id, workflow_id)
    if workflow.status not in PUBLISHABLE_STATUSES:
        db.session.rollback()
        raise InvalidTransitionError(f"cannot publish a workflow that is {workflow.status}")

    record = _append_version(workflow, snapshot_of(workflow), user_id=user_id, note=note, now=now)
    workflow.status = "active"
    db.session.commit()
    current_app.logger.info("Published workflow %s as version %s", workflow_id, record.version)
    return record


def rollback(
    tenant_id: str,
    workflow_id: str,
    target_version: int,
    *,
    user_id: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> WorkflowVersion:
    """Republish an earlier snapshot as a new version.

    History is never rewritten: the target's snapshot is copied into a fresh
    version that becomes active, and into the workflow's editable content.
    """

    now = now or utcnow()
    workflow = _lock_workflow(tenant_id, workflow_id)
    if workflow.status == "archived":
        db.session.rollback()
        raise InvalidTransitionError("cannot roll back an archived workflow")
    target = find_version(workflow_id, target_version)
    if target is None:
        db.session.rollback()
        raise NotFoundError(f"version {target_version} of workflow {workflow_id} not found")
    if target.is_active:
        db.session.rollback()
        raise ActiveVersionRollbackError(f"version {target_version} is already active")

    snapshot = copy.deepcopy(target.snapshot)
    record = _append_version(
        workflow,
        snapshot,
        user_id=user_id,
        note=note or f"Rolled back to version {target_version}",
        source_version=target_version,
        now=now,
    )
    workflow.name = snapshot.get("name", workflow.name)
    workflow.description = snapshot.get("description")
    workflow.graph = snapshot.get("graph") or {"nodes": [], "edges": []}
    workflow.settings = snapshot.get("settings") or workflow.settings
    workflow.variables = snapshot.get("variables") or []
    db.session.commit()
    current_app.logger.info(
        "Rolled back workflow %s to version %s as version %s",
        workflow_id,
        target_version,
        record.version,
    )
    return record


def list_history(
    workflow_id: str, *, page: int = 1, page_size: int = 20
) -> tuple[list[WorkflowVersion], int]:
    page = max(1, page)
    page_size = max(1, min(page_size, 100))
    query = WorkflowVersion.query.filter(WorkflowVersion.workflow_id == workflow_id)
    total = query.count()
    items = (
        query.order_by(WorkflowVersion.version.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def has_unpublished_changes(workflow: Workflow) -> bool:
    return workflow.published_version is None or workflow.version != workflow.published_version


def record_version_outcome(workflow_id: str, version: int, success: bool) -> None:
    record = find_version(workflow_id, version)
    if record is None:
        return
    stats = dict(record.stats or {})
    stats["executions"] = int(stats.get("executions", 0)) + 1
    key = "successful" if success else "failed"
    stats[key] = int(stats.get(key, 0)) + 1
    record.stats = stats
    db.session.commit()
