"""Durable execution records and their single mutation path."""

from __future__ import annotations

import copy
import json
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import update

from ..errors import NotFoundError, TerminalExecutionError, ValidationError
from ..extensions import db
from ..models.execution import (
    EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    Execution,
    empty_context,
    empty_metrics,
)
from ..utils.clock import new_id, utcnow

_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "started_at",
        "completed_at",
        "current_node_id",
        "completed_nodes",
        "failed_nodes",
        "skipped_nodes",
        "context",
        "result",
        "metrics",
        "expires_at",
    }
)

NODE_OUTCOMES = {
    "completed": "completed_nodes",
    "failed": "failed_nodes",
    "skipped": "skipped_nodes",
}


def create_execution(
    workflow_id: str,
    tenant_id: str,
    trigger: dict[str, Any],
    workflow_version: int,
    *,
    replay_of: str | None = None,
    retry_of: str | None = None,
    snapshot: dict[str, Any] | None = None,
    commit: bool = True,
) -> Execution:
    """Create a ``pending`` execution pinned to ``workflow_version``.

    ``snapshot`` freezes the workflow content for runs whose pinned version
    was never published.
    """

    execution = Execution(
        id=new_id("ex"),
        workflow_id=workflow_id,
        workflow_version=workflow_version,
        tenant_id=tenant_id,
        trigger=copy.deepcopy(trigger),
        snapshot=copy.deepcopy(snapshot) if snapshot is not None else None,
        status="pending",
        started_at=utcnow(),
        completed_nodes=[],
        failed_nodes=[],
        skipped_nodes=[],
        context=empty_context(),
        metrics=empty_metrics(),
        replay_of=replay_of,
        retry_of=retry_of,
    )
    db.session.add(execution)
    if commit:
        db.session.commit()
    return execution


def find_execution(execution_id: str) -> Execution | None:
    return db.session.get(Execution, execution_id)


def get_execution(execution_id: str) -> Execution:
    execution = find_execution(execution_id)
    if execution is None:
        raise NotFoundError(f"execution {execution_id} not found")
    return execution


def get_tenant_execution(tenant_id: str, execution_id: str) -> Execution:
    execution = find_execution(execution_id)
    if execution is None or execution.tenant_id != tenant_id:
        raise NotFoundError(f"execution {execution_id} not found")
    return execution


def list_executions(
    workflow_id: str,
    *,
    tenant_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Execution]:
    query = Execution.query.filter(Execution.workflow_id == workflow_id)
    if tenant_id is not None:
        query = query.filter(Execution.tenant_id == tenant_id)
    if status:
        query = query.filter(Execution.status == status)
    return (
        query.order_by(Execution.started_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 200)))
        .all()
    )


def update_execution(execution_id: str, **changes: Any) -> Execution:
    """Apply ``changes`` unless the execution already reached a terminal state."""

    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise ValidationError(f"cannot update execution fields: {', '.join(sorted(unknown))}")
    status = changes.get("status")
    if status is not None and status not in EXECUTION_STATUSES:
        raise ValidationError(f"unknown execution status '{status}'")

    result = db.session.execute(
        update(Execution)
        .where(
            Execution.id == execution_id,
            Execution.status.notin_(TERMINAL_EXECUTION_STATUSES),
        )
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        execution = get_execution(execution_id)
        raise TerminalExecutionError(
            f"execution {execution_id} is already {execution.status}"
        )
    db.session.commit()
    return get_execution(execution_id)


def mark_running(execution_id: str, *, attempt: int = 1) -> Execution:
    """Move an execution to ``running`` and reset the progress of a previous attempt."""

    execution = get_execution(execution_id)
    context = copy.deepcopy(execution.context or empty_context())
    context["node_outputs"] = {}
    context["attempt"] = attempt
    return update_execution(
        execution_id,
        status="running",
        started_at=utcnow(),
        current_node_id=None,
        completed_nodes=[],
        failed_nodes=[],
        skipped_nodes=[],
        context=context,
    )


def _data_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return 0


def record_node_result(
    execution_id: str,
    node_id: str,
    outcome: str,
    *,
    output: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    duration_ms: int = 0,
    variables: dict[str, Any] | None = None,
) -> Execution:
    """Record one node step so dependent nodes only see persisted outputs."""

    field = NODE_OUTCOMES.get(outcome)
    if field is None:
        raise ValidationError(f"unknown node outcome '{outcome}'")

    execution = get_execution(execution_id)
    nodes = list(getattr(execution, field) or [])
    if node_id not in nodes:
        nodes.append(node_id)

    context = copy.deepcopy(execution.context or empty_context())
    if variables is not None:
        context["variables"] = dict(variables)
    if outcome == "completed":
        context.setdefault("node_outputs", {})[node_id] = output or {}
    if error is not None:
        context.setdefault("errors", []).append(error)

    metrics = copy.deepcopy(execution.metrics or empty_metrics())
    if outcome != "skipped":
        metrics.setdefault("node_metrics", {})[node_id] = {
            "duration_ms": duration_ms,
            "retries": max(0, int(context.get("attempt", 1)) - 1),
            "data_size": _data_size(output),
        }

    return update_execution(
        execution_id,
        current_node_id=node_id,
        context=context,
        metrics=metrics,
        **{field: nodes},
    )


def _retention() -> timedelta:
    return timedelta(days=int(current_app.config.get("EXECUTION_RETENTION_DAYS", 30)))


def finish_execution(
    execution_id: str,
    status: str,
    *,
    result: dict[str, Any] | None = None,
    total_duration_ms: int | None = None,
    now: datetime | None = None,
) -> Execution:
    """Set a terminal status; the record is immutable afterwards."""

    if status not in TERMINAL_EXECUTION_STATUSES:
        raise ValidationError(f"'{status}' is not a terminal execution status")
    now = now or utcnow()
    changes: dict[str, Any] = {
        "status": status,
        "completed_at": now,
        "expires_at": now + _retention(),
        "result": result,
    }
    if total_duration_ms is not None:
        execution = get_execution(execution_id)
        metrics = copy.deepcopy(execution.metrics or empty_metrics())
        metrics["total_duration_ms"] = total_duration_ms
        changes["metrics"] = metrics
    return update_execution(execution_id, **changes)


def error_payload(node_id: str, code: str, message: str, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "node_id": node_id,
        "code": code,
        "message": message,
        "timestamp": (now or utcnow()).isoformat() + "Z",
    }


def fail_execution(
    execution_id: str,
    code: str,
    message: str,
    *,
    node_id: str = "system",
    status: str = "failed",
    now: datetime | None = None,
) -> Execution | None:
    """Terminate an execution with a structured error; ``None`` if it already ended."""

    try:
        return finish_execution(
            execution_id,
            status,
            result={"success": False, "error": error_payload(node_id, code, message, now=now)},
            now=now,
        )
    except (TerminalExecutionError, NotFoundError):
        return None


def cancel_execution(execution_id: str, *, now: datetime | None = None) -> Execution | None:
    return fail_execution(
        execution_id, "CANCELLED", "Cancelled by user", status="cancelled", now=now
    )
