"""REST API endpoints for executions, their jobs and the tenant queue."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..errors import NotFoundError, ValidationError
from ..models.execution import EXECUTION_STATUSES
from ..utils.clock import isoformat
from ..workflow import executions, logsink, queue, store
from ..workflow.dispatch import replay_execution
from .serializers import serialize_execution, serialize_log

bp = Blueprint("executions", __name__)

EXECUTION_ACTIONS = ("retry", "cancel", "replay")


@bp.get("/tenants/<tenant_id>/workflows/<workflow_id>/executions")
def list_executions(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    store.get_workflow(tenant_id, workflow_id)
    status = request.args.get("status")
    if status and status not in EXECUTION_STATUSES:
        raise ValidationError(f"unknown execution status '{status}'")
    limit = request.args.get("limit", type=int) or 50
    offset = request.args.get("offset", type=int) or 0
    items = executions.list_executions(
        workflow_id, tenant_id=tenant_id, status=status, limit=limit, offset=offset
    )
    return (
        jsonify({"executions": [serialize_execution(item) for item in items]}),
        HTTPStatus.OK,
    )


@bp.get("/tenants/<tenant_id>/executions/<execution_id>")
def get_execution(tenant_id: str, execution_id: str) -> tuple[object, int]:
    execution = executions.get_tenant_execution(tenant_id, execution_id)
    data = serialize_execution(execution, job=queue.get_job_by_execution(execution_id))
    if request.args.get("logs", "").lower() in {"1", "true", "yes"}:
        data["logs"] = [serialize_log(entry) for entry in logsink.get_logs(execution_id)]
    return jsonify(data), HTTPStatus.OK


@bp.post("/tenants/<tenant_id>/executions/<execution_id>/actions")
def execution_action(tenant_id: str, execution_id: str) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    action = payload.get("action") if isinstance(payload, dict) else None
    if action not in EXECUTION_ACTIONS:
        raise ValidationError(
            "action is invalid", [f"action must be one of {', '.join(EXECUTION_ACTIONS)}"]
        )
    executions.get_tenant_execution(tenant_id, execution_id)

    if action == "replay":
        new_id = replay_execution(execution_id, tenant_id=tenant_id)
        execution = executions.get_execution(new_id)
        return (
            jsonify(serialize_execution(execution, job=queue.get_job_by_execution(new_id))),
            HTTPStatus.ACCEPTED,
        )

    job = queue.get_job_by_execution(execution_id)
    if job is None:
        raise NotFoundError(f"no job found for execution {execution_id}")
    if action == "cancel":
        job = queue.cancel(job.id)
    else:
        job = queue.retry(job.id, force=bool(payload.get("force")))
    execution = executions.get_execution(job.execution_id)
    return jsonify(serialize_execution(execution, job=job)), HTTPStatus.OK


@bp.get("/tenants/<tenant_id>/queue")
def queue_status(tenant_id: str) -> tuple[object, int]:
    status = queue.queue_status(tenant_id)
    status["oldest_pending_at"] = isoformat(status["oldest_pending_at"])
    return jsonify(status), HTTPStatus.OK
