"""REST API endpoints for workflow definitions and their version history."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..errors import ValidationError
from ..workflow import store, versions
from ..workflow.dispatch import build_trigger, trigger_workflow
from ..workflow.executions import get_execution
from ..workflow.queue import get_job_by_execution
from .serializers import serialize_execution, serialize_version, serialize_workflow

bp = Blueprint("workflows", __name__)


def _payload() -> dict[str, Any]:
    payload = request.get_json(silent=True, force=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def _user_id() -> str | None:
    return request.headers.get("X-User-Id") or None


def _page_args() -> tuple[int, int]:
    page = request.args.get("page", type=int) or 1
    page_size = request.args.get("page_size", type=int) or 20
    return max(1, page), max(1, min(page_size, 100))


@bp.post("/tenants/<tenant_id>/workflows")
def create_workflow(tenant_id: str) -> tuple[object, int]:
    payload = _payload()
    workflow = store.create_workflow(
        tenant_id,
        payload.get("name") or "",
        user_id=_user_id(),
        description=payload.get("description"),
        slug=payload.get("slug"),
        tags=payload.get("tags"),
        graph=payload.get("graph"),
        settings=payload.get("settings"),
        variables=payload.get("variables"),
    )
    return jsonify(serialize_workflow(workflow)), HTTPStatus.CREATED


@bp.get("/tenants/<tenant_id>/workflows")
def list_workflows(tenant_id: str) -> tuple[object, int]:
    page, page_size = _page_args()
    items, total = store.list_workflows(
        tenant_id,
        status=request.args.get("status"),
        tag=request.args.get("tag"),
        page=page,
        page_size=page_size,
    )
    return (
        jsonify(
            {
                "workflows": [serialize_workflow(item, summary=True) for item in items],
                "total": total,
                "page": page,
                "page_size": page_size,
            }
        ),
        HTTPStatus.OK,
    )


@bp.get("/tenants/<tenant_id>/workflows/<workflow_id>")
def get_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    workflow = store.get_workflow(tenant_id, workflow_id)
    return jsonify(serialize_workflow(workflow)), HTTPStatus.OK


@bp.get("/tenants/<tenant_id>/workflows/by-slug/<slug>")
def get_workflow_by_slug(tenant_id: str, slug: str) -> tuple[object, int]:
    workflow = store.get_workflow_by_slug(tenant_id, slug)
    return jsonify(serialize_workflow(workflow)), HTTPStatus.OK


@bp.put("/tenants/<tenant_id>/workflows/<workflow_id>")
def update_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    workflow = store.update_workflow(tenant_id, workflow_id, _payload(), user_id=_user_id())
    return jsonify(serialize_workflow(workflow)), HTTPStatus.OK


@bp.delete("/tenants/<tenant_id>/workflows/<workflow_id>")
def delete_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    store.delete_workflow(tenant_id, workflow_id)
    return jsonify({"deleted": workflow_id}), HTTPStatus.OK


@bp.put("/tenants/<tenant_id>/workflows/<workflow_id>/status")
def update_status(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    status = _payload().get("status")
    if not isinstance(status, str) or not status:
        raise ValidationError("status is required")
    workflow = store.set_status(tenant_id, workflow_id, status, user_id=_user_id())
    return jsonify(serialize_workflow(workflow)), HTTPStatus.OK


@bp.post("/tenants/<tenant_id>/workflows/<workflow_id>/publish")
def publish_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    record = versions.publish(
        tenant_id, workflow_id, user_id=_user_id(), note=_payload().get("note")
    )
    workflow = store.get_workflow(tenant_id, workflow_id)
    return (
        jsonify({"version": serialize_version(record), "workflow": serialize_workflow(workflow)}),
        HTTPStatus.CREATED,
    )


@bp.post("/tenants/<tenant_id>/workflows/<workflow_id>/rollback")
def rollback_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    payload = _payload()
    target = payload.get("version")
    if not isinstance(target, int) or isinstance(target, bool):
        raise ValidationError("version must be an integer")
    record = versions.rollback(
        tenant_id, workflow_id, target, user_id=_user_id(), note=payload.get("note")
    )
    workflow = store.get_workflow(tenant_id, workflow_id)
    return (
        jsonify({"version": serialize_version(record), "workflow": serialize_workflow(workflow)}),
        HTTPStatus.CREATED,
    )


@bp.get("/tenants/<tenant_id>/workflows/<workflow_id>/versions")
def list_versions(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    store.get_workflow(tenant_id, workflow_id)
    page, page_size = _page_args()
    items, total = versions.list_history(workflow_id, page=page, page_size=page_size)
    return (
        jsonify(
            {
                "versions": [serialize_version(item) for item in items],
                "total": total,
                "page": page,
                "page_size": page_size,
            }
        ),
        HTTPStatus.OK,
    )


@bp.get("/tenants/<tenant_id>/workflows/<workflow_id>/versions/<int:version>")
def get_version(tenant_id: str, workflow_id: str, version: int) -> tuple[object, int]:
    store.get_workflow(tenant_id, workflow_id)
    record = versions.get_version(workflow_id, version)
    return jsonify(serialize_version(record, include_snapshot=True)), HTTPStatus.OK


@bp.get("/tenants/<tenant_id>/workflows/<workflow_id>/changes")
def unpublished_changes(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    workflow = store.get_workflow(tenant_id, workflow_id)
    active = versions.get_active_version(workflow_id)
    summary = versions.changes_summary(
        active.snapshot.get("graph") if active is not None else None, workflow.graph or {}
    )
    return (
        jsonify(
            {
                "has_unpublished_changes": versions.has_unpublished_changes(workflow),
                "version": workflow.version,
                "published_version": workflow.published_version,
                "changes_summary": summary,
            }
        ),
        HTTPStatus.OK,
    )


@bp.post("/tenants/<tenant_id>/workflows/<workflow_id>/execute")
def execute_workflow(tenant_id: str, workflow_id: str) -> tuple[object, int]:
    payload = _payload()
    priority = payload.get("priority", 1)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ValidationError("priority must be an integer")
    trigger = build_trigger(
        "manual",
        payload.get("data"),
        metadata={
            "ip": request.remote_addr,
            "user_agent": request.headers.get("User-Agent"),
            "user_id": _user_id(),
        },
    )
    execution_id = trigger_workflow(tenant_id, workflow_id, trigger, priority=priority)
    execution = get_execution(execution_id)
    return (
        jsonify(serialize_execution(execution, job=get_job_by_execution(execution_id))),
        HTTPStatus.ACCEPTED,
    )
