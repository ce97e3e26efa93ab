"""Endpoints receiving external events that trigger workflows."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from ..errors import ValidationError
from ..extensions import limiter
from ..workflow.dispatch import trigger_event
from ..workflow.triggers import TriggerEvent

bp = Blueprint("events", __name__)


def _trigger_rate_limit() -> str:
    return current_app.config.get("TRIGGER_RATE_LIMIT", "120 per minute")


def _request_metadata() -> dict[str, Any]:
    return {
        "ip": request.headers.get("X-Forwarded-For", request.remote_addr),
        "user_agent": request.headers.get("User-Agent"),
        "user_id": request.headers.get("X-User-Id"),
    }


def _event_data() -> dict[str, Any]:
    payload = request.get_json(silent=True, force=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def _dispatch(tenant_id: str, trigger_type: str, source_id: str) -> tuple[object, int]:
    result = trigger_event(
        tenant_id, TriggerEvent(trigger_type, source_id), _event_data(), _request_metadata()
    )
    status = HTTPStatus.ACCEPTED if result.triggered else HTTPStatus.OK
    if not result.triggered and result.errors:
        status = HTTPStatus.TOO_MANY_REQUESTS if all(
            error.get("code") in ("QUEUE_FULL", "LIMIT_EXCEEDED") for error in result.errors
        ) else HTTPStatus.CONFLICT
    return jsonify(result.to_dict()), status


@bp.post("/tenants/<tenant_id>/forms/<form_id>/submissions")
@limiter.limit(_trigger_rate_limit)
def form_submission(tenant_id: str, form_id: str) -> tuple[object, int]:
    return _dispatch(tenant_id, "form_submission", form_id)


@bp.post("/tenants/<tenant_id>/webhooks/<webhook_id>")
@limiter.limit(_trigger_rate_limit)
def webhook(tenant_id: str, webhook_id: str) -> tuple[object, int]:
    return _dispatch(tenant_id, "webhook", webhook_id)
