"""Usage summary and plan tier endpoints."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..errors import ValidationError
from ..workflow.admission import get_admission_controller
from ..workflow.usage import set_tenant_tier, usage_summary

bp = Blueprint("usage", __name__)


@bp.get("/tenants/<tenant_id>/usage")
def get_usage(tenant_id: str) -> tuple[object, int]:
    cache = get_admission_controller().cache
    return jsonify(usage_summary(tenant_id, cache)), HTTPStatus.OK


@bp.put("/tenants/<tenant_id>/plan")
def update_plan(tenant_id: str) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    tier = payload.get("tier") if isinstance(payload, dict) else None
    if not isinstance(tier, str) or not tier:
        raise ValidationError("tier is required")
    cache = get_admission_controller().cache
    set_tenant_tier(tenant_id, tier, cache)
    return jsonify(usage_summary(tenant_id, cache)), HTTPStatus.OK
