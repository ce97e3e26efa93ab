"""API endpoints exposing the diagnostic log of an execution."""

from __future__ import annotations

import json
import time
from http import HTTPStatus
from typing import Iterable

from flask import Blueprint, Response, jsonify, request, stream_with_context

from ..errors import ValidationError
from ..extensions import db
from ..models.execution import TERMINAL_EXECUTION_STATUSES
from ..models.logs import LOG_LEVELS
from ..workflow import executions, logsink
from .serializers import serialize_log

bp = Blueprint("logs", __name__)


def _filters() -> dict[str, object]:
    level = request.args.get("level")
    if level and level not in LOG_LEVELS:
        raise ValidationError("invalid level")
    return {"node_id": request.args.get("node_id") or None, "level": level or None}


@bp.get("/tenants/<tenant_id>/executions/<execution_id>/logs")
def get_logs(tenant_id: str, execution_id: str) -> tuple[object, int]:
    executions.get_tenant_execution(tenant_id, execution_id)
    limit = request.args.get("limit", type=int) or logsink.DEFAULT_LOG_LIMIT
    limit = max(1, min(limit, logsink.DEFAULT_LOG_LIMIT))
    entries = logsink.get_logs(execution_id, limit=limit, **_filters())
    return jsonify([serialize_log(entry) for entry in entries]), HTTPStatus.OK


@bp.get("/tenants/<tenant_id>/executions/<execution_id>/logs/download")
def download_logs(tenant_id: str, execution_id: str) -> Response:
    executions.get_tenant_execution(tenant_id, execution_id)
    entries = logsink.get_logs(execution_id, **_filters())
    payload = "\n".join(json.dumps(serialize_log(entry)) for entry in entries)
    response = Response(payload, mimetype="application/x-ndjson")
    response.headers["Content-Disposition"] = (
        f"attachment; filename=execution-{execution_id}.ndjson"
    )
    return response


@bp.get("/tenants/<tenant_id>/executions/<execution_id>/logs/stream")
def stream_logs(tenant_id: str, execution_id: str) -> Response:
    """Server-sent events; the stream ends once the execution is terminal."""

    executions.get_tenant_execution(tenant_id, execution_id)
    filters = _filters()
    poll_interval = request.args.get("interval", type=float) or 1.0

    @stream_with_context
    def event_stream() -> Iterable[str]:
        last_id: int | None = None
        yield ": stream-start\n\n"
        while True:
            entries = logsink.get_logs(execution_id, after_id=last_id, **filters)
            for entry in entries:
                last_id = entry.id
                yield f"data: {json.dumps(serialize_log(entry))}\n\n"
            db.session.expire_all()
            execution = executions.find_execution(execution_id)
            if execution is None or execution.status in TERMINAL_EXECUTION_STATUSES:
                status = execution.status if execution is not None else "deleted"
                yield f"event: end\ndata: {json.dumps({'status': status})}\n\n"
                break
            if not entries:
                yield ": keep-alive\n\n"
            time.sleep(poll_interval)

    return Response(event_stream(), mimetype="text/event-stream")
