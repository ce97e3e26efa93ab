"""Job processing endpoint for cron-style invocation."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from ..utils.auth import require_worker_secret
from ..utils.clock import new_id
from ..workflow.worker import Worker

bp = Blueprint("jobs", __name__)


@bp.post("/jobs/process")
@require_worker_secret
def process_jobs() -> tuple[object, int]:
    """Claim and run up to ``count`` jobs inside this request."""

    limit = int(current_app.config.get("MAX_JOBS_PER_REQUEST", 10))
    count = request.args.get("count", type=int) or limit
    count = max(1, min(count, limit))

    app = current_app._get_current_object()
    processed = Worker(app, new_id("http")).process_batch(count)
    current_app.logger.info("Processed %s jobs via HTTP", len(processed))
    return jsonify({"processed": len(processed), "jobs": processed}), HTTPStatus.OK
