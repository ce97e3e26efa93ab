"""Deletion of rows whose retention window has passed."""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models.execution import TERMINAL_EXECUTION_STATUSES, Execution
from ..models.job import ACTIVE_JOB_STATUSES, Job
from ..models.logs import ExecutionLog
from ..utils.clock import utcnow


def purge_expired(*, now: datetime | None = None) -> dict[str, int]:
    """Delete expired log entries plus finished jobs and executions.

    Jobs and executions that are still in flight are never removed,
    whatever their ``expires_at`` says.
    """

    now = now or utcnow()
    jobs = Job.query.filter(
        Job.status.notin_(ACTIVE_JOB_STATUSES), Job.expires_at < now
    ).delete(synchronize_session=False)
    logs = ExecutionLog.query.filter(
        ExecutionLog.expires_at.isnot(None), ExecutionLog.expires_at < now
    ).delete(synchronize_session=False)
    executions = Execution.query.filter(
        Execution.status.in_(TERMINAL_EXECUTION_STATUSES),
        Execution.expires_at.isnot(None),
        Execution.expires_at < now,
    ).delete(synchronize_session=False)
    db.session.commit()
    if jobs or logs or executions:
        current_app.logger.info(
            "Purged %s jobs, %s log entries and %s executions", jobs, logs, executions
        )
    return {"jobs": jobs, "logs": logs, "executions": executions}
