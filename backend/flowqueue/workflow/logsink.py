"""Append-only diagnostic log per execution."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from flask import current_app

from ..extensions import db
from ..models.logs import LOG_EVENTS, LOG_LEVELS, ExecutionLog
from ..utils.clock import utcnow

DEFAULT_LOG_LIMIT = 1000


def _retention() -> timedelta:
    return timedelta(days=int(current_app.config.get("EXECUTION_LOG_RETENTION_DAYS", 7)))


def add_log(
    execution_id: str,
    node_id: str,
    level: str,
    event: str,
    message: str,
    data: dict[str, Any] | None = None,
    *,
    timestamp: datetime | None = None,
) -> None:
    """Persist a log entry; database errors are logged and suppressed."""

    if not message:
        return
    if level not in LOG_LEVELS:
        level = "info"
    if event not in LOG_EVENTS:
        event = "custom"

    now = timestamp or utcnow()
    try:
        entry = ExecutionLog(
            execution_id=execution_id,
            node_id=node_id,
            timestamp=now,
            level=level,
            event=event,
            message=message,
            data=data,
            expires_at=now + _retention(),
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        current_app.logger.exception(
            "Failed to persist log entry for execution %s node %s", execution_id, node_id
        )
        db.session.rollback()


def get_logs(
    execution_id: str,
    *,
    node_id: str | None = None,
    level: str | None = None,
    limit: int = DEFAULT_LOG_LIMIT,
    after_id: int | None = None,
) -> list[ExecutionLog]:
    query = ExecutionLog.query.filter(ExecutionLog.execution_id == execution_id)
    if node_id:
        query = query.filter(ExecutionLog.node_id == node_id)
    if level:
        query = query.filter(ExecutionLog.level == level)
    if after_id is not None:
        query = query.filter(ExecutionLog.id > after_id)
    return (
        query.order_by(ExecutionLog.timestamp.asc(), ExecutionLog.id.asc())
        .limit(max(1, limit))
        .all()
    )
