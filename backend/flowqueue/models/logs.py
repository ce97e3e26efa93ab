"""Execution log model definition."""

from __future__ import annotations

from ..extensions import db
from ..utils.clock import utcnow

LOG_LEVELS = ("debug", "info", "warn", "error")
LOG_EVENTS = (
    "node_start",
    "node_complete",
    "node_error",
    "node_skip",
    "retry",
    "cancelled",
    "custom",
)


class ExecutionLog(db.Model):
    """Append-only diagnostic entry emitted while an execution runs."""

    __tablename__ = "workflow_execution_logs"
    __table_args__ = (
        db.Index("ix_workflow_execution_logs_execution_ts", "execution_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(db.String(32), nullable=False)
    node_id = db.Column(db.String(128), nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
    level = db.Column(db.Enum(*LOG_LEVELS, name="execution_log_level"), nullable=False)
    event = db.Column(db.Enum(*LOG_EVENTS, name="execution_log_event"), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<ExecutionLog {self.id} {self.execution_id}/{self.node_id} {self.event}>"
