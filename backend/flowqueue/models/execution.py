"""Execution record model."""

from __future__ import annotations

from ..extensions import db
from ..utils.clock import utcnow

EXECUTION_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed", "cancelled"})
TRIGGER_TYPES = ("form_submission", "webhook", "schedule", "manual", "replay")


def empty_context() -> dict[str, dict | list]:
    return {"variables": {}, "node_outputs": {}, "errors": []}


def empty_metrics() -> dict[str, object]:
    return {"total_duration_ms": 0, "node_metrics": {}}


class Execution(db.Model):
    """One run of a workflow against a single trigger event."""

    __tablename__ = "workflow_executions"
    __table_args__ = (
        db.Index("ix_workflow_executions_workflow_started", "workflow_id", "started_at"),
        db.Index("ix_workflow_executions_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.String(32), primary_key=True)
    workflow_id = db.Column(db.String(32), nullable=False)
    workflow_version = db.Column(db.Integer, nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False)
    trigger = db.Column(db.JSON, nullable=False)
    # frozen content for draft test runs that have no published version
    snapshot = db.Column(db.JSON, nullable=True)
    status = db.Column(
        db.Enum(*EXECUTION_STATUSES, name="execution_status"), nullable=False, default="pending"
    )
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    current_node_id = db.Column(db.String(128), nullable=True)
    completed_nodes = db.Column(db.JSON, nullable=False, default=list)
    failed_nodes = db.Column(db.JSON, nullable=False, default=list)
    skipped_nodes = db.Column(db.JSON, nullable=False, default=list)
    context = db.Column(db.JSON, nullable=False, default=empty_context)
    result = db.Column(db.JSON, nullable=True)
    metrics = db.Column(db.JSON, nullable=False, default=empty_metrics)
    replay_of = db.Column(db.String(32), nullable=True)
    retry_of = db.Column(db.String(32), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Execution {self.id} {self.status}>"
