"""Queue job model."""

from __future__ import annotations

from ..extensions import db
from ..utils.clock import utcnow

JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_JOB_STATUSES = ("pending", "processing")
RETRYABLE_JOB_STATUSES = ("failed", "pending", "processing")


class Job(db.Model):
    """Lockable unit of work that drives one execution to completion."""

    __tablename__ = "workflow_jobs"
    __table_args__ = (
        db.Index("ix_workflow_jobs_claim", "status", "run_at", "priority"),
        db.Index("ix_workflow_jobs_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.String(32), primary_key=True)
    workflow_id = db.Column(db.String(32), nullable=False)
    execution_id = db.Column(db.String(32), nullable=False, unique=True)
    tenant_id = db.Column(db.String(64), nullable=False)
    trigger = db.Column(db.JSON, nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=1)
    run_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.Enum(*JOB_STATUSES, name="job_status"), nullable=False, default="pending")
    locked_at = db.Column(db.DateTime, nullable=True)
    locked_by = db.Column(db.String(128), nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    result = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Job {self.id} {self.status} attempt {self.attempts}/{self.max_attempts}>"
