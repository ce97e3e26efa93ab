"""Workflow and workflow version models."""

from __future__ import annotations

import copy

from ..extensions import db
from ..utils.clock import utcnow

WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")
DELETABLE_STATUSES = frozenset({"draft", "paused", "archived"})

DEFAULT_SETTINGS: dict[str, object] = {
    "max_execution_time_ms": 300_000,
    "retry_policy": {
        "max_retries": 3,
        "backoff_multiplier": 2,
        "initial_delay_ms": 1000,
    },
    "error_handling": "stop",
    "timezone": "UTC",
}

DEFAULT_STATS: dict[str, object] = {
    "total_executions": 0,
    "successful_executions": 0,
    "failed_executions": 0,
    "avg_execution_time_ms": 0,
    "last_executed_at": None,
}


def empty_graph() -> dict[str, list]:
    return {"nodes": [], "edges": []}


def default_settings() -> dict[str, object]:
    return copy.deepcopy(DEFAULT_SETTINGS)


def default_stats() -> dict[str, object]:
    return dict(DEFAULT_STATS)


class Workflow(db.Model):
    """Editable definition of an automation graph owned by a tenant."""

    __tablename__ = "workflows"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "slug", name="uq_workflows_tenant_slug"),
    )

    id = db.Column(db.String(32), primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    slug = db.Column(db.String(64), nullable=False)
    graph = db.Column(db.JSON, nullable=False, default=empty_graph)
    settings = db.Column(db.JSON, nullable=False, default=default_settings)
    variables = db.Column(db.JSON, nullable=False, default=list)
    tags = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(
        db.Enum(*WORKFLOW_STATUSES, name="workflow_status"),
        nullable=False,
        default="draft",
        index=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    published_version = db.Column(db.Integer, nullable=True)
    stats = db.Column(db.JSON, nullable=False, default=default_stats)
    created_by = db.Column(db.String(64), nullable=True)
    last_modified_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def retry_policy(self) -> dict[str, object]:
        settings = self.settings or {}
        policy = settings.get("retry_policy")
        if isinstance(policy, dict):
            return policy
        return dict(DEFAULT_SETTINGS["retry_policy"])  # type: ignore[arg-type]

    @property
    def error_handling(self) -> str:
        return str((self.settings or {}).get("error_handling") or "stop")

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Workflow {self.id} {self.slug!r} v{self.version} {self.status}>"


class WorkflowVersion(db.Model):
    """Immutable snapshot of a workflow captured when it was published."""

    __tablename__ = "workflow_versions"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "version", name="uq_workflow_versions_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(32), db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id = db.Column(db.String(64), nullable=False)
    version = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    publish_note = db.Column(db.Text, nullable=True)
    published_by = db.Column(db.String(64), nullable=True)
    published_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    changes_summary = db.Column(db.JSON, nullable=True)
    stats = db.Column(db.JSON, nullable=False, default=dict)
    source_version = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    deprecated_at = db.Column(db.DateTime, nullable=True)
    deprecated_by = db.Column(db.String(64), nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        marker = " active" if self.is_active else ""
        return f"<WorkflowVersion {self.workflow_id} v{self.version}{marker}>"
