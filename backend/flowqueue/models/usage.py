"""Tenant plan and usage counters consulted at admission time."""

from __future__ import annotations

from ..extensions import db
from ..utils.clock import utcnow

PLAN_TIERS = ("free", "pro", "team", "enterprise")


class TenantPlan(db.Model):
    """Subscription tier of a tenant, maintained by the billing system."""

    __tablename__ = "tenant_plans"

    tenant_id = db.Column(db.String(64), primary_key=True)
    tier = db.Column(db.Enum(*PLAN_TIERS, name="plan_tier"), nullable=False, default="free")
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<TenantPlan {self.tenant_id}={self.tier}>"


class TenantUsage(db.Model):
    """Per billing period execution counters of a tenant."""

    __tablename__ = "tenant_usage"

    tenant_id = db.Column(db.String(64), primary_key=True)
    period = db.Column(db.String(7), primary_key=True)
    workflow_executions = db.Column(db.Integer, nullable=False, default=0)
    successful_executions = db.Column(db.Integer, nullable=False, default=0)
    failed_executions = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<TenantUsage {self.tenant_id} {self.period}: {self.workflow_executions}>"
