"""Plan tiers, per period usage counters and the tier limit cache."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models.usage import PLAN_TIERS, TenantPlan, TenantUsage
from ..utils.clock import utcnow

UNLIMITED = -1

TIER_LIMITS: dict[str, int] = {
    "free": 50,
    "pro": 500,
    "team": 5000,
    "enterprise": UNLIMITED,
}


def current_period(now: datetime | None = None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


class UsageLimitCache:
    """Short lived cache of tier limits keyed by tenant."""

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> int | None:
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            limit, stored_at = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[tenant_id]
                return None
            return limit

    def set(self, tenant_id: str, limit: int) -> None:
        with self._lock:
            self._entries[tenant_id] = (limit, self._clock())

    def invalidate(self, tenant_id: str | None = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._entries.clear()
            else:
                self._entries.pop(tenant_id, None)


def tenant_tier(tenant_id: str) -> str:
    plan = db.session.get(TenantPlan, tenant_id)
    return plan.tier if plan is not None else "free"


def tier_limit(tenant_id: str, cache: UsageLimitCache | None = None) -> int:
    if cache is not None:
        cached = cache.get(tenant_id)
        if cached is not None:
            return cached
    limit = TIER_LIMITS[tenant_tier(tenant_id)]
    if cache is not None:
        cache.set(tenant_id, limit)
    return limit


def set_tenant_tier(tenant_id: str, tier: str, cache: UsageLimitCache | None = None) -> TenantPlan:
    if tier not in PLAN_TIERS:
        raise ValidationError(f"unknown plan tier '{tier}'", [f"tier must be one of {', '.join(PLAN_TIERS)}"])
    plan = db.session.get(TenantPlan, tenant_id)
    if plan is None:
        plan = TenantPlan(tenant_id=tenant_id, tier=tier)
        db.session.add(plan)
    else:
        plan.tier = tier
        plan.updated_at = utcnow()
    db.session.commit()
    if cache is not None:
        cache.invalidate(tenant_id)
    return plan


def _bump(tenant_id: str, period: str, **increments: int) -> bool:
    values = {name: getattr(TenantUsage, name) + amount for name, amount in increments.items()}
    result = db.session.execute(
        update(TenantUsage)
        .where(TenantUsage.tenant_id == tenant_id, TenantUsage.period == period)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_usage(tenant_id: str, *, now: datetime | None = None, **increments: int) -> None:
    """Atomically add ``increments`` to the tenant's counters for the period.

    The row is created on first use.  Two writers racing on the insert
    collide on the primary key; the loser rolls back and repeats the update.
    The caller commits.
    """

    period = current_period(now)
    for _ in range(2):
        if _bump(tenant_id, period, **increments):
            return
        try:
            db.session.add(TenantUsage(tenant_id=tenant_id, period=period, **increments))
            db.session.flush()
            return
        except IntegrityError:
            db.session.rollback()
    raise RuntimeError(f"could not record usage for tenant {tenant_id}")


def current_usage(tenant_id: str, *, now: datetime | None = None) -> int:
    value = (
        db.session.query(TenantUsage.workflow_executions)
        .filter(TenantUsage.tenant_id == tenant_id, TenantUsage.period == current_period(now))
        .scalar()
    )
    return int(value or 0)


def record_execution_outcome(tenant_id: str, success: bool, *, now: datetime | None = None) -> None:
    field = "successful_executions" if success else "failed_executions"
    increment_usage(tenant_id, now=now, **{field: 1})
    db.session.commit()


def usage_summary(tenant_id: str, cache: UsageLimitCache | None = None) -> dict[str, Any]:
    period = current_period()
    row = db.session.get(TenantUsage, (tenant_id, period))
    current = row.workflow_executions if row is not None else 0
    limit = tier_limit(tenant_id, cache)
    if limit == UNLIMITED:
        remaining = None
        percent_used = 0.0
    else:
        remaining = max(0, limit - current)
        percent_used = round(min(100.0, current * 100.0 / limit), 1) if limit else 100.0
    return {
        "tenant_id": tenant_id,
        "period": period,
        "tier": tenant_tier(tenant_id),
        "current": current,
        "limit": limit,
        "remaining": remaining,
        "percent_used": percent_used,
        "unlimited": limit == UNLIMITED,
        "successful_executions": row.successful_executions if row is not None else 0,
        "failed_executions": row.failed_executions if row is not None else 0,
    }
