"""Admission control applied before any execution is created."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..errors import QueueFullError, QuotaExceededError
from ..extensions import db
from . import queue
from .usage import UNLIMITED, UsageLimitCache, current_usage, increment_usage, tier_limit

EXTENSION_KEY = "flowqueue.admission"


@dataclass(frozen=True)
class AdmissionTicket:
    current: int
    limit: int
    remaining: int | None


class AdmissionController:
    """Enforces the per tenant queue ceiling and the monthly execution quota.

    The quota is charged with an atomic increment that is committed before
    the comparison, so concurrent admissions never both see the last free
    unit.  A rejected charge is kept; the counter records attempts.
    """

    def __init__(self, cache: UsageLimitCache, max_pending: int = 100):
        self.cache = cache
        self.max_pending = max_pending

    def admit(
        self, tenant_id: str, workflow_id: str | None = None, *, now: datetime | None = None
    ) -> AdmissionTicket:
        pending = queue.pending_count(tenant_id)
        if pending >= self.max_pending:
            current_app.logger.warning(
                "Rejected trigger for tenant %s workflow %s: %s jobs in flight",
                tenant_id,
                workflow_id,
                pending,
            )
            raise QueueFullError(
                f"Too many executions in flight ({pending}); retry once the queue drains"
            )

        increment_usage(tenant_id, now=now, workflow_executions=1)
        current = current_usage(tenant_id, now=now)
        db.session.commit()

        limit = tier_limit(tenant_id, self.cache)
        if limit != UNLIMITED and current > limit:
            current_app.logger.warning(
                "Tenant %s exceeded its execution limit (%s/%s)", tenant_id, current, limit
            )
            raise QuotaExceededError(
                f"Monthly execution limit reached ({current}/{limit})",
                current=current,
                limit=limit,
            )
        remaining = None if limit == UNLIMITED else limit - current
        return AdmissionTicket(current=current, limit=limit, remaining=remaining)


def get_admission_controller() -> AdmissionController:
    return current_app.extensions[EXTENSION_KEY]
