"""Durable job queue with lease based locking.

Every state transition is a single conditional ``UPDATE`` whose ``WHERE``
clause repeats the precondition, so concurrent workers on any number of
machines can share the table without a coordinator.  A worker owns a job
while ``locked_by`` names it and ``locked_at`` is younger than the stale
threshold; after that any worker may reclaim it.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import and_, func, or_, update

from ..errors import JobStateError, NotFoundError
from ..extensions import db
from ..models.execution import TERMINAL_EXECUTION_STATUSES
from ..models.job import ACTIVE_JOB_STATUSES, JOB_STATUSES, RETRYABLE_JOB_STATUSES, Job
from ..utils.clock import new_id, utcnow
from . import executions, logsink

CLAIM_CANDIDATES = 5
CANCELLED_MESSAGE = "Cancelled by user"
LOCK_EXPIRED_MESSAGE = "Worker lock expired after the final attempt"


def _stale_lock_age() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("JOB_STALE_LOCK_SECONDS", 300)))


def _retention() -> timedelta:
    return timedelta(days=int(current_app.config.get("JOB_RETENTION_DAYS", 7)))


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt once ``attempts`` attempts have failed."""

    return timedelta(seconds=2 ** max(0, attempts))


def _execute(statement) -> int:
    result = db.session.execute(statement.execution_options(synchronize_session=False))
    return result.rowcount


def _claimable(now: datetime, stale_before: datetime):
    return or_(
        and_(Job.status == "pending", Job.run_at <= now, Job.locked_at.is_(None)),
        and_(
            Job.status == "processing",
            Job.locked_at < stale_before,
            Job.attempts < Job.max_attempts,
        ),
    )


def enqueue(
    workflow_id: str,
    execution_id: str,
    tenant_id: str,
    trigger: dict[str, Any],
    *,
    priority: int = 1,
    run_at: datetime | None = None,
    max_attempts: int = 3,
    commit: bool = True,
) -> Job:
    """Insert a ``pending`` job for an execution."""

    now = utcnow()
    job = Job(
        id=new_id("job"),
        workflow_id=workflow_id,
        execution_id=execution_id,
        tenant_id=tenant_id,
        trigger=copy.deepcopy(trigger),
        priority=priority,
        run_at=run_at or now,
        max_attempts=max(1, max_attempts),
        attempts=0,
        status="pending",
        created_at=now,
        expires_at=now + _retention(),
    )
    db.session.add(job)
    if commit:
        db.session.commit()
    return job


def find_job(job_id: str) -> Job | None:
    return db.session.get(Job, job_id)


def get_job(job_id: str) -> Job:
    job = find_job(job_id)
    if job is None:
        raise NotFoundError(f"job {job_id} not found")
    return job


def get_job_by_execution(execution_id: str) -> Job | None:
    return Job.query.filter(Job.execution_id == execution_id).first()


def claim(worker_id: str, *, now: datetime | None = None) -> Job | None:
    """Lock the most urgent eligible job for ``worker_id``.

    Candidates are ordered by priority (highest first) then ``run_at``.  The
    final compare-and-set repeats the eligibility predicate, so when two
    workers pick the same candidate only one update matches and the loser
    moves on to the next candidate.
    """

    now = now or utcnow()
    eligible = _claimable(now, now - _stale_lock_age())
    candidates = (
        db.session.query(Job.id)
        .filter(eligible)
        .order_by(Job.priority.desc(), Job.run_at.asc(), Job.created_at.asc())
        .limit(CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True)
        .all()
    )
    for (job_id,) in candidates:
        claimed = _execute(
            update(Job)
            .where(Job.id == job_id, eligible)
            .values(
                status="processing",
                locked_at=now,
                locked_by=worker_id,
                attempts=Job.attempts + 1,
            )
        )
        if claimed == 1:
            db.session.commit()
            job = get_job(job_id)
            current_app.logger.info(
                "Worker %s claimed job %s (attempt %s/%s)",
                worker_id,
                job.id,
                job.attempts,
                job.max_attempts,
            )
            return job
    db.session.commit()
    return None


def complete(
    job_id: str,
    result: dict[str, Any] | None = None,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> Job:
    """Mark a job ``completed``; completing a completed job is a no-op."""

    now = now or utcnow()
    conditions = [Job.id == job_id, Job.status.in_(ACTIVE_JOB_STATUSES)]
    if worker_id is not None:
        conditions.append(Job.locked_by == worker_id)
    updated = _execute(
        update(Job)
        .where(*conditions)
        .values(
            status="completed",
            completed_at=now,
            result=result,
            locked_at=None,
            locked_by=None,
        )
    )
    db.session.commit()
    job = get_job(job_id)
    if updated or job.status == "completed":
        return job
    if job.status == "failed":
        raise JobStateError(f"job {job_id} already failed: {job.last_error}")
    raise JobStateError(f"job {job_id} is locked by {job.locked_by}, not {worker_id}")


def fail(
    job_id: str,
    error: str,
    *,
    retryable: bool = True,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Reschedule a job with exponential backoff or fail it for good.

    Returns ``"retry"`` when the job went back to ``pending`` and ``"failed"``
    when it reached the terminal state.
    """

    now = now or utcnow()
    job = get_job(job_id)
    if job.status not in ACTIVE_JOB_STATUSES:
        raise JobStateError(f"cannot fail job {job_id} with status '{job.status}'")
    if worker_id is not None and job.locked_by != worker_id:
        raise JobStateError(f"job {job_id} is not locked by {worker_id}")

    if retryable and job.attempts < job.max_attempts:
        outcome = "retry"
        values: dict[str, Any] = {
            "status": "pending",
            "run_at": now + backoff_delay(job.attempts),
        }
    else:
        outcome = "failed"
        values = {"status": "failed", "completed_at": now}

    conditions = [Job.id == job_id, Job.status == job.status, Job.attempts == job.attempts]
    if worker_id is not None:
        conditions.append(Job.locked_by == worker_id)
    updated = _execute(
        update(Job)
        .where(*conditions)
        .values(last_error=error, locked_at=None, locked_by=None, **values)
    )
    if updated != 1:
        db.session.rollback()
        raise JobStateError(f"job {job_id} changed while it was being failed")
    db.session.commit()

    if outcome == "retry":
        current_app.logger.warning(
            "Job %s failed on attempt %s/%s, retrying at %s: %s",
            job_id,
            job.attempts,
            job.max_attempts,
            values["run_at"].isoformat(),
            error,
        )
    else:
        current_app.logger.error("Job %s failed permanently: %s", job_id, error)
    return outcome


def cancel(job_id: str, *, now: datetime | None = None) -> Job:
    """Cancel a pending or processing job and its execution."""

    now = now or utcnow()
    updated = _execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(ACTIVE_JOB_STATUSES))
        .values(
            status="failed",
            last_error=CANCELLED_MESSAGE,
            completed_at=now,
            locked_at=None,
            locked_by=None,
        )
    )
    db.session.commit()
    job = get_job(job_id)
    if not updated:
        raise JobStateError(f"cannot cancel job with status '{job.status}'")

    if executions.cancel_execution(job.execution_id, now=now) is not None:
        logsink.add_log(job.execution_id, "system", "warn", "cancelled", CANCELLED_MESSAGE)
    current_app.logger.info("Job %s cancelled", job_id)
    return job


def is_stale(job: Job, *, now: datetime | None = None) -> bool:
    if job.status != "processing" or job.locked_at is None:
        return False
    return (now or utcnow()) - job.locked_at > _stale_lock_age()


def retry(job_id: str, *, force: bool = False, now: datetime | None = None) -> Job:
    """Operator override: put a job back to ``pending`` with ``run_at = now``.

    A ``processing`` job is only retried once its lock went stale unless
    ``force`` is given.  When the linked execution already ended, the job is
    pointed at a fresh pending execution carrying the same trigger so the
    finished record stays untouched.
    """

    now = now or utcnow()
    job = get_job(job_id)
    if job.status not in RETRYABLE_JOB_STATUSES:
        raise JobStateError(f"cannot retry job with status '{job.status}'")
    requires_stale = current_app.config.get("MANUAL_RETRY_REQUIRES_STALE_LOCK", True)
    if job.status == "processing" and requires_stale and not force and not is_stale(job, now=now):
        raise JobStateError(
            f"job {job_id} is locked by live worker {job.locked_by}; "
            "wait for the lock to go stale or force the retry"
        )

    execution_id = job.execution_id
    previous = executions.find_execution(execution_id)
    if previous is None:
        raise NotFoundError(f"execution {execution_id} of job {job_id} no longer exists")
    if previous.status in TERMINAL_EXECUTION_STATUSES:
        fresh = executions.create_execution(
            job.workflow_id,
            job.tenant_id,
            previous.trigger,
            previous.workflow_version,
            retry_of=execution_id,
            snapshot=previous.snapshot,
            commit=False,
        )
        execution_id = fresh.id

    last_error = f"Manually retried. Previous error: {job.last_error}" if job.last_error else None
    updated = _execute(
        update(Job)
        .where(Job.id == job_id, Job.status == job.status, Job.attempts == job.attempts)
        .values(
            status="pending",
            run_at=now,
            locked_at=None,
            locked_by=None,
            completed_at=None,
            last_error=last_error,
            execution_id=execution_id,
        )
    )
    if updated != 1:
        db.session.rollback()
        raise JobStateError(f"job {job_id} changed while it was being retried")
    db.session.commit()
    current_app.logger.info("Job %s manually retried (execution %s)", job_id, execution_id)
    return get_job(job_id)


def heartbeat(job_id: str, worker_id: str, *, now: datetime | None = None) -> bool:
    """Renew the lease; ``False`` means the job was cancelled or reclaimed."""

    updated = _execute(
        update(Job)
        .where(Job.id == job_id, Job.status == "processing", Job.locked_by == worker_id)
        .values(locked_at=now or utcnow())
    )
    db.session.commit()
    return updated == 1


def reap_exhausted(*, now: datetime | None = None) -> int:
    """Fail stale jobs that have no attempts left, since claim skips them."""

    now = now or utcnow()
    stale = Job.query.filter(
        Job.status == "processing",
        Job.locked_at < now - _stale_lock_age(),
        Job.attempts >= Job.max_attempts,
    ).all()
    reaped: list[Job] = []
    for job in stale:
        updated = _execute(
            update(Job)
            .where(Job.id == job.id, Job.status == "processing", Job.locked_at == job.locked_at)
            .values(
                status="failed",
                last_error=LOCK_EXPIRED_MESSAGE,
                completed_at=now,
                locked_at=None,
                locked_by=None,
            )
        )
        if updated:
            reaped.append(job)
    db.session.commit()

    for job in reaped:
        executions.fail_execution(job.execution_id, "LOCK_EXPIRED", LOCK_EXPIRED_MESSAGE, now=now)
        current_app.logger.warning("Job %s reaped after its final lease expired", job.id)
    return len(reaped)


def pending_count(tenant_id: str) -> int:
    return (
        db.session.query(func.count(Job.id))
        .filter(Job.tenant_id == tenant_id, Job.status.in_(ACTIVE_JOB_STATUSES))
        .scalar()
        or 0
    )


def queue_status(tenant_id: str) -> dict[str, Any]:
    counts = {status: 0 for status in JOB_STATUSES}
    rows = (
        db.session.query(Job.status, func.count(Job.id))
        .filter(Job.tenant_id == tenant_id)
        .group_by(Job.status)
        .all()
    )
    for status, count in rows:
        counts[status] = count
    oldest = (
        db.session.query(func.min(Job.created_at))
        .filter(Job.tenant_id == tenant_id, Job.status == "pending")
        .scalar()
    )
    return {**counts, "oldest_pending_at": oldest}


def job_details(job: Job, *, now: datetime | None = None) -> dict[str, Any]:
    """Computed flags shown next to an execution."""

    now = now or utcnow()
    wait_time_ms = None
    if job.status == "pending" and job.run_at is not None:
        wait_time_ms = max(0, int((job.run_at - now).total_seconds() * 1000))
    return {
        "can_retry": job.status in RETRYABLE_JOB_STATUSES,
        "can_cancel": job.status in ACTIVE_JOB_STATUSES,
        "wait_time_ms": wait_time_ms,
        "is_stale": is_stale(job, now=now),
    }
