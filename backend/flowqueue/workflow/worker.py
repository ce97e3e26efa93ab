"""Polling worker that claims jobs and drives their executions."""

from __future__ import annotations

import contextlib
import os
import socket
import threading
import time
from typing import Any

from flask import Flask, current_app, has_app_context

from ..errors import (
    FlowqueueError,
    JobCancelledError,
    JobStateError,
    TerminalExecutionError,
    classify_error,
)
from ..extensions import db
from ..models.job import Job
from . import executions, logsink, queue, retention, store, usage, versions
from .runner import RunResult, run_execution


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


class Worker:
    """Claims and processes jobs until stopped.

    Every job handed to :meth:`process_job` leaves it completed, rescheduled
    or failed; when a job is cancelled or reclaimed mid-run the worker
    abandons it without touching the queue again.
    """

    def __init__(self, app: Flask, worker_id: str | None = None):
        self.app = app
        self.worker_id = worker_id or default_worker_id()
        self._stop = threading.Event()

    @property
    def logger(self):
        return self.app.logger

    @contextlib.contextmanager
    def _app_context(self):
        if has_app_context() and current_app._get_current_object() is self.app:
            yield
        else:
            with self.app.app_context():
                yield

    def stop(self) -> None:
        self._stop.set()

    def run_once(self) -> str | None:
        """Claim and process one job; ``None`` when the queue is idle."""

        with self._app_context():
            job = queue.claim(self.worker_id)
            if job is None:
                return None
            return self.process_job(job)

    def process_batch(self, count: int) -> list[dict[str, Any]]:
        processed: list[dict[str, Any]] = []
        for _ in range(max(0, count)):
            with self._app_context():
                job = queue.claim(self.worker_id)
                if job is None:
                    break
                job_id, execution_id = job.id, job.execution_id
                outcome = self.process_job(job)
            processed.append({"job_id": job_id, "execution_id": execution_id, "outcome": outcome})
        return processed

    def maintenance(self) -> dict[str, int]:
        with self._app_context():
            reaped = queue.reap_exhausted()
            purged = retention.purge_expired()
        if reaped or any(purged.values()):
            self.logger.info("Maintenance reaped %s jobs and purged %s", reaped, purged)
        return {"reaped": reaped, **purged}

    def run_forever(self) -> None:
        config = self.app.config
        poll = float(config.get("WORKER_POLL_INTERVAL", 1))
        max_poll = float(config.get("WORKER_MAX_POLL_INTERVAL", 30))
        maintenance_every = float(config.get("WORKER_MAINTENANCE_INTERVAL", 60))
        interval = poll
        last_maintenance = 0.0

        self._stop.clear()
        self.logger.info("Worker %s started", self.worker_id)
        while not self._stop.is_set():
            if time.monotonic() - last_maintenance >= maintenance_every:
                try:
                    self.maintenance()
                except Exception:
                    self.logger.exception("Worker %s maintenance failed", self.worker_id)
                last_maintenance = time.monotonic()

            try:
                outcome = self.run_once()
            except Exception:
                self.logger.exception("Worker %s failed to process a job", self.worker_id)
                outcome = None

            if outcome is None:
                self._stop.wait(interval)
                interval = min(interval * 2, max_poll)
            else:
                interval = poll
        self.logger.info("Worker %s stopped", self.worker_id)

    def _check_cancelled(self, job_id: str) -> None:
        if not queue.heartbeat(job_id, self.worker_id):
            raise JobCancelledError(f"job {job_id} is no longer held by {self.worker_id}")

    def _fail_job(self, job_id: str, error: str, *, retryable: bool) -> str | None:
        try:
            return queue.fail(job_id, error, retryable=retryable, worker_id=self.worker_id)
        except JobStateError as exc:
            self.logger.warning("Could not fail job %s: %s", job_id, exc)
            return None

    def process_job(self, job: Job) -> str:
        """Run the execution behind a claimed job and settle both records."""

        job_id, execution_id = job.id, job.execution_id
        attempt, max_attempts = job.attempts, job.max_attempts
        execution = executions.find_execution(execution_id)
        if execution is not None and execution.status == "completed":
            # a previous worker finished the run but not the job
            try:
                queue.complete(job_id, {"execution_id": execution_id}, worker_id=self.worker_id)
            except JobStateError as exc:
                self.logger.warning("Could not complete job %s: %s", job_id, exc)
            return "completed"
        if execution is None or execution.is_terminal:
            status = execution.status if execution is not None else "missing"
            self._fail_job(job_id, f"Execution {execution_id} is {status}", retryable=False)
            return "failed"

        workflow = store.find_workflow(job.workflow_id)
        if workflow is None:
            executions.fail_execution(execution_id, "WORKFLOW_NOT_FOUND", "Workflow no longer exists")
            self._fail_job(job_id, "Workflow no longer exists", retryable=False)
            return "failed"
        workflow_id, tenant_id = workflow.id, workflow.tenant_id
        pinned_version = execution.workflow_version

        started = time.monotonic()
        try:
            execution = executions.mark_running(execution_id, attempt=attempt)
            result = run_execution(
                execution,
                workflow,
                attempt=attempt,
                check_cancelled=lambda: self._check_cancelled(job_id),
            )
        except (JobCancelledError, TerminalExecutionError) as exc:
            db.session.rollback()
            self.logger.info("Abandoning job %s: %s", job_id, exc)
            return "cancelled"
        except Exception as exc:
            db.session.rollback()
            if isinstance(exc, FlowqueueError):
                code, message = exc.code, exc.message
            else:
                self.logger.exception("Execution %s crashed", execution_id)
                code, message = "WORKER_ERROR", str(exc) or type(exc).__name__
            result = RunResult(
                success=False,
                failed_node_id="system",
                error_code=code,
                error_message=message,
                retryable=classify_error(exc),
            )
        duration_ms = int((time.monotonic() - started) * 1000)

        try:
            if result.success:
                return self._settle_success(
                    job_id, execution_id, workflow_id, tenant_id, pinned_version, result, duration_ms
                )
            return self._settle_failure(
                job_id,
                attempt,
                max_attempts,
                execution_id,
                workflow_id,
                tenant_id,
                pinned_version,
                result,
                duration_ms,
            )
        except TerminalExecutionError:
            db.session.rollback()
            self.logger.info("Execution %s ended while job %s was running", execution_id, job_id)
            return "cancelled"

    def _record_outcome(
        self, workflow_id: str, tenant_id: str, version: int, success: bool, duration_ms: int
    ) -> None:
        store.record_execution_stats(workflow_id, success, duration_ms)
        versions.record_version_outcome(workflow_id, version, success)
        usage.record_execution_outcome(tenant_id, success)

    def _settle_success(
        self,
        job_id: str,
        execution_id: str,
        workflow_id: str,
        tenant_id: str,
        version: int,
        result: RunResult,
        duration_ms: int,
    ) -> str:
        executions.finish_execution(
            execution_id,
            "completed",
            result={"success": True, "output": result.output},
            total_duration_ms=duration_ms,
        )
        self._record_outcome(workflow_id, tenant_id, version, True, duration_ms)
        try:
            queue.complete(
                job_id,
                {"execution_id": execution_id, "duration_ms": duration_ms},
                worker_id=self.worker_id,
            )
        except JobStateError as exc:
            self.logger.warning("Could not complete job %s: %s", job_id, exc)
        self.logger.info("Execution %s completed in %sms", execution_id, duration_ms)
        return "completed"

    def _settle_failure(
        self,
        job_id: str,
        attempts: int,
        max_attempts: int,
        execution_id: str,
        workflow_id: str,
        tenant_id: str,
        version: int,
        result: RunResult,
        duration_ms: int,
    ) -> str:
        node_id = result.failed_node_id or "system"
        code = result.error_code or "UNKNOWN_ERROR"
        message = result.error_message or "Execution failed"
        will_retry = result.retryable and attempts < max_attempts

        if will_retry:
            executions.update_execution(execution_id, status="pending", current_node_id=None)
            delay = int(queue.backoff_delay(attempts).total_seconds())
            logsink.add_log(
                execution_id,
                node_id,
                "warn",
                "retry",
                f"Attempt {attempts}/{max_attempts} failed, retrying in {delay}s: {message}",
                {"code": code, "attempt": attempts, "max_attempts": max_attempts},
            )
        else:
            executions.finish_execution(
                execution_id,
                "failed",
                result={
                    "success": False,
                    "error": executions.error_payload(node_id, code, message),
                },
                total_duration_ms=duration_ms,
            )
            self._record_outcome(workflow_id, tenant_id, version, False, duration_ms)

        outcome = self._fail_job(job_id, f"{code}: {message}", retryable=will_retry)
        return "retry" if outcome == "retry" else "failed"
