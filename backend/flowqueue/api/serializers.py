"""JSON representations of the persisted records."""

from __future__ import annotations

from typing import Any

from ..models.execution import Execution
from ..models.job import Job
from ..models.logs import ExecutionLog
from ..models.workflow import Workflow, WorkflowVersion
from ..utils.clock import isoformat
from ..workflow import queue
from ..workflow.versions import has_unpublished_changes


def serialize_workflow(workflow: Workflow, *, summary: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": workflow.id,
        "tenant_id": workflow.tenant_id,
        "name": workflow.name,
        "description": workflow.description,
        "slug": workflow.slug,
        "status": workflow.status,
        "version": workflow.version,
        "published_version": workflow.published_version,
        "has_unpublished_changes": has_unpublished_changes(workflow),
        "tags": workflow.tags or [],
        "stats": workflow.stats or {},
        "created_by": workflow.created_by,
        "last_modified_by": workflow.last_modified_by,
        "created_at": isoformat(workflow.created_at),
        "updated_at": isoformat(workflow.updated_at),
    }
    if not summary:
        data["graph"] = workflow.graph
        data["settings"] = workflow.settings
        data["variables"] = workflow.variables or []
    return data


def serialize_version(record: WorkflowVersion, *, include_snapshot: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "workflow_id": record.workflow_id,
        "version": record.version,
        "publish_note": record.publish_note,
        "published_by": record.published_by,
        "published_at": isoformat(record.published_at),
        "changes_summary": record.changes_summary,
        "stats": record.stats or {},
        "source_version": record.source_version,
        "is_active": record.is_active,
        "deprecated_at": isoformat(record.deprecated_at),
        "deprecated_by": record.deprecated_by,
    }
    if include_snapshot:
        data["snapshot"] = record.snapshot
    return data


def serialize_job(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "run_at": isoformat(job.run_at),
        "locked_at": isoformat(job.locked_at),
        "locked_by": job.locked_by,
        "last_error": job.last_error,
        "created_at": isoformat(job.created_at),
        "completed_at": isoformat(job.completed_at),
        **queue.job_details(job),
    }


def serialize_execution(execution: Execution, *, job: Job | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "workflow_version": execution.workflow_version,
        "tenant_id": execution.tenant_id,
        "trigger": execution.trigger,
        "status": execution.status,
        "started_at": isoformat(execution.started_at),
        "completed_at": isoformat(execution.completed_at),
        "current_node_id": execution.current_node_id,
        "completed_nodes": execution.completed_nodes or [],
        "failed_nodes": execution.failed_nodes or [],
        "skipped_nodes": execution.skipped_nodes or [],
        "context": execution.context,
        "result": execution.result,
        "metrics": execution.metrics,
        "replay_of": execution.replay_of,
        "retry_of": execution.retry_of,
    }
    if job is not None:
        data["job"] = serialize_job(job)
    return data


def serialize_log(entry: ExecutionLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "execution_id": entry.execution_id,
        "node_id": entry.node_id,
        "timestamp": isoformat(entry.timestamp),
        "level": entry.level,
        "event": entry.event,
        "message": entry.message,
        "data": entry.data,
    }
