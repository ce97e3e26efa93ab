"""Turn triggers into admitted, queued executions."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from flask import current_app

from ..errors import FlowqueueError, NotFoundError, WorkflowInactiveError
from ..extensions import db
from ..utils.clock import utcnow
from . import executions, queue, versions
from .admission import get_admission_controller
from .store import find_workflow
from .triggers import TRIGGER_NODE_TYPES, TriggerEvent, find_matching_workflows

# Trigger types that may run the unpublished draft as a test run.
DRAFT_TRIGGER_TYPES = frozenset({"manual", "replay"})


@dataclass
class TriggerResult:
    triggered: int = 0
    execution_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "triggered": self.triggered,
            "execution_ids": list(self.execution_ids),
            "errors": list(self.errors),
        }


def build_trigger(
    trigger_type: str,
    data: dict[str, Any] | None = None,
    *,
    source_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the trigger document stored on executions and jobs."""

    metadata = metadata or {}
    payload: dict[str, Any] = {
        "data": copy.deepcopy(data) if data is not None else {},
        "submitted_at": utcnow().isoformat() + "Z",
    }
    source_key = TRIGGER_NODE_TYPES.get(trigger_type, (None, None))[1]
    if source_key and source_id is not None:
        payload[source_key] = source_id
    return {
        "type": trigger_type,
        "payload": payload,
        "source": {
            "ip": metadata.get("ip"),
            "user_agent": metadata.get("user_agent"),
            "user_id": metadata.get("user_id"),
        },
    }


def trigger_workflow(
    tenant_id: str,
    workflow_id: str,
    trigger: dict[str, Any],
    *,
    priority: int = 1,
    replay_of: str | None = None,
) -> str:
    """Admit and enqueue one execution; returns its id without waiting for it."""

    workflow = find_workflow(workflow_id)
    if workflow is None or workflow.tenant_id != tenant_id:
        raise NotFoundError(f"workflow {workflow_id} not found")

    trigger_type = trigger.get("type")
    snapshot = None
    if workflow.status == "active" and workflow.published_version is not None:
        pinned_version = workflow.published_version
    elif workflow.status == "draft" and trigger_type in DRAFT_TRIGGER_TYPES:
        pinned_version = workflow.version
        snapshot = versions.snapshot_of(workflow)
    else:
        raise WorkflowInactiveError(f"workflow {workflow_id} is {workflow.status}")

    get_admission_controller().admit(tenant_id, workflow_id)

    max_attempts = int(workflow.retry_policy.get("max_retries", 3)) + 1
    execution = executions.create_execution(
        workflow.id,
        tenant_id,
        trigger,
        pinned_version,
        replay_of=replay_of,
        snapshot=snapshot,
        commit=False,
    )
    queue.enqueue(
        workflow.id,
        execution.id,
        tenant_id,
        trigger,
        priority=priority,
        max_attempts=max_attempts,
        commit=False,
    )
    db.session.commit()
    current_app.logger.info(
        "Queued execution %s of workflow %s v%s (%s trigger)",
        execution.id,
        workflow.id,
        pinned_version,
        trigger_type,
    )
    return execution.id


def trigger_event(
    tenant_id: str,
    event: TriggerEvent,
    data: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> TriggerResult:
    """Fan an event out to every matching workflow.

    A rejection for one workflow is recorded in ``errors`` and does not stop
    the remaining workflows from being triggered.
    """

    result = TriggerResult()
    trigger = build_trigger(
        event.trigger_type, data, source_id=event.source_id, metadata=metadata
    )
    for workflow in find_matching_workflows(tenant_id, event):
        try:
            execution_id = trigger_workflow(tenant_id, workflow.id, trigger)
        except FlowqueueError as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Could not trigger workflow %s for %s: %s", workflow.id, event.trigger_type, exc
            )
            result.errors.append({"workflow_id": workflow.id, "error": exc.message, "code": exc.code})
            continue
        result.triggered += 1
        result.execution_ids.append(execution_id)
    return result


def replay_execution(execution_id: str, *, tenant_id: str | None = None) -> str:
    """Queue a new execution with the stored trigger of ``execution_id``.

    The replay runs against the workflow's currently published version,
    whatever the original's status was.
    """

    original = executions.get_execution(execution_id)
    if tenant_id is not None and original.tenant_id != tenant_id:
        raise NotFoundError(f"execution {execution_id} not found")

    stored = copy.deepcopy(original.trigger or {})
    trigger = {
        "type": "replay",
        "payload": stored.get("payload") or {},
        "source": stored.get("source") or {},
        "replay_of": {"execution_id": original.id, "type": stored.get("type")},
    }
    return trigger_workflow(
        original.tenant_id, original.workflow_id, trigger, replay_of=original.id
    )
