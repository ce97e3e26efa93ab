"""Tests for trigger matching, dispatch and replay."""

from __future__ import annotations

import copy

import pytest

from conftest import FORM_GRAPH, TENANT, db
from flowqueue.errors import TerminalExecutionError, ValidationError, WorkflowInactiveError
from flowqueue.models import Execution, TenantUsage
from flowqueue.workflow import executions, queue, store
from flowqueue.workflow.dispatch import (
    build_trigger,
    replay_execution,
    trigger_event,
    trigger_workflow,
)
from flowqueue.workflow.triggers import TriggerEvent, find_matching_workflows, graph_listens_for
from flowqueue.workflow.usage import current_period

CONTACT = TriggerEvent("form_submission", "contact")


def test_trigger_matching_uses_enabled_nodes(app):
    disabled = copy.deepcopy(FORM_GRAPH)
    disabled["nodes"][0]["enabled"] = False

    assert graph_listens_for(FORM_GRAPH, CONTACT) is True
    assert graph_listens_for(FORM_GRAPH, TriggerEvent("form_submission", "other")) is False
    assert graph_listens_for(FORM_GRAPH, TriggerEvent("webhook", "contact")) is False
    assert graph_listens_for(disabled, CONTACT) is False


def test_manual_trigger_matches_without_source():
    graph = {"nodes": [{"id": "start", "type": "manual-trigger"}], "edges": []}

    assert graph_listens_for(graph, TriggerEvent("manual")) is True


def test_unknown_trigger_type_is_rejected(app):
    with pytest.raises(ValidationError):
        find_matching_workflows(TENANT, TriggerEvent("carrier_pigeon", "x"))


def test_only_active_workflows_of_the_tenant_match(app, workflow_factory):
    active = workflow_factory("Active")
    paused = workflow_factory("Paused")
    store.set_status(TENANT, paused.id, "paused")
    store.create_workflow(TENANT, "Draft", graph=FORM_GRAPH)
    workflow_factory("Foreign", tenant_id="tenant-b")

    matches = find_matching_workflows(TENANT, CONTACT)

    assert [workflow.id for workflow in matches] == [active.id]


def test_matching_reads_the_published_graph(app, workflow_factory):
    workflow = workflow_factory()
    # An unpublished edit removing the trigger does not change what is live.
    store.update_workflow(
        TENANT, workflow.id, {"graph": {"nodes": FORM_GRAPH["nodes"][1:], "edges": []}}
    )

    assert [w.id for w in find_matching_workflows(TENANT, CONTACT)] == [workflow.id]


def test_build_trigger_records_source_and_metadata(app):
    trigger = build_trigger(
        "form_submission",
        {"name": "Ada"},
        source_id="contact",
        metadata={"ip": "10.0.0.1", "user_agent": "curl"},
    )

    assert trigger["type"] == "form_submission"
    assert trigger["payload"]["data"] == {"name": "Ada"}
    assert trigger["payload"]["formId"] == "contact"
    assert trigger["payload"]["submitted_at"].endswith("Z")
    assert trigger["source"] == {"ip": "10.0.0.1", "user_agent": "curl", "user_id": None}


def test_trigger_workflow_creates_pinned_execution_and_job(app, workflow_factory):
    workflow = workflow_factory(settings={"retry_policy": {"max_retries": 1}})
    trigger = build_trigger("form_submission", {"name": "Ada"}, source_id="contact")

    execution_id = trigger_workflow(TENANT, workflow.id, trigger, priority=3)

    execution = executions.get_execution(execution_id)
    assert execution.status == "pending"
    assert execution.workflow_version == 1
    assert execution.trigger == trigger
    job = queue.get_job_by_execution(execution_id)
    assert job.status == "pending"
    assert job.priority == 3
    assert job.max_attempts == 2


def test_draft_workflow_accepts_manual_runs_only(app):
    workflow = store.create_workflow(TENANT, "Draft", graph=FORM_GRAPH)

    execution_id = trigger_workflow(TENANT, workflow.id, build_trigger("manual", {"x": 1}))
    assert executions.get_execution(execution_id).workflow_version == 1

    with pytest.raises(WorkflowInactiveError):
        trigger_workflow(TENANT, workflow.id, build_trigger("form_submission", {}))


def test_paused_workflow_rejects_triggers(app, workflow_factory):
    workflow = workflow_factory()
    store.set_status(TENANT, workflow.id, "paused")

    with pytest.raises(WorkflowInactiveError):
        trigger_workflow(TENANT, workflow.id, build_trigger("manual"))
    assert Execution.query.count() == 0


def test_trigger_event_isolates_failures(app, workflow_factory):
    workflow_factory("First")
    workflow_factory("Second")
    db.session.add(TenantUsage(tenant_id=TENANT, period=current_period(), workflow_executions=49))
    db.session.commit()

    result = trigger_event(TENANT, CONTACT, {"name": "Ada"})

    assert result.triggered == 1
    assert len(result.execution_ids) == 1
    assert len(result.errors) == 1
    assert result.errors[0]["code"] == "LIMIT_EXCEEDED"
    assert Execution.query.count() == 1


def test_trigger_event_without_matches(app, workflow_factory):
    workflow_factory()

    result = trigger_event(TENANT, TriggerEvent("webhook", "orders"), {})

    assert result.to_dict() == {"triggered": 0, "execution_ids": [], "errors": []}


def test_replay_copies_payload_into_new_execution(app, workflow_factory):
    workflow = workflow_factory()
    trigger = build_trigger("form_submission", {"name": "Ada"}, source_id="contact")
    original_id = trigger_workflow(TENANT, workflow.id, trigger)
    executions.finish_execution(original_id, "completed", result={"success": True})

    replay_id = replay_execution(original_id, tenant_id=TENANT)

    assert replay_id != original_id
    replay = executions.get_execution(replay_id)
    original = executions.get_execution(original_id)
    assert replay.trigger["type"] == "replay"
    assert replay.trigger["payload"] == original.trigger["payload"]
    assert replay.trigger["replay_of"] == {"execution_id": original_id, "type": "form_submission"}
    assert replay.replay_of == original_id
    assert replay.status == "pending"
    replay_job = queue.get_job_by_execution(replay_id)
    assert replay_job.id != queue.get_job_by_execution(original_id).id
    assert original.status == "completed"


def test_update_execution_refuses_terminal_records(app):
    execution = executions.create_execution("wf_x", TENANT, {"type": "manual"}, 1)
    executions.mark_running(execution.id)
    executions.record_node_result(execution.id, "a", "completed", output={"v": 1}, duration_ms=5)
    executions.finish_execution(execution.id, "completed", result={"success": True})

    with pytest.raises(TerminalExecutionError):
        executions.update_execution(execution.id, status="running")
    assert executions.fail_execution(execution.id, "LATE", "too late") is None

    stored = executions.get_execution(execution.id)
    assert stored.status == "completed"
    assert stored.completed_nodes == ["a"]
    assert stored.context["node_outputs"] == {"a": {"v": 1}}
    assert stored.metrics["node_metrics"]["a"]["duration_ms"] == 5
    assert stored.expires_at is not None


def test_update_execution_rejects_unknown_fields(app):
    execution = executions.create_execution("wf_x", TENANT, {"type": "manual"}, 1)

    with pytest.raises(ValidationError):
        executions.update_execution(execution.id, trigger={})


def test_list_executions_filters_by_status(app):
    first = executions.create_execution("wf_x", TENANT, {"type": "manual"}, 1)
    executions.create_execution("wf_x", TENANT, {"type": "manual"}, 1)
    executions.finish_execution(first.id, "failed", result={"success": False})

    failed = executions.list_executions("wf_x", tenant_id=TENANT, status="failed")

    assert [execution.id for execution in failed] == [first.id]
    assert len(executions.list_executions("wf_x")) == 2
    assert executions.list_executions("wf_x", tenant_id="tenant-b") == []
