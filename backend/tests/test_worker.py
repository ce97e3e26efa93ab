"""End-to-end tests driving executions through the worker."""

from __future__ import annotations

import copy
import time
from datetime import timedelta

import pytest

from conftest import FORM_GRAPH, TENANT, db
from flowqueue.errors import PermanentNodeError, TransientNodeError
from flowqueue.models import ExecutionLog
from flowqueue.utils.clock import utcnow
from flowqueue.workflow import executions, queue, store, versions
from flowqueue.workflow.dispatch import build_trigger, trigger_workflow
from flowqueue.workflow.nodes import register_node_handler, unregister_node_handler
from flowqueue.workflow.usage import usage_summary
from flowqueue.workflow.worker import Worker


@pytest.fixture()
def worker(app):
    return Worker(app, "worker-1")


@pytest.fixture()
def failing_handlers():
    """Register node types that fail in the ways the runner distinguishes."""

    @register_node_handler("flaky")
    def _flaky(config, inputs, ctx):
        if ctx.attempt < int(config.get("succeed_on", 99)):
            raise TransientNodeError("upstream returned 503")
        return {"attempt": ctx.attempt}

    @register_node_handler("broken")
    def _broken(config, inputs, ctx):
        raise PermanentNodeError("missing recipient", code="BAD_INPUT")

    @register_node_handler("crash")
    def _crash(config, inputs, ctx):
        raise ValueError("unexpected shape")

    @register_node_handler("slow")
    def _slow(config, inputs, ctx):
        time.sleep(1)
        return {}

    yield
    for node_type in ("flaky", "broken", "crash", "slow"):
        unregister_node_handler(node_type)


def _graph_with(node: dict) -> dict:
    graph = copy.deepcopy(FORM_GRAPH)
    graph["nodes"].append(node)
    graph["edges"].append({"id": "e2", "source": "trigger", "target": node["id"]})
    return graph


def _submit(workflow, name: str = "Ada") -> str:
    trigger = build_trigger("form_submission", {"name": name}, source_id="contact")
    return trigger_workflow(TENANT, workflow.id, trigger)


def _events(execution_id: str) -> list[str]:
    return [
        entry.event
        for entry in ExecutionLog.query.filter_by(execution_id=execution_id).order_by(
            ExecutionLog.id
        )
    ]


def test_idle_worker_returns_none(worker):
    assert worker.run_once() is None


def test_successful_execution(worker, workflow_factory, echo_handler):
    workflow = workflow_factory()
    execution_id = _submit(workflow)

    assert worker.run_once() == "completed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "completed"
    assert execution.completed_nodes == ["trigger", "greet"]
    assert execution.result["success"] is True
    output = execution.result["output"]
    assert output["config"] == {"greeting": "Hello Ada"}
    assert output["inputs"]["default"]["data"] == {"name": "Ada"}
    assert execution.metrics["total_duration_ms"] >= 0
    assert set(execution.metrics["node_metrics"]) == {"trigger", "greet"}
    assert echo_handler == [
        {"config": {"greeting": "Hello Ada"}, "inputs": output["inputs"], "attempt": 1}
    ]

    job = queue.get_job_by_execution(execution_id)
    assert job.status == "completed"
    assert job.locked_by is None
    assert job.result["execution_id"] == execution_id

    assert _events(execution_id) == [
        "node_start",
        "node_complete",
        "node_start",
        "node_complete",
    ]
    stats = store.get_workflow(TENANT, workflow.id).stats
    assert stats["total_executions"] == 1
    assert stats["successful_executions"] == 1
    assert versions.get_version(workflow.id, 1).stats["successful"] == 1
    assert usage_summary(TENANT)["successful_executions"] == 1


def test_execution_runs_its_pinned_version(worker, workflow_factory, echo_handler):
    workflow = workflow_factory()
    execution_id = _submit(workflow)
    graph = copy.deepcopy(FORM_GRAPH)
    graph["nodes"][1]["config"] = {"greeting": "Bye {{trigger.payload.data.name}}"}
    store.update_workflow(TENANT, workflow.id, {"graph": graph})
    versions.publish(TENANT, workflow.id)

    worker.run_once()

    execution = executions.get_execution(execution_id)
    assert execution.workflow_version == 1
    assert execution.result["output"]["config"] == {"greeting": "Hello Ada"}


def test_draft_run_survives_edits_before_it_is_claimed(worker, workflow_factory, echo_handler):
    workflow = workflow_factory(publish=False)
    execution_id = trigger_workflow(TENANT, workflow.id, build_trigger("manual", {"name": "Ada"}))
    graph = copy.deepcopy(FORM_GRAPH)
    graph["nodes"][1]["config"] = {"greeting": "Bye {{trigger.payload.data.name}}"}
    store.update_workflow(TENANT, workflow.id, {"description": "edited", "graph": graph})

    assert worker.run_once() == "completed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "completed"
    assert execution.workflow_version == 1
    assert execution.snapshot["graph"] == FORM_GRAPH
    assert execution.result["output"]["config"] == {"greeting": "Hello Ada"}
    assert store.get_workflow(TENANT, workflow.id).version == 2


def test_transient_failure_is_retried(worker, workflow_factory, echo_handler, failing_handlers):
    graph = _graph_with({"id": "call", "type": "flaky", "config": {"succeed_on": 2}})
    workflow = workflow_factory(graph=graph)
    execution_id = _submit(workflow)

    assert worker.run_once() == "retry"

    execution = executions.get_execution(execution_id)
    assert execution.status == "pending"
    assert execution.failed_nodes == ["call"]
    job = queue.get_job_by_execution(execution_id)
    assert job.status == "pending"
    assert job.attempts == 1
    assert job.last_error == "TRANSIENT_ERROR: upstream returned 503"
    retry_logs = ExecutionLog.query.filter_by(execution_id=execution_id, event="retry").all()
    assert len(retry_logs) == 1
    assert retry_logs[0].level == "warn"
    assert retry_logs[0].data["attempt"] == 1

    # the backoff keeps the job away from workers until run_at
    assert worker.run_once() is None
    claimed = queue.claim("worker-1", now=utcnow() + timedelta(seconds=3))
    assert worker.process_job(claimed) == "completed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "completed"
    assert execution.failed_nodes == []
    assert execution.context["node_outputs"]["call"] == {"attempt": 2}


def test_transient_failure_exhausts_attempts(worker, workflow_factory, failing_handlers, echo_handler):
    graph = _graph_with({"id": "call", "type": "flaky"})
    workflow = workflow_factory(graph=graph, settings={"retry_policy": {"max_retries": 0}})
    execution_id = _submit(workflow)

    assert worker.run_once() == "failed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.result["error"]["code"] == "TRANSIENT_ERROR"
    assert execution.result["error"]["node_id"] == "call"
    assert queue.get_job_by_execution(execution_id).status == "failed"
    assert usage_summary(TENANT)["failed_executions"] == 1


@pytest.mark.parametrize(
    "node_type, code",
    [
        ("broken", "BAD_INPUT"),
        ("crash", "HANDLER_EXCEPTION"),
        ("no-such-node", "UNKNOWN_NODE_TYPE"),
    ],
)
def test_permanent_failures_are_not_retried(
    worker, workflow_factory, failing_handlers, echo_handler, node_type, code
):
    workflow = workflow_factory(graph=_graph_with({"id": "step", "type": node_type}))
    execution_id = _submit(workflow)

    assert worker.run_once() == "failed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.failed_nodes == ["step"]
    assert execution.result["error"]["code"] == code
    job = queue.get_job_by_execution(execution_id)
    assert job.status == "failed"
    assert job.attempts == 1
    assert "node_error" in _events(execution_id)
    assert store.get_workflow(TENANT, workflow.id).stats["failed_executions"] == 1


def test_node_timeout_is_transient(worker, workflow_factory, failing_handlers, echo_handler):
    graph = _graph_with({"id": "wait", "type": "slow", "timeout": 100})
    workflow = workflow_factory(graph=graph)
    execution_id = _submit(workflow)

    assert worker.run_once() == "retry"

    errors = executions.get_execution(execution_id).context["errors"]
    assert errors[-1]["code"] == "TIMEOUT"
    assert errors[-1]["node_id"] == "wait"


def test_continue_mode_runs_remaining_nodes(worker, workflow_factory, failing_handlers, echo_handler):
    graph = {
        "nodes": [
            FORM_GRAPH["nodes"][0],
            {"id": "call", "type": "flaky"},
            FORM_GRAPH["nodes"][1],
        ],
        "edges": [
            {"id": "e1", "source": "trigger", "target": "call"},
            {"id": "e2", "source": "trigger", "target": "greet"},
        ],
    }
    workflow = workflow_factory(graph=graph, settings={"error_handling": "continue"})
    execution_id = _submit(workflow)

    assert worker.run_once() == "failed"

    execution = executions.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.completed_nodes == ["trigger", "greet"]
    assert execution.failed_nodes == ["call"]
    assert execution.result["error"]["node_id"] == "call"
    assert len(echo_handler) == 1
    assert queue.get_job_by_execution(execution_id).attempts == 1


def test_disabled_node_is_skipped(worker, workflow_factory, echo_handler):
    graph = copy.deepcopy(FORM_GRAPH)
    graph["nodes"][1]["enabled"] = False
    workflow = workflow_factory(graph=graph)
    execution_id = _submit(workflow)

    assert worker.run_once() == "completed"

    execution = executions.get_execution(execution_id)
    assert execution.skipped_nodes == ["greet"]
    assert execution.completed_nodes == ["trigger"]
    assert echo_handler == []
    assert "node_skip" in _events(execution_id)


def test_reclaimed_job_is_abandoned_by_previous_worker(worker, workflow_factory, echo_handler):
    workflow = workflow_factory()
    execution_id = _submit(workflow)
    job = queue.claim("worker-1")
    job.locked_at = utcnow() - timedelta(seconds=400)
    db.session.commit()
    assert queue.claim("worker-2") is not None

    assert worker.process_job(queue.get_job(job.id)) == "cancelled"

    reclaimed = queue.get_job(job.id)
    assert reclaimed.status == "processing"
    assert reclaimed.locked_by == "worker-2"
    assert echo_handler == []
    assert executions.get_execution(execution_id).status == "running"


def test_cancelled_execution_is_not_run(worker, workflow_factory, echo_handler):
    workflow = workflow_factory()
    execution_id = _submit(workflow)
    job = queue.claim("worker-1")
    executions.cancel_execution(execution_id)

    assert worker.process_job(job) == "failed"

    assert echo_handler == []
    assert queue.get_job(job.id).status == "failed"
    assert executions.get_execution(execution_id).status == "cancelled"


def test_completed_execution_completes_its_job(worker, workflow_factory):
    workflow = workflow_factory()
    execution_id = _submit(workflow)
    job = queue.claim("worker-1")
    executions.finish_execution(execution_id, "completed", result={"success": True})

    assert worker.process_job(job) == "completed"
    assert queue.get_job(job.id).status == "completed"


def test_process_batch_stops_when_idle(worker, workflow_factory, echo_handler):
    workflow = workflow_factory()
    first = _submit(workflow, "Ada")
    second = _submit(workflow, "Grace")

    processed = worker.process_batch(5)

    assert sorted(item["execution_id"] for item in processed) == sorted([first, second])
    assert {item["outcome"] for item in processed} == {"completed"}


def test_maintenance_reaps_and_purges(worker, workflow_factory):
    workflow = workflow_factory(settings={"retry_policy": {"max_retries": 0}})
    execution_id = _submit(workflow)
    job = queue.claim("worker-1")
    job.locked_at = utcnow() - timedelta(seconds=400)
    db.session.commit()

    summary = worker.maintenance()

    assert summary["reaped"] == 1
    assert executions.get_execution(execution_id).result["error"]["code"] == "LOCK_EXPIRED"
