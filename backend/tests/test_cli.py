from __future__ import annotations

from conftest import TENANT
from flowqueue.workflow import executions
from flowqueue.workflow.dispatch import build_trigger, trigger_workflow


def test_worker_once_processes_ready_jobs(app, workflow_factory, echo_handler):
    workflow = workflow_factory()
    execution_id = trigger_workflow(
        TENANT, workflow.id, build_trigger("form_submission", {"name": "Ada"}, source_id="contact")
    )

    result = app.test_cli_runner().invoke(args=["worker", "once", "--count", "3"])

    assert result.exit_code == 0, result.output
    assert f"{execution_id} completed" in result.output
    assert "processed 1 job(s)" in result.output
    assert executions.get_execution(execution_id).status == "completed"


def test_purge_expired_command(app):
    result = app.test_cli_runner().invoke(args=["purge-expired"])

    assert result.exit_code == 0, result.output
    assert "reaped 0 job(s); purged 0 job(s), 0 log entries, 0 execution(s)" in result.output
