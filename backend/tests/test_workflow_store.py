from __future__ import annotations

import pytest

from conftest import FORM_GRAPH, TENANT
from flowqueue.errors import (
    DuplicateSlugError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkflowDeleteError,
)
from flowqueue.models import WorkflowVersion
from flowqueue.workflow import store


def test_create_workflow_starts_as_draft(app):
    workflow = store.create_workflow(TENANT, "  Contact form ", user_id="user-1", graph=FORM_GRAPH)

    assert workflow.id.startswith("wf_")
    assert workflow.name == "Contact form"
    assert workflow.slug == "contact-form"
    assert workflow.status == "draft"
    assert workflow.version == 1
    assert workflow.published_version is None
    assert workflow.settings["error_handling"] == "stop"
    assert workflow.settings["retry_policy"]["max_retries"] == 3
    assert workflow.stats["total_executions"] == 0
    assert workflow.created_by == "user-1"


def test_generated_slug_collisions_get_a_suffix(app):
    first = store.create_workflow(TENANT, "Lead intake")
    second = store.create_workflow(TENANT, "Lead Intake!")
    elsewhere = store.create_workflow("tenant-b", "Lead intake")

    assert first.slug == "lead-intake"
    assert second.slug.startswith("lead-intake-")
    assert len(second.slug) == len("lead-intake-") + 4
    assert elsewhere.slug == "lead-intake"


def test_explicit_duplicate_slug_is_rejected(app):
    store.create_workflow(TENANT, "Lead intake", slug="leads")

    with pytest.raises(DuplicateSlugError):
        store.create_workflow(TENANT, "Other", slug="leads")


@pytest.mark.parametrize(
    "graph, message",
    [
        ({"nodes": {}, "edges": []}, "graph.nodes must be a list"),
        ({"nodes": [{"type": "code"}], "edges": []}, "node #0 needs a string id"),
        (
            {"nodes": [{"id": "a", "type": "code"}, {"id": "a", "type": "code"}], "edges": []},
            "duplicate node id 'a'",
        ),
        ({"nodes": [{"id": "a"}], "edges": []}, "node 'a' needs a type"),
        (
            {"nodes": [{"id": "a", "type": "code"}], "edges": [{"source": "a", "target": "b"}]},
            "edge #0 target 'b' is not a node",
        ),
    ],
)
def test_invalid_graphs_are_rejected(app, graph, message):
    with pytest.raises(ValidationError) as excinfo:
        store.create_workflow(TENANT, "Broken", graph=graph)

    assert message in excinfo.value.errors


def test_oversized_graph_is_rejected(app):
    graph = {"nodes": [{"id": "a", "type": "code", "config": {"blob": "x" * 600_000}}], "edges": []}

    _, errors = store.normalize_graph(graph)

    assert errors == ["graph exceeds the maximum size"]


def test_invalid_error_handling_is_rejected(app):
    with pytest.raises(ValidationError):
        store.create_workflow(TENANT, "Broken", settings={"error_handling": "ignore"})


def test_update_bumps_version(app):
    workflow = store.create_workflow(TENANT, "Lead intake")

    updated = store.update_workflow(
        TENANT, workflow.id, {"description": "Routes leads", "tags": ["sales"]}, user_id="user-2"
    )
    unchanged = store.update_workflow(TENANT, workflow.id, {"unknown": 1})

    assert updated.version == 2
    assert updated.description == "Routes leads"
    assert updated.last_modified_by == "user-2"
    assert unchanged.version == 2


def test_lookup_is_scoped_to_tenant(app):
    workflow = store.create_workflow(TENANT, "Lead intake")

    assert store.get_workflow_by_slug(TENANT, "lead-intake").id == workflow.id
    with pytest.raises(NotFoundError):
        store.get_workflow("tenant-b", workflow.id)
    with pytest.raises(NotFoundError):
        store.get_workflow_by_slug("tenant-b", "lead-intake")


def test_list_workflows_filters_and_paginates(app, workflow_factory):
    workflow_factory("Active one")
    store.create_workflow(TENANT, "Draft one", tags=["beta"])
    store.create_workflow(TENANT, "Draft two")
    store.create_workflow("tenant-b", "Foreign")

    items, total = store.list_workflows(TENANT)
    assert total == 3

    drafts, total = store.list_workflows(TENANT, status="draft", page=1, page_size=1)
    assert total == 2
    assert len(drafts) == 1

    tagged, total = store.list_workflows(TENANT, tag="beta")
    assert [workflow.name for workflow in tagged] == ["Draft one"]

    with pytest.raises(ValidationError):
        store.list_workflows(TENANT, status="deleted")


def test_status_transitions(app, workflow_factory):
    draft = store.create_workflow(TENANT, "Unpublished")
    with pytest.raises(InvalidTransitionError):
        store.set_status(TENANT, draft.id, "active")
    with pytest.raises(InvalidTransitionError):
        store.set_status(TENANT, draft.id, "paused")

    workflow = workflow_factory()
    assert store.set_status(TENANT, workflow.id, "paused").status == "paused"
    assert store.set_status(TENANT, workflow.id, "active").status == "active"
    store.set_status(TENANT, workflow.id, "paused")
    assert store.set_status(TENANT, workflow.id, "archived").status == "archived"

    with pytest.raises(InvalidTransitionError):
        store.set_status(TENANT, workflow.id, "active")
    with pytest.raises(InvalidTransitionError):
        store.update_workflow(TENANT, workflow.id, {"name": "Renamed"})


def test_active_workflow_cannot_be_deleted(app, workflow_factory):
    workflow = workflow_factory()

    with pytest.raises(WorkflowDeleteError):
        store.delete_workflow(TENANT, workflow.id)

    store.set_status(TENANT, workflow.id, "paused")
    store.delete_workflow(TENANT, workflow.id)

    assert store.find_workflow(workflow.id) is None
    assert WorkflowVersion.query.filter_by(workflow_id=workflow.id).count() == 0


def test_record_execution_stats_keeps_running_average(app):
    workflow = store.create_workflow(TENANT, "Lead intake")

    store.record_execution_stats(workflow.id, True, 100)
    store.record_execution_stats(workflow.id, False, 300)

    stats = store.get_workflow(TENANT, workflow.id).stats
    assert stats["total_executions"] == 2
    assert stats["successful_executions"] == 1
    assert stats["failed_executions"] == 1
    assert stats["avg_execution_time_ms"] == 200
    assert stats["last_executed_at"].endswith("Z")
