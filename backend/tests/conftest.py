from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

BACKEND = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))


def _load_dependencies():
    from flowqueue import Config, create_app
    from flowqueue.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()

TENANT = "tenant-a"

FORM_GRAPH: dict[str, Any] = {
    "nodes": [
        {"id": "trigger", "type": "form-trigger", "config": {"formId": "contact"}},
        {
            "id": "greet",
            "type": "echo",
            "config": {"greeting": "Hello {{trigger.payload.data.name}}"},
        },
    ],
    "edges": [{"id": "e1", "source": "trigger", "target": "greet"}],
}


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    DB_INIT_MAX_RETRIES = 1
    RATELIMIT_ENABLED = False
    WORKER_SECRET = None
    NODE_TIMEOUT_SECONDS = 5
    CODE_NODE_TIMEOUT_SECONDS = 5
    LOG_LEVEL = "DEBUG"


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def file_app(tmp_path):
    """App on a SQLite file so concurrent threads use separate connections."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite+pysqlite:///{tmp_path / 'flowqueue.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}

    app = create_app(FileConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def cleanup_tables(app):
    from flowqueue.workflow.admission import get_admission_controller

    yield

    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    get_admission_controller().cache.invalidate()


@pytest.fixture()
def echo_handler():
    """Register an ``echo`` node type returning its config and inputs."""

    from flowqueue.workflow.nodes import register_node_handler, unregister_node_handler

    calls: list[dict[str, Any]] = []

    @register_node_handler("echo")
    def _echo(config, inputs, ctx):
        calls.append({"config": config, "inputs": inputs, "attempt": ctx.attempt})
        return {"config": config, "inputs": inputs}

    yield calls
    unregister_node_handler("echo")


@pytest.fixture()
def workflow_factory(app) -> Callable[..., Any]:
    """Create workflows; ``publish=True`` publishes them so they are active."""

    from flowqueue.workflow import store, versions

    def factory(
        name: str = "Contact form",
        *,
        graph: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
        tenant_id: str = TENANT,
        publish: bool = True,
    ):
        workflow = store.create_workflow(
            tenant_id,
            name,
            user_id="user-1",
            graph=graph if graph is not None else FORM_GRAPH,
            settings=settings,
        )
        if publish:
            versions.publish(tenant_id, workflow.id, user_id="user-1", note="initial")
        return store.get_workflow(tenant_id, workflow.id)

    return factory
