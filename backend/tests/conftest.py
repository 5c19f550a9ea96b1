from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from app import Config, create_app
    from backend.app.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    DB_INIT_MAX_RETRIES = 1
    ENABLE_EVENT_BUS = False
    ENABLE_TICKET_SUBSCRIBER = False
    ENABLE_ESCALATION_SCHEDULER = False
    RATELIMIT_STORAGE_URI = "memory://"


class RecordingPublisher:
    """Publisher double collecting events instead of sending them."""

    client = None

    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        self.published.append((event_type, data))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.published]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [data for kind, data in self.published if kind == event_type]


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def cleanup_tables(app):
    from backend.app.models import (
        Operation,
        Ticket,
        WorkflowDefinition,
        WorkflowRun,
        WorkflowRunHistory,
        WorkflowStage,
        WorkflowTransition,
    )

    yield

    db.session.rollback()
    for model in (
        Ticket,
        Operation,
        WorkflowRunHistory,
        WorkflowRun,
        WorkflowTransition,
        WorkflowStage,
        WorkflowDefinition,
    ):
        db.session.query(model).delete()
    db.session.commit()
    db.session.remove()


@pytest.fixture()
def events(app):
    from backend.app.events.bus import EXTENSION_KEY

    previous = app.extensions.get(EXTENSION_KEY)
    recorder = RecordingPublisher()
    app.extensions[EXTENSION_KEY] = recorder
    yield recorder
    app.extensions[EXTENSION_KEY] = previous


@pytest.fixture()
def engine(app):
    from backend.app.workflow.engine import RunEngine

    return RunEngine(super_role="admin", max_auto_hops=100)


def stage(name: str, order: int, stage_type: str, **config: Any) -> dict[str, Any]:
    return {"name": name, "stage_order": order, "stage_type": stage_type, "config": config}


def edge(from_order: int, to_order: int, trigger: str, **extra: Any) -> dict[str, Any]:
    return {"from_stage_order": from_order, "to_stage_order": to_order, "trigger": trigger, **extra}


@pytest.fixture()
def make_workflow(app) -> Callable[..., Any]:
    from backend.app.workflow.definitions import create_definition

    def factory(
        stages: list[dict[str, Any]],
        transitions: list[dict[str, Any]] | None = None,
        **fields: Any,
    ):
        payload = {"name": fields.pop("name", "Test Workflow"), "stages": stages, **fields}
        payload["transitions"] = transitions or []
        return create_definition(payload, created_by="tester")

    return factory


@pytest.fixture()
def stage_by_name():
    def lookup(definition, name: str):
        return next(item for item in definition.stages if item.name == name)

    return lookup
