from __future__ import annotations

import copy
import json
import pathlib
import sys
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from backend.dataroll import create_app
    from backend.dataroll.config import Config
    from backend.dataroll.extensions import db

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
    RATELIMIT_ENABLED = False
    SLACK_WEBHOOK_URL = None
    WORKFLOW_NOTIFICATION_POLICY = "best_effort"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeInvoker:
    """Action collaborator returning canned responses per action."""

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {}
        self.calls: list[tuple[str, dict[str, Any], float]] = []

    def invoke(self, action: str, parameters: dict[str, Any], *, timeout: float) -> Any:
        self.calls.append((action, dict(parameters), timeout))
        response = self.responses.get(action, {"ok": True})
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(parameters)
        return copy.deepcopy(response)


class FakeDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, list[str], str]] = []
        self.error: Exception | None = None

    def dispatch(self, provider: str, recipients: list[str], message: str, options: dict[str, Any]) -> Any:
        if self.error is not None:
            raise self.error
        self.sent.append((provider, list(recipients), message))
        return {"status": 200}


class RecordingLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []

    def _record(self, level: str, message: str, *args: Any, **kwargs: Any) -> None:
        self.records.append((level, message % args if args else message))

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._record("debug", message, *args)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._record("info", message, *args)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._record("warning", message, *args)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._record("error", message, *args)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._record("exception", message, *args)

    def messages(self, level: str | None = None) -> list[str]:
        return [message for recorded, message in self.records if level is None or recorded == level]


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
    from backend.dataroll.models import (
        ApprovalDecision,
        ApprovalRequest,
        AuditLog,
        Execution,
        NodeExecution,
        ScheduledResume,
        TeamMembership,
        Workflow,
        WorkflowDefinition,
    )

    yield

    db.session.rollback()
    db.session.expunge_all()
    for model in (
        ApprovalDecision,
        ApprovalRequest,
        ScheduledResume,
        NodeExecution,
        Execution,
        WorkflowDefinition,
        Workflow,
        TeamMembership,
        AuditLog,
    ):
        db.session.query(model).delete()
    db.session.commit()
    db.session.expunge_all()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture()
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture()
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture()
def services_factory(app, clock, fake_invoker, fake_dispatcher, recording_logger):
    """Build workflow services wired to the fakes and install them on the app."""

    from backend.dataroll.workflows import EXTENSION_KEY, build_workflow_services

    original = app.extensions[EXTENSION_KEY]

    def factory(**overrides: Any):
        options: dict[str, Any] = {
            "invoker": fake_invoker,
            "dispatcher": fake_dispatcher,
            "clock": clock,
            "logger": recording_logger,
        }
        options.update(overrides)
        config = dict(app.config)
        config.update(options.pop("config", {}))
        services = build_workflow_services(config, **options)
        app.extensions[EXTENSION_KEY] = services
        return services

    yield factory

    app.extensions[EXTENSION_KEY] = original


@pytest.fixture()
def services(services_factory):
    return services_factory()


@pytest.fixture()
def member_factory(app) -> Callable[..., Any]:
    from backend.dataroll.models import TeamMembership

    def factory(user_id: str, team_id: str = "team-1", role: str = "member") -> TeamMembership:
        membership = TeamMembership(team_id=team_id, user_id=user_id, role=role)
        db.session.add(membership)
        db.session.commit()
        return membership

    return factory


@pytest.fixture()
def workflow_factory(app) -> Callable[..., Any]:
    """Persist a workflow with the given definition as its first version."""

    from backend.dataroll.models import Workflow
    from backend.dataroll.workflows.storage import save_definition

    def factory(
        definition: dict[str, Any],
        *,
        team_id: str = "team-1",
        published: bool = True,
        created_by: str = "u0",
    ) -> Workflow:
        workflow = Workflow(team_id=team_id, name=definition["name"], version=0, created_by=created_by)
        db.session.add(workflow)
        db.session.flush()
        save_definition(workflow, json.dumps(definition), "json")
        workflow.is_published = published
        db.session.commit()
        return workflow

    return factory


@pytest.fixture()
def migration_definition() -> dict[str, Any]:
    """trigger -> discover -> condition -> [approval -> execute] | [notification]."""

    return {
        "version": "1.0",
        "name": "Migrate",
        "trigger": "manual",
        "variables": [
            {"name": "connectionId", "type": "string", "defaultValue": "primary", "isSecret": False},
        ],
        "nodes": [
            {"id": "start", "type": "trigger", "label": "Start", "data": {}},
            {
                "id": "discover",
                "type": "action",
                "label": "Discover",
                "data": {"action": "discover_migrations", "connectionId": "{{ connectionId }}"},
            },
            {
                "id": "check",
                "type": "condition",
                "label": "Found?",
                "data": {"condition": "migrationsFound == true"},
            },
            {
                "id": "approve",
                "type": "approval",
                "label": "Approve",
                "data": {"approvers": ["u1"], "timeout": 3600, "requireAll": True},
            },
            {
                "id": "execute",
                "type": "action",
                "label": "Execute",
                "data": {"action": "execute_migrations", "connectionId": "{{ connectionId }}"},
            },
            {
                "id": "notify",
                "type": "notification",
                "label": "Nothing to do",
                "data": {"provider": "slack", "message": "no migrations"},
            },
        ],
        "edges": [
            {"source": "start", "target": "discover"},
            {"source": "discover", "target": "check"},
            {"source": "check", "target": "approve", "label": "true"},
            {"source": "check", "target": "notify", "label": "false"},
            {"source": "approve", "target": "execute"},
        ],
    }


def linear_definition(*nodes: dict[str, Any], name: str = "Linear", variables: list | None = None) -> dict[str, Any]:
    """trigger -> nodes[0] -> nodes[1] -> ..."""

    all_nodes = [{"id": "start", "type": "trigger", "label": "Start", "data": {}}, *nodes]
    edges = [
        {"source": all_nodes[index]["id"], "target": all_nodes[index + 1]["id"]}
        for index in range(len(all_nodes) - 1)
    ]
    return {
        "version": "1.0",
        "name": name,
        "trigger": "manual",
        "variables": variables or [],
        "nodes": all_nodes,
        "edges": edges,
    }


@pytest.fixture()
def linear() -> Callable[..., dict[str, Any]]:
    return linear_definition
