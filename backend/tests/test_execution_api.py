"""Tests for the execution and approval REST API."""

from __future__ import annotations

import pytest

from backend.dataroll.extensions import db
from backend.dataroll.models import Workflow

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture()
def team(services, member_factory):
    member_factory("alice", role="admin")
    member_factory("u1")
    member_factory("bob")
    return "team-1"


@pytest.fixture()
def migration(team, workflow_factory, migration_definition, fake_invoker):
    fake_invoker.responses["discover_migrations"] = {"migrationsFound": True, "migrations": ["001"]}
    return workflow_factory(migration_definition)


def test_trigger_runs_until_approval(client, migration, fake_invoker):
    response = client.post(
        f"/api/workflows/{migration.id}/executions",
        json={"variables": {"connectionId": "replica"}},
        headers=ALICE,
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["status"] == "awaiting_approval"
    assert body["currentNodeId"] == "approve"
    assert body["triggeredBy"] == "alice"
    assert body["context"]["connectionId"] == "replica"
    assert [node["nodeId"] for node in body["nodes"]] == ["start", "discover", "check", "approve"]
    assert fake_invoker.calls[0][1] == {"connectionId": "replica"}


def test_approval_decision_over_http_completes_execution(client, migration):
    execution = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()

    pending = client.get("/api/approvals", headers={"X-User-Id": "u1"})
    assert pending.status_code == 200
    approvals = pending.get_json()
    assert len(approvals) == 1
    assert approvals[0]["executionId"] == execution["id"]
    assert approvals[0]["approvers"] == ["u1"]

    decided = client.post(
        f"/api/approvals/{approvals[0]['id']}/decisions",
        json={"decision": "approved", "comment": "ship it"},
        headers={"X-User-Id": "u1"},
    )
    assert decided.status_code == 200
    assert decided.get_json()["status"] == "APPROVED"
    assert decided.get_json()["decisions"][0]["comment"] == "ship it"

    detail = client.get(f"/api/executions/{execution['id']}", headers=ALICE).get_json()
    assert detail["status"] == "success"
    assert detail["nodes"][-1]["nodeId"] == "execute"


def test_decision_errors_map_to_status_codes(client, migration):
    client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE)
    approval_id = client.get("/api/approvals", headers={"X-User-Id": "u1"}).get_json()[0]["id"]

    forbidden = client.post(f"/api/approvals/{approval_id}/decisions", json={"decision": "APPROVED"}, headers=BOB)
    invalid = client.post(f"/api/approvals/{approval_id}/decisions", json={"decision": "perhaps"}, headers={"X-User-Id": "u1"})
    missing = client.post("/api/approvals/999/decisions", json={"decision": "APPROVED"}, headers=BOB)

    assert forbidden.status_code == 403
    assert forbidden.get_json()["error"]["reason"] == "forbidden"
    assert invalid.status_code == 400
    assert missing.status_code == 404

    client.post(f"/api/approvals/{approval_id}/decisions", json={"decision": "REJECTED"}, headers={"X-User-Id": "u1"})
    again = client.post(f"/api/approvals/{approval_id}/decisions", json={"decision": "APPROVED"}, headers={"X-User-Id": "u1"})
    assert again.status_code == 409
    assert again.get_json()["error"]["reason"] == "resolved"


def test_pending_approvals_are_only_listed_for_the_caller(client, team):
    response = client.get("/api/approvals?approverId=u1", headers=BOB)

    assert response.status_code == 403


def test_get_approval_checks_membership(client, migration):
    client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE)
    approval_id = client.get("/api/approvals", headers={"X-User-Id": "u1"}).get_json()[0]["id"]

    assert client.get(f"/api/approvals/{approval_id}", headers=BOB).status_code == 200
    assert client.get(f"/api/approvals/{approval_id}", headers={"X-User-Id": "mallory"}).status_code == 403
    assert client.get("/api/approvals/999", headers=BOB).status_code == 404


def test_trigger_without_advance_then_advance(client, migration):
    created = client.post(
        f"/api/workflows/{migration.id}/executions", json={"advance": False}, headers=ALICE
    )
    assert created.status_code == 201
    execution = created.get_json()
    assert execution["status"] == "pending"
    assert execution["nodes"] == []

    advanced = client.post(f"/api/executions/{execution['id']}/advance", headers=ALICE)
    assert advanced.status_code == 200
    assert advanced.get_json()["status"] == "awaiting_approval"

    again = client.post(f"/api/executions/{execution['id']}/advance", headers=ALICE)
    assert again.status_code == 409
    assert again.get_json()["error"]["code"] == "state_error"


def test_cancel_over_http(client, migration):
    execution = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()

    cancelled = client.post(f"/api/executions/{execution['id']}/cancel", headers=BOB)

    assert cancelled.status_code == 200
    body = cancelled.get_json()
    assert body["status"] == "cancelled"
    assert body["error"]["details"]["cancelledBy"] == "bob"
    assert client.post(f"/api/executions/{execution['id']}/cancel", headers=BOB).status_code == 409


def test_resume_failed_execution_over_http(client, migration, fake_invoker):
    fake_invoker.responses["discover_migrations"] = ConnectionError("database unreachable")
    execution = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()
    assert execution["status"] == "failed"
    assert execution["error"]["nodeId"] == "discover"

    fake_invoker.responses["discover_migrations"] = {"migrationsFound": False}
    resumed = client.post(f"/api/executions/{execution['id']}/resume", headers=ALICE)

    assert resumed.status_code == 200
    assert resumed.get_json()["status"] == "success"


def test_list_executions_filters_by_status(client, migration):
    first = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()
    client.post(f"/api/executions/{first['id']}/cancel", headers=ALICE)
    second = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()

    listed = client.get(f"/api/workflows/{migration.id}/executions", headers=ALICE).get_json()
    cancelled = client.get(f"/api/workflows/{migration.id}/executions?status=cancelled", headers=ALICE).get_json()
    invalid = client.get(f"/api/workflows/{migration.id}/executions?status=sleeping", headers=ALICE)

    assert [item["id"] for item in listed] == [second["id"], first["id"]]
    assert [item["id"] for item in cancelled] == [first["id"]]
    assert invalid.status_code == 400


def test_trigger_refusals(client, team, migration, workflow_factory, linear):
    outsider = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers={"X-User-Id": "mallory"})
    bad_variables = client.post(f"/api/workflows/{migration.id}/executions", json={"variables": [1]}, headers=ALICE)
    missing = client.post("/api/workflows/999/executions", json={}, headers=ALICE)

    draft = workflow_factory(linear(name="Draft"), published=False)
    unpublished = client.post(f"/api/workflows/{draft.id}/executions", json={}, headers=ALICE)

    scheduled = workflow_factory(linear(name="Nightly"))
    db.session.get(Workflow, scheduled.id).trigger = "scheduled"
    db.session.commit()
    not_manual = client.post(f"/api/workflows/{scheduled.id}/executions", json={}, headers=ALICE)

    assert outsider.status_code == 403
    assert bad_variables.status_code == 400
    assert missing.status_code == 404
    assert unpublished.status_code == 409
    assert not_manual.status_code == 409


def test_listed_executions_report_node_count(client, migration):
    execution = client.post(f"/api/workflows/{migration.id}/executions", json={}, headers=ALICE).get_json()
    pending = client.post(
        f"/api/workflows/{migration.id}/executions", json={"advance": False}, headers=ALICE
    ).get_json()

    listed = client.get(f"/api/workflows/{migration.id}/executions", headers=ALICE).get_json()

    counts = {item["id"]: item["nodeCount"] for item in listed}
    assert counts == {execution["id"]: 4, pending["id"]: 0}
    assert execution["nodeCount"] == 4


def test_test_run_over_http(client, migration, fake_invoker):
    response = client.post(
        f"/api/workflows/{migration.id}/test", json={"variables": {"connectionId": "replica"}, "limit": 2}, headers=BOB
    )

    assert response.status_code == 200
    body = response.get_json()
    assert [entry["nodeId"] for entry in body["results"]] == ["start", "discover"]
    assert body["results"][0]["output"] == {"triggeredBy": "bob"}
    assert client.get(f"/api/workflows/{migration.id}/executions", headers=ALICE).get_json() == []


def test_test_run_refusals_over_http(client, migration):
    outsider = client.post(f"/api/workflows/{migration.id}/test", json={}, headers={"X-User-Id": "mallory"})
    bad_limit = client.post(f"/api/workflows/{migration.id}/test", json={"limit": "three"}, headers=ALICE)
    bad_variables = client.post(f"/api/workflows/{migration.id}/test", json={"variables": "x"}, headers=ALICE)
    missing = client.post("/api/workflows/999/test", json={}, headers=ALICE)

    assert outsider.status_code == 403
    assert bad_limit.status_code == 400
    assert bad_variables.status_code == 400
    assert missing.status_code == 404
