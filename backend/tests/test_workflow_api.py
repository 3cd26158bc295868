"""Tests for the workflow persistence REST API."""

from __future__ import annotations

import json

import pytest
import yaml

from backend.dataroll.models import AuditLog, WorkflowDefinition

ALICE = {"X-User-Id": "alice"}


@pytest.fixture()
def team(services, member_factory):
    member_factory("alice", role="admin")
    member_factory("bob")
    return "team-1"


def test_requests_without_user_are_rejected(client, services):
    response = client.get("/api/workflows?teamId=team-1")

    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "unauthorized"


def test_workflow_roundtrip(client, team, migration_definition):
    create_response = client.post(
        "/api/workflows",
        json={"teamId": team, "name": "Pipeline", "tags": ["db", " "], "definition": migration_definition},
        headers=ALICE,
    )
    assert create_response.status_code == 201
    created = create_response.get_json()
    assert created["name"] == "Pipeline"
    assert created["version"] == 1
    assert created["tags"] == ["db"]
    assert created["isPublished"] is False
    assert created["createdBy"] == "alice"
    assert created["warnings"] == []
    assert json.loads(created["definition"]["content"])["name"] == "Migrate"

    list_response = client.get(f"/api/workflows?teamId={team}", headers=ALICE)
    assert list_response.status_code == 200
    assert [item["id"] for item in list_response.get_json()] == [created["id"]]

    detail_response = client.get(f"/api/workflows/{created['id']}", headers={"X-User-Id": "bob"})
    assert detail_response.status_code == 200
    assert detail_response.get_json()["definition"]["version"] == 1

    update_response = client.put(
        f"/api/workflows/{created['id']}",
        json={"description": "nightly", "definition": yaml.safe_dump(migration_definition), "format": "yaml"},
        headers=ALICE,
    )
    assert update_response.status_code == 200
    updated = update_response.get_json()
    assert updated["description"] == "nightly"
    assert updated["version"] == 2
    assert updated["definition"]["format"] == "yaml"

    versions = client.get(f"/api/workflows/{created['id']}/definitions", headers=ALICE).get_json()
    assert [item["version"] for item in versions] == [2, 1]
    assert "content" not in versions[0]


def test_create_without_definition_then_publish(client, team, linear):
    created = client.post("/api/workflows", json={"teamId": team, "name": "Draft"}, headers=ALICE).get_json()
    assert created["definitionId"] is None

    refused = client.post(f"/api/workflows/{created['id']}/publish", headers=ALICE)
    assert refused.status_code == 409
    assert refused.get_json()["error"]["code"] == "state_error"

    client.put(f"/api/workflows/{created['id']}", json={"definition": linear()}, headers=ALICE)
    published = client.post(f"/api/workflows/{created['id']}/publish", headers=ALICE)
    assert published.status_code == 200
    assert published.get_json()["isPublished"] is True

    unpublished = client.post(f"/api/workflows/{created['id']}/unpublish", headers=ALICE)
    assert unpublished.get_json()["isPublished"] is False
    assert AuditLog.query.filter_by(action="workflow.publish").count() == 1


def test_names_are_unique_per_team(client, team, member_factory):
    member_factory("alice", team_id="team-2")
    client.post("/api/workflows", json={"teamId": team, "name": "Pipeline"}, headers=ALICE)

    duplicate = client.post("/api/workflows", json={"teamId": team, "name": "pipeline"}, headers=ALICE)
    other_team = client.post("/api/workflows", json={"teamId": "team-2", "name": "Pipeline"}, headers=ALICE)

    assert duplicate.status_code == 409
    assert other_team.status_code == 201


def test_create_validates_payload(client, team):
    response = client.post("/api/workflows", json={"tags": "db"}, headers=ALICE)

    assert response.status_code == 400
    assert response.get_json()["error"]["details"]["errors"] == [
        "teamId is required",
        "name is required",
        "tags must be a list of strings",
    ]


def test_invalid_definitions_are_not_saved(client, team, linear):
    broken = linear()
    broken["edges"].append({"source": "start", "target": "ghost"})

    response = client.post(
        "/api/workflows", json={"teamId": team, "name": "Broken", "definition": broken}, headers=ALICE
    )

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "parse_error"
    assert WorkflowDefinition.query.count() == 0


def test_approval_timeout_bounds_apply_on_save(client, team, linear):
    definition = linear(
        {"id": "gate", "type": "approval", "label": "Gate", "data": {"approvers": ["bob"], "timeout": 5}}
    )

    response = client.post(
        "/api/workflows", json={"teamId": team, "name": "Gate", "definition": definition}, headers=ALICE
    )

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "validation_error"


def test_save_reports_template_warnings(client, team, linear):
    definition = linear(
        {
            "id": "tests",
            "type": "action",
            "label": "Tests",
            "data": {"action": "run_tests", "connectionId": "{{ discovered.connection }}"},
        }
    )

    response = client.post(
        "/api/workflows", json={"teamId": team, "name": "Warn", "definition": definition}, headers=ALICE
    )

    assert response.status_code == 201
    assert len(response.get_json()["warnings"]) == 1


def test_non_members_are_forbidden(client, team):
    created = client.post("/api/workflows", json={"teamId": team, "name": "Secret"}, headers=ALICE).get_json()
    outsider = {"X-User-Id": "mallory"}

    assert client.get(f"/api/workflows/{created['id']}", headers=outsider).status_code == 403
    assert client.get(f"/api/workflows?teamId={team}", headers=outsider).status_code == 403
    assert client.post("/api/workflows", json={"teamId": team, "name": "X"}, headers=outsider).status_code == 403
    assert client.get("/api/workflows/999", headers=outsider).status_code == 404


def test_each_request_uses_its_own_caller(client, team):
    created = client.post("/api/workflows", json={"teamId": team, "name": "Owned"}, headers=ALICE).get_json()

    assert client.get(f"/api/workflows/{created['id']}", headers=ALICE).status_code == 200
    assert client.get(f"/api/workflows/{created['id']}", headers={"X-User-Id": "mallory"}).status_code == 403
    assert client.get(f"/api/workflows/{created['id']}").status_code == 401


def test_malformed_condition_is_not_saved(client, team, linear):
    definition = linear({"id": "check", "type": "condition", "label": "?", "data": {"condition": "found && ???"}})
    definition["nodes"].append({"id": "done", "type": "delay", "label": "Done", "data": {"duration": 5}})
    definition["edges"] += [
        {"source": "check", "target": "done", "label": "true"},
        {"source": "check", "target": "done", "label": "false"},
    ]

    response = client.post(
        "/api/workflows", json={"teamId": team, "name": "Bad condition", "definition": definition}, headers=ALICE
    )

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "validation_error"
    assert WorkflowDefinition.query.count() == 0


def test_non_string_fields_are_rejected(client, team):
    created = client.post("/api/workflows", json={"teamId": team, "name": "Typed"}, headers=ALICE).get_json()

    renamed = client.put(f"/api/workflows/{created['id']}", json={"name": 42}, headers=ALICE)
    described = client.put(f"/api/workflows/{created['id']}", json={"description": ["x"]}, headers=ALICE)
    bad_create = client.post("/api/workflows", json={"teamId": 7, "name": {"x": 1}}, headers=ALICE)

    assert renamed.status_code == 400
    assert renamed.get_json()["error"]["message"] == "name must be a string"
    assert described.status_code == 400
    assert bad_create.status_code == 400
    assert bad_create.get_json()["error"]["details"]["errors"] == ["teamId must be a string", "name must be a string"]
    assert client.get(f"/api/workflows/{created['id']}", headers=ALICE).get_json()["name"] == "Typed"
