"""Seed the database with a demo team and the example migration workflow."""
from __future__ import annotations

import json
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.dataroll import create_app
from backend.dataroll.extensions import db
from backend.dataroll.models.team import TeamMembership
from backend.dataroll.models.workflow import Workflow, WorkflowDefinition
from backend.dataroll.workflows.storage import save_definition

DEMO_TEAM = "demo-team"
DEMO_MEMBERS = (("alice", "admin"), ("bob", "member"))
EXAMPLE_WORKFLOW_NAME = "Database Migration"


def example_definition() -> dict[str, object]:
    """Discover migrations, then either ask for approval and run them or report that none exist."""

    return {
        "version": "1.0",
        "name": EXAMPLE_WORKFLOW_NAME,
        "description": "Discover pending migrations and apply them after approval",
        "trigger": "manual",
        "variables": [
            {"name": "connectionId", "type": "string", "defaultValue": "primary-db", "isSecret": False},
            {"name": "approver", "type": "string", "defaultValue": "alice", "isSecret": False},
        ],
        "nodes": [
            {"id": "start", "type": "trigger", "label": "Start", "data": {}},
            {
                "id": "discover",
                "type": "action",
                "label": "Discover migrations",
                "data": {"action": "discover_migrations", "connectionId": "{{ connectionId }}"},
            },
            {
                "id": "check",
                "type": "condition",
                "label": "Migrations found?",
                "data": {"condition": "migrationsFound == true"},
            },
            {
                "id": "approve",
                "type": "approval",
                "label": "Approve migrations",
                "data": {"approvers": ["{{ approver }}"], "timeout": 3600, "requireAll": True},
            },
            {
                "id": "execute",
                "type": "action",
                "label": "Execute migrations",
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


def _ensure_members() -> int:
    created = 0
    for user_id, role in DEMO_MEMBERS:
        membership = TeamMembership.query.filter_by(team_id=DEMO_TEAM, user_id=user_id).first()
        if membership is None:
            db.session.add(TeamMembership(team_id=DEMO_TEAM, user_id=user_id, role=role))
            created += 1
        elif membership.role != role:
            membership.role = role
    return created


def _ensure_example_workflow(content: str) -> tuple[bool, bool]:
    workflow = Workflow.query.filter_by(team_id=DEMO_TEAM, name=EXAMPLE_WORKFLOW_NAME).first()
    created = False
    updated = False

    if workflow is None:
        workflow = Workflow(team_id=DEMO_TEAM, name=EXAMPLE_WORKFLOW_NAME, created_by="seed", version=0)
        workflow.tags = ["migrations", "example"]
        db.session.add(workflow)
        db.session.flush()
        created = True

    current = (
        db.session.get(WorkflowDefinition, workflow.definition_id)
        if workflow.definition_id is not None
        else None
    )
    if current is None or current.content != content:
        save_definition(workflow, content, "json")
        updated = not created
    workflow.is_published = True
    return created, updated


def main() -> None:
    app = create_app()
    with app.app_context():
        members_created = _ensure_members()
        content = json.dumps(example_definition(), indent=2)
        created, updated = _ensure_example_workflow(content)
        db.session.commit()

        print(
            "Seed completed",
            f"members created={members_created}",
            f"workflows created={int(created)}",
            f"workflows updated={int(updated)}",
        )


if __name__ == "__main__":
    main()
