"""REST API endpoints for storing, versioning and publishing workflows."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from ..extensions import db
from ..models.workflow import Workflow, WorkflowDefinition
from ..utils.identity import can_access_team, current_user_id, forbidden, require_user
from ..workflows import get_services
from ..workflows.errors import NotFoundError, StateError, ValidationError, WorkflowError
from ..workflows.storage import coerce_content, save_definition
from .responses import error_response, serialize_definition, serialize_workflow

bp = Blueprint("workflows", __name__)


def _is_name_unique(team_id: str, name: str, workflow_id: int | None = None) -> bool:
    """Check whether the workflow name is unique within the team."""

    query = Workflow.query.filter(Workflow.team_id == team_id).filter(
        func.lower(Workflow.name) == name.lower()
    )
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return not db.session.query(query.exists()).scalar()


def _normalize_tags(value: Any) -> tuple[list[str], list[str]]:
    if value is None:
        return [], []
    if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
        return [], ["tags must be a list of strings"]
    return [tag.strip() for tag in value if tag.strip()], []


def _text_field(payload: dict[str, Any], key: str) -> tuple[str | None, str | None]:
    """Return the stripped string at ``key`` and an error when it is not a string."""

    value = payload.get(key)
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, f"{key} must be a string"
    return value.strip(), None


def _load_workflow(workflow_id: int):
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        return None, error_response(NotFoundError("workflow", workflow_id))
    if not can_access_team(workflow.team_id):
        return None, forbidden("not a member of this team")
    return workflow, None


def _save(workflow: Workflow, payload: dict[str, Any]) -> list[str]:
    services = get_services()
    format = payload.get("format") or services.default_format
    content = coerce_content(payload["definition"], format)
    _, warnings = save_definition(
        workflow,
        content,
        format,
        max_bytes=services.max_definition_bytes,
        approval_timeout_bounds=services.approval_timeout_bounds,
    )
    return warnings


def _workflow_response(workflow: Workflow, warnings: list[str] | None = None) -> dict[str, Any]:
    payload = serialize_workflow(workflow)
    if workflow.definition_id is not None:
        definition = db.session.get(WorkflowDefinition, workflow.definition_id)
        if definition is not None:
            payload["definition"] = serialize_definition(definition)
    if warnings is not None:
        payload["warnings"] = warnings
    return payload


@bp.post("/workflows")
@require_user
def create_workflow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    team_id, team_error = _text_field(payload, "teamId")
    name, name_error = _text_field(payload, "name")
    description, description_error = _text_field(payload, "description")

    errors = []
    for key, value, field_error in (("teamId", team_id, team_error), ("name", name, name_error)):
        if field_error:
            errors.append(field_error)
        elif not value:
            errors.append(f"{key} is required")
    if description_error:
        errors.append(description_error)
    tags, tag_errors = _normalize_tags(payload.get("tags"))
    errors.extend(tag_errors)
    if errors:
        return error_response(ValidationError("invalid workflow payload", {"errors": errors}))

    if not can_access_team(team_id):
        return forbidden("not a member of this team")

    if not _is_name_unique(team_id, name):
        return error_response(StateError(f"workflow with name {name!r} already exists"))

    workflow = Workflow(
        team_id=team_id,
        name=name,
        description=description,
        created_by=current_user_id(),
        version=0,
    )
    workflow.tags = tags
    db.session.add(workflow)

    warnings: list[str] = []
    try:
        db.session.flush()
        if payload.get("definition") is not None:
            warnings = _save(workflow, payload)
    except WorkflowError as exc:
        db.session.rollback()
        return error_response(exc)
    db.session.commit()

    get_services().audit.record(
        "workflow.create", "workflow", workflow.id, team_id=team_id, user_id=current_user_id()
    )
    return jsonify(_workflow_response(workflow, warnings)), HTTPStatus.CREATED


@bp.get("/workflows")
@require_user
def list_workflows() -> tuple[object, int]:
    team_id = (request.args.get("teamId") or "").strip()
    if not team_id:
        return error_response(ValidationError("teamId query parameter is required"))
    if not can_access_team(team_id):
        return forbidden("not a member of this team")

    workflows = (
        Workflow.query.filter(Workflow.team_id == team_id).order_by(Workflow.created_at.desc()).all()
    )
    return jsonify([serialize_workflow(workflow) for workflow in workflows]), HTTPStatus.OK


@bp.get("/workflows/<int:workflow_id>")
@require_user
def get_workflow(workflow_id: int) -> tuple[object, int]:
    workflow, error = _load_workflow(workflow_id)
    if error is not None:
        return error
    return jsonify(_workflow_response(workflow)), HTTPStatus.OK


@bp.put("/workflows/<int:workflow_id>")
@require_user
def update_workflow(workflow_id: int) -> tuple[object, int]:
    workflow, error = _load_workflow(workflow_id)
    if error is not None:
        return error
    payload = request.get_json(silent=True, force=True) or {}

    name, name_error = _text_field(payload, "name")
    if name_error:
        return error_response(ValidationError(name_error))
    if name is not None:
        if not name:
            return error_response(ValidationError("name must not be empty"))
        if not _is_name_unique(workflow.team_id, name, workflow_id):
            return error_response(StateError(f"workflow with name {name!r} already exists"))
        workflow.name = name

    if "description" in payload:
        description, description_error = _text_field(payload, "description")
        if description_error:
            return error_response(ValidationError(description_error))
        workflow.description = description

    if "tags" in payload:
        tags, tag_errors = _normalize_tags(payload.get("tags"))
        if tag_errors:
            return error_response(ValidationError("invalid workflow payload", {"errors": tag_errors}))
        workflow.tags = tags

    warnings: list[str] = []
    if payload.get("definition") is not None:
        try:
            warnings = _save(workflow, payload)
        except WorkflowError as exc:
            db.session.rollback()
            return error_response(exc)

    db.session.commit()
    get_services().audit.record(
        "workflow.update",
        "workflow",
        workflow.id,
        team_id=workflow.team_id,
        user_id=current_user_id(),
        details={"version": workflow.version},
    )
    return jsonify(_workflow_response(workflow, warnings)), HTTPStatus.OK


def _set_published(workflow_id: int, published: bool) -> tuple[object, int]:
    workflow, error = _load_workflow(workflow_id)
    if error is not None:
        return error
    if published and workflow.definition_id is None:
        return error_response(StateError("a workflow needs a definition before it can be published"))

    workflow.is_published = published
    db.session.commit()
    get_services().audit.record(
        "workflow.publish" if published else "workflow.unpublish",
        "workflow",
        workflow.id,
        team_id=workflow.team_id,
        user_id=current_user_id(),
    )
    return jsonify(serialize_workflow(workflow)), HTTPStatus.OK


@bp.post("/workflows/<int:workflow_id>/publish")
@require_user
def publish_workflow(workflow_id: int) -> tuple[object, int]:
    return _set_published(workflow_id, True)


@bp.post("/workflows/<int:workflow_id>/unpublish")
@require_user
def unpublish_workflow(workflow_id: int) -> tuple[object, int]:
    return _set_published(workflow_id, False)


@bp.get("/workflows/<int:workflow_id>/definitions")
@require_user
def list_definitions(workflow_id: int) -> tuple[object, int]:
    workflow, error = _load_workflow(workflow_id)
    if error is not None:
        return error
    definitions = (
        WorkflowDefinition.query.filter_by(workflow_id=workflow.id)
        .order_by(WorkflowDefinition.version.desc())
        .all()
    )
    return (
        jsonify([serialize_definition(item, include_content=False) for item in definitions]),
        HTTPStatus.OK,
    )
