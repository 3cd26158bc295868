"""REST API endpoints for triggering and driving workflow executions."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from ..extensions import db, limiter
from ..models.execution import EXECUTION_STATUSES, Execution, NodeExecution
from ..models.workflow import Workflow
from ..utils.identity import can_access_team, current_user_id, forbidden, require_user
from ..workflows import get_services
from ..workflows.engine import TEST_RUN_NODE_LIMIT
from ..workflows.errors import NotFoundError, StateError, ValidationError
from .responses import error_response, execution_result_response, serialize_execution

bp = Blueprint("executions", __name__)


def _trigger_limit() -> str:
    return current_app.config.get("TRIGGER_RATE_LIMIT", "30 per minute")


def _load_execution(execution_id: int):
    execution = db.session.get(Execution, execution_id)
    if execution is None:
        return None, error_response(NotFoundError("execution", execution_id))
    if not can_access_team(execution.team_id):
        return None, forbidden("not a member of this team")
    return execution, None


@bp.post("/workflows/<int:workflow_id>/executions")
@require_user
@limiter.limit(_trigger_limit)
def trigger_execution(workflow_id: int) -> tuple[object, int]:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        return error_response(NotFoundError("workflow", workflow_id))
    if not can_access_team(workflow.team_id):
        return forbidden("not a member of this team")
    if workflow.trigger != "manual":
        return error_response(
            StateError(f"workflow {workflow_id} uses a {workflow.trigger} trigger and cannot be run manually")
        )

    payload = request.get_json(silent=True, force=True) or {}
    variables = payload.get("variables") or {}
    if not isinstance(variables, dict):
        return error_response(ValidationError("variables must be an object"))

    engine = get_services().engine
    created = engine.create(workflow_id, variables, triggered_by=current_user_id())
    if not created.ok:
        return error_response(created.error)

    if payload.get("advance", True) is False:
        return jsonify(serialize_execution(created.value, include_nodes=True)), HTTPStatus.CREATED
    return execution_result_response(engine.advance(created.value.id), HTTPStatus.CREATED)


@bp.get("/workflows/<int:workflow_id>/executions")
@require_user
def list_executions(workflow_id: int) -> tuple[object, int]:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        return error_response(NotFoundError("workflow", workflow_id))
    if not can_access_team(workflow.team_id):
        return forbidden("not a member of this team")

    query = Execution.query.filter(Execution.workflow_id == workflow_id)
    status = request.args.get("status")
    if status:
        if status not in EXECUTION_STATUSES:
            return error_response(ValidationError(f"unknown status {status!r}"))
        query = query.filter(Execution.status == status)

    limit = request.args.get("limit", type=int) or 50
    executions = query.order_by(Execution.id.desc()).limit(min(limit, 200)).all()
    counts = dict(
        db.session.query(NodeExecution.execution_id, func.count(NodeExecution.id))
        .filter(NodeExecution.execution_id.in_([item.id for item in executions]))
        .group_by(NodeExecution.execution_id)
        .all()
    )
    return (
        jsonify([serialize_execution(item, node_count=counts.get(item.id, 0)) for item in executions]),
        HTTPStatus.OK,
    )


@bp.post("/workflows/<int:workflow_id>/test")
@require_user
@limiter.limit(_trigger_limit)
def test_run_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        return error_response(NotFoundError("workflow", workflow_id))
    if not can_access_team(workflow.team_id):
        return forbidden("not a member of this team")

    payload = request.get_json(silent=True, force=True) or {}
    variables = payload.get("variables") or {}
    if not isinstance(variables, dict):
        return error_response(ValidationError("variables must be an object"))
    limit = payload.get("limit", TEST_RUN_NODE_LIMIT)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return error_response(ValidationError("limit must be a positive integer"))

    result = get_services().engine.test_run(
        workflow_id, variables, triggered_by=current_user_id(), limit=limit
    )
    if not result.ok:
        return error_response(result.error)
    return jsonify(result.value), HTTPStatus.OK


@bp.get("/executions/<int:execution_id>")
@require_user
def get_execution(execution_id: int) -> tuple[object, int]:
    execution, error = _load_execution(execution_id)
    if error is not None:
        return error
    return jsonify(serialize_execution(execution, include_nodes=True)), HTTPStatus.OK


@bp.post("/executions/<int:execution_id>/advance")
@require_user
def advance_execution(execution_id: int) -> tuple[object, int]:
    _, error = _load_execution(execution_id)
    if error is not None:
        return error
    return execution_result_response(get_services().engine.advance(execution_id))


@bp.post("/executions/<int:execution_id>/resume")
@require_user
def resume_execution(execution_id: int) -> tuple[object, int]:
    _, error = _load_execution(execution_id)
    if error is not None:
        return error
    return execution_result_response(get_services().engine.resume(execution_id))


@bp.post("/executions/<int:execution_id>/cancel")
@require_user
def cancel_execution(execution_id: int) -> tuple[object, int]:
    _, error = _load_execution(execution_id)
    if error is not None:
        return error
    return execution_result_response(
        get_services().engine.cancel(execution_id, cancelled_by=current_user_id())
    )
