"""REST API endpoints for pending approvals and approval decisions."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..utils.identity import can_access_team, current_user_id, forbidden, require_user
from ..workflows import get_services
from ..workflows.errors import NotFoundError
from .responses import error_response, serialize_approval

bp = Blueprint("approvals", __name__)


@bp.get("/approvals")
@require_user
def list_pending_approvals() -> tuple[object, int]:
    approver_id = (request.args.get("approverId") or "").strip() or current_user_id()
    if approver_id != current_user_id():
        return forbidden("pending approvals can only be listed for yourself")

    team_id = (request.args.get("teamId") or "").strip() or None
    pending = get_services().coordinator.pending_for(approver_id, team_id)
    return jsonify([serialize_approval(item) for item in pending]), HTTPStatus.OK


@bp.get("/approvals/<int:approval_id>")
@require_user
def get_approval(approval_id: int) -> tuple[object, int]:
    approval = get_services().coordinator.get(approval_id)
    if approval is None:
        return error_response(NotFoundError("approval", approval_id))
    if not can_access_team(approval.team_id):
        return forbidden("not a member of this team")
    return jsonify(serialize_approval(approval)), HTTPStatus.OK


@bp.post("/approvals/<int:approval_id>/decisions")
@require_user
def submit_decision(approval_id: int) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    result = get_services().coordinator.submit(
        approval_id,
        current_user_id(),
        payload.get("decision") or "",
        payload.get("comment"),
    )
    if not result.ok:
        return error_response(result.error)
    return jsonify(serialize_approval(result.value)), HTTPStatus.OK
