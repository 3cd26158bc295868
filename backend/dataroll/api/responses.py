"""JSON shapes shared by the workflow blueprints."""

from __future__ import annotations

from datetime import datetime
from http import HTTPStatus
from typing import Any

from flask import jsonify

from ..models.approval import ApprovalRequest
from ..models.execution import Execution, NodeExecution
from ..models.workflow import Workflow, WorkflowDefinition
from ..workflows.errors import WorkflowError
from ..workflows.results import OperationResult


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value is not None else None


def error_response(error: WorkflowError):
    return jsonify({"error": error.to_dict()}), error.status


def serialize_workflow(workflow: Workflow) -> dict[str, Any]:
    return {
        "id": workflow.id,
        "teamId": workflow.team_id,
        "name": workflow.name,
        "description": workflow.description,
        "trigger": workflow.trigger,
        "isPublished": workflow.is_published,
        "definitionId": workflow.definition_id,
        "version": workflow.version,
        "tags": workflow.tags,
        "createdBy": workflow.created_by,
        "createdAt": _timestamp(workflow.created_at),
        "updatedAt": _timestamp(workflow.updated_at),
    }


def serialize_definition(definition: WorkflowDefinition, *, include_content: bool = True) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": definition.id,
        "workflowId": definition.workflow_id,
        "version": definition.version,
        "format": definition.format,
        "createdAt": _timestamp(definition.created_at),
    }
    if include_content:
        payload["content"] = definition.content
    return payload


def serialize_node_execution(node_execution: NodeExecution) -> dict[str, Any]:
    return {
        "id": node_execution.id,
        "nodeId": node_execution.node_id,
        "nodeType": node_execution.node_type,
        "label": node_execution.node_label,
        "status": node_execution.status,
        "input": node_execution.input_data,
        "output": node_execution.output_data,
        "error": node_execution.error_data,
        "startedAt": _timestamp(node_execution.started_at),
        "completedAt": _timestamp(node_execution.completed_at),
    }


def serialize_execution(
    execution: Execution, *, include_nodes: bool = False, node_count: int | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": execution.id,
        "workflowId": execution.workflow_id,
        "definitionId": execution.definition_id,
        "teamId": execution.team_id,
        "status": execution.status,
        "currentNodeId": execution.current_node_id,
        "context": execution.context_data,
        "output": execution.output_data,
        "error": execution.error_data,
        "triggeredBy": execution.triggered_by,
        "triggeredAt": _timestamp(execution.triggered_at),
        "startedAt": _timestamp(execution.started_at),
        "completedAt": _timestamp(execution.completed_at),
    }
    if include_nodes:
        payload["nodes"] = [serialize_node_execution(item) for item in execution.node_executions]
        node_count = len(payload["nodes"])
    payload["nodeCount"] = node_count if node_count is not None else len(execution.node_executions)
    return payload


def serialize_approval(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "executionId": request.execution_id,
        "nodeId": request.node_id,
        "teamId": request.team_id,
        "approvers": request.approvers,
        "requireAll": request.require_all,
        "allowVeto": request.allow_veto,
        "timeoutSeconds": request.timeout_seconds,
        "message": request.message,
        "status": request.status,
        "decisions": [
            {
                "approverId": decision.approver_id,
                "decision": decision.decision,
                "comment": decision.comment,
                "decidedAt": _timestamp(decision.decided_at),
            }
            for decision in request.decisions
        ],
        "createdAt": _timestamp(request.created_at),
        "resolvedAt": _timestamp(request.resolved_at),
    }


def execution_result_response(result: OperationResult[Execution], status: int = HTTPStatus.OK):
    """Map an engine result to a response.

    A failed result that still carries the execution (a branch with no
    matching edge) returns the execution alongside the error.
    """

    if result.ok:
        return jsonify(serialize_execution(result.value, include_nodes=True)), status
    body: dict[str, Any] = {"error": result.error.to_dict()}
    if result.value is not None:
        body["execution"] = serialize_execution(result.value, include_nodes=True)
    return jsonify(body), result.error.status
