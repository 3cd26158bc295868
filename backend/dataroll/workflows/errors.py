"""Error taxonomy shared by the definition model, engine and approval coordinator."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any


class WorkflowError(Exception):
    """Base class for all workflow failures surfaced to callers."""

    code = "workflow_error"
    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowError:
        return cls(
            str(payload.get("message") or "unknown error"),
            payload.get("details"),
            code=payload.get("code"),
        )


class ParseError(WorkflowError):
    """Definition text is malformed or structurally invalid."""

    code = "parse_error"
    status = HTTPStatus.BAD_REQUEST


class GraphError(WorkflowError):
    """Graph is structurally inconsistent (dangling edge, missing branch, ...)."""

    code = "graph_error"
    status = HTTPStatus.BAD_REQUEST


class ValidationError(WorkflowError):
    """A node config does not match the schema for its kind."""

    code = "validation_error"
    status = HTTPStatus.BAD_REQUEST


class ExecutorError(WorkflowError):
    """An external action or notification call failed."""

    code = "executor_error"
    status = HTTPStatus.BAD_GATEWAY


class ApprovalError(WorkflowError):
    """An approval decision was refused."""

    code = "approval_error"
    status = HTTPStatus.CONFLICT

    FORBIDDEN = "forbidden"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"

    def __init__(self, message: str, reason: str, details: Any = None) -> None:
        super().__init__(message, details)
        self.reason = reason
        if reason == self.FORBIDDEN:
            self.status = HTTPStatus.FORBIDDEN

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class ConcurrencyError(WorkflowError):
    """Another invocation changed the record first; re-read and retry."""

    code = "concurrency_error"
    status = HTTPStatus.CONFLICT


class StateError(WorkflowError):
    """Operation is not valid for the current status."""

    code = "state_error"
    status = HTTPStatus.CONFLICT


class NotFoundError(WorkflowError):
    code = "not_found"
    status = HTTPStatus.NOT_FOUND

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(f"{resource} {identifier} not found", {"resource": resource, "id": identifier})
