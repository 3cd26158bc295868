"""Approval coordinator: multi-approver gates with quorum and veto policy."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.approval import DECISIONS, ApprovalDecision, ApprovalRequest
from ..models.base import dump_json, utcnow
from ..models.execution import Execution
from .collaborators import AuditTrail, PermissionChecker
from .errors import (
    ApprovalError,
    ConcurrencyError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from .nodes import TEAM_ADMIN
from .results import OperationResult

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
EXPIRED = "EXPIRED"


def is_overdue(request: ApprovalRequest, now: datetime) -> bool:
    return request.created_at + timedelta(seconds=request.timeout_seconds) <= now


class ApprovalCoordinator:
    """Records decisions and resolves approval requests.

    Every status change is a compare-and-swap on ``version`` so concurrent
    deciders cannot both resolve the same request. Once a request resolves,
    ``on_resolved`` is called with the execution id; the service container
    points it at ``ExecutionEngine.resume``.
    """

    def __init__(
        self,
        permissions: PermissionChecker,
        audit: AuditTrail,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: Any = None,
    ) -> None:
        self.permissions = permissions
        self.audit = audit
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.on_resolved: Callable[[int], Any] | None = None

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get(self, approval_id: int) -> ApprovalRequest | None:
        return db.session.get(ApprovalRequest, approval_id)

    def is_eligible(self, request: ApprovalRequest, approver_id: str) -> bool:
        approvers = request.approvers
        if approver_id in approvers:
            return True
        return TEAM_ADMIN in approvers and self.permissions.is_team_admin(approver_id, request.team_id)

    def pending_for(self, approver_id: str, team_id: str | None = None) -> list[ApprovalRequest]:
        """Pending requests the approver may still decide on."""

        query = (
            ApprovalRequest.query.join(Execution, Execution.id == ApprovalRequest.execution_id)
            .filter(ApprovalRequest.status == PENDING)
            .filter(Execution.status == "awaiting_approval")
        )
        if team_id is not None:
            query = query.filter(ApprovalRequest.team_id == team_id)

        found = []
        for request in query.order_by(ApprovalRequest.created_at.asc()).all():
            if not self.is_eligible(request, approver_id):
                continue
            if any(decision.approver_id == approver_id for decision in request.decisions):
                continue
            found.append(request)
        return found

    # ------------------------------------------------------------------
    # engine side
    # ------------------------------------------------------------------

    def open_request(
        self,
        *,
        execution_id: int,
        node_id: str,
        team_id: str,
        approvers: Iterable[str],
        require_all: bool,
        allow_veto: bool,
        timeout_seconds: int,
        message: str | None = None,
    ) -> ApprovalRequest:
        """Stage a new request in the current transaction; the engine commits it."""

        request = ApprovalRequest(
            execution_id=execution_id,
            node_id=node_id,
            team_id=team_id,
            approvers_json=dump_json(list(approvers)),
            require_all=require_all,
            allow_veto=allow_veto,
            timeout_seconds=timeout_seconds,
            message=message,
            status=PENDING,
            version=0,
            created_at=self.clock(),
        )
        db.session.add(request)
        db.session.flush()
        return request

    # ------------------------------------------------------------------
    # decisions
    # ------------------------------------------------------------------

    def submit(
        self, approval_id: int, approver_id: str, decision: str, comment: str | None = None
    ) -> OperationResult[ApprovalRequest]:
        try:
            return OperationResult.success(self._submit(approval_id, approver_id, decision, comment))
        except WorkflowError as exc:
            db.session.rollback()
            self.logger.warning("approval %s: decision by %s refused: %s", approval_id, approver_id, exc.message)
            return OperationResult.failure(exc)
        except Exception:
            db.session.rollback()
            self.logger.exception("approval %s: decision by %s failed unexpectedly", approval_id, approver_id)
            return OperationResult.failure(
                WorkflowError("approval decision failed unexpectedly", code="internal_error")
            )

    def _submit(
        self, approval_id: int, approver_id: str, decision: str, comment: str | None
    ) -> ApprovalRequest:
        decision = (decision or "").strip().upper()
        if decision not in DECISIONS:
            raise ValidationError(f"decision must be one of {', '.join(DECISIONS)}")
        if not approver_id:
            raise ApprovalError("an approver id is required", ApprovalError.FORBIDDEN)

        request = self.get(approval_id)
        if request is None:
            raise NotFoundError("approval", approval_id)

        if request.status == EXPIRED:
            raise ApprovalError(f"approval {approval_id} has expired", ApprovalError.EXPIRED)
        if request.status != PENDING:
            raise ApprovalError(
                f"approval {approval_id} is already {request.status.lower()}", ApprovalError.RESOLVED
            )

        execution = db.session.get(Execution, request.execution_id)
        if execution is None or execution.is_terminal:
            raise ApprovalError(
                f"execution for approval {approval_id} is no longer waiting", ApprovalError.RESOLVED
            )

        now = self.clock()
        if is_overdue(request, now):
            self._expire(request, now)
            raise ApprovalError(f"approval {approval_id} has expired", ApprovalError.EXPIRED)

        if not self.is_eligible(request, approver_id):
            raise ApprovalError(
                f"{approver_id} is not an approver for approval {approval_id}", ApprovalError.FORBIDDEN
            )
        if any(existing.approver_id == approver_id for existing in request.decisions):
            raise ApprovalError(
                f"{approver_id} already decided on approval {approval_id}", ApprovalError.DUPLICATE
            )

        decisions = {existing.approver_id: existing.decision for existing in request.decisions}
        decisions[approver_id] = decision
        outcome = self._outcome(request, decisions)

        try:
            db.session.add(
                ApprovalDecision(
                    approval_id=request.id,
                    approver_id=approver_id,
                    decision=decision,
                    comment=comment,
                    decided_at=now,
                )
            )
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ApprovalError(
                f"{approver_id} already decided on approval {approval_id}", ApprovalError.DUPLICATE
            ) from None

        values: dict[str, Any] = {"version": request.version + 1}
        if outcome is not None:
            values.update(status=outcome, resolved_at=now)
        self._swap(request, **values)
        db.session.commit()

        self.logger.info(
            "approval %s: %s recorded %s (status %s)",
            request.id,
            approver_id,
            decision,
            outcome or PENDING,
        )
        self.audit.record(
            "approval.decision",
            "approval",
            request.id,
            team_id=request.team_id,
            user_id=approver_id,
            details={"decision": decision, "status": outcome or PENDING},
        )
        if outcome is not None:
            self._notify(request.execution_id)
        return request

    def _outcome(self, request: ApprovalRequest, decisions: dict[str, str]) -> str | None:
        """Fold the decisions collected so far into a resolution, if any."""

        approvers = request.approvers
        explicit = [approver for approver in approvers if approver != TEAM_ADMIN]
        admin_slot = TEAM_ADMIN in approvers
        approvals = {approver for approver, decision in decisions.items() if decision == APPROVED}
        rejections = {approver for approver, decision in decisions.items() if decision == REJECTED}

        if request.require_all:
            if rejections:
                return REJECTED
            explicit_done = all(approver in approvals for approver in explicit)
            admin_done = not admin_slot or any(
                self.permissions.is_team_admin(approver, request.team_id) for approver in approvals
            )
            return APPROVED if explicit_done and admin_done else None

        if approvals:
            return APPROVED
        if rejections and request.allow_veto:
            return REJECTED
        if not admin_slot and explicit and all(approver in rejections for approver in explicit):
            return REJECTED
        return None

    def _swap(self, request: ApprovalRequest, **values: Any) -> None:
        statement = (
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request.id,
                ApprovalRequest.version == request.version,
                ApprovalRequest.status == PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(statement).rowcount != 1:
            db.session.rollback()
            raise ConcurrencyError(f"approval {request.id} was changed concurrently; re-read and retry")
        db.session.expire(request)

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------

    def expire_overdue(self, now: datetime | None = None) -> list[int]:
        """Expire every pending request past its timeout; returns the expired ids."""

        now = now or self.clock()
        expired = []
        for request in ApprovalRequest.query.filter_by(status=PENDING).order_by(ApprovalRequest.id).all():
            if not is_overdue(request, now):
                continue
            try:
                self._expire(request, now)
            except ConcurrencyError as exc:
                self.logger.info("approval %s: %s", request.id, exc.message)
                continue
            expired.append(request.id)
        return expired

    def _expire(self, request: ApprovalRequest, now: datetime) -> None:
        self._swap(request, status=EXPIRED, resolved_at=now, version=request.version + 1)
        db.session.commit()
        self.logger.info("approval %s expired after %s seconds", request.id, request.timeout_seconds)
        self.audit.record(
            "approval.expired",
            "approval",
            request.id,
            team_id=request.team_id,
            details={"timeoutSeconds": request.timeout_seconds},
        )
        self._notify(request.execution_id)

    def _notify(self, execution_id: int) -> None:
        if self.on_resolved is None:
            return
        result = self.on_resolved(execution_id)
        error = getattr(result, "error", None)
        if error is not None:
            self.logger.warning("execution %s could not be resumed: %s", execution_id, error.message)
