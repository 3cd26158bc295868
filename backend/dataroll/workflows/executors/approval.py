"""Approval executor: opens an approval gate and reads its outcome on re-entry."""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..definition import NodeKind
from ..errors import ApprovalError, ValidationError
from ..nodes import ApprovalConfig
from ..results import SUSPEND_APPROVAL, Completed, Failed, Suspended
from .base import NodeContext, NodeExecutor

if TYPE_CHECKING:
    from ..approvals import ApprovalCoordinator


class ApprovalExecutor(NodeExecutor):
    kind = NodeKind.APPROVAL

    def __init__(self, coordinator: ApprovalCoordinator) -> None:
        self.coordinator = coordinator

    def execute(self, context: NodeContext) -> Completed | Failed | Suspended:
        if context.is_reentry:
            return self._reenter(context)

        config: ApprovalConfig = context.config  # type: ignore[assignment]
        approvers = config.approver_list()
        if config.skip_if_creator and context.triggered_by:
            approvers = [approver for approver in approvers if approver != context.triggered_by]
        if not approvers:
            return Failed(
                ValidationError(
                    f"approval node {context.node.id} has no eligible approvers",
                    {"node": context.node.id},
                )
            )

        request = self.coordinator.open_request(
            execution_id=context.execution_id,
            node_id=context.node.id,
            team_id=context.team_id,
            approvers=approvers,
            require_all=config.require_all,
            allow_veto=config.allow_veto,
            timeout_seconds=config.timeout,
            message=config.message,
        )
        context.logger.info(
            "execution %s: waiting for approval %s from %s",
            context.execution_id,
            request.id,
            context.mask(", ".join(approvers)),
        )
        return Suspended(SUSPEND_APPROVAL, str(request.id), output={"approvalId": request.id})

    def _reenter(self, context: NodeContext) -> Completed | Failed | Suspended:
        request = self.coordinator.get(int(context.resume_token))
        if request is None:
            return Failed(
                ApprovalError(
                    f"approval {context.resume_token} no longer exists", ApprovalError.RESOLVED
                )
            )

        summary = {
            "approvalId": request.id,
            "status": request.status,
            "decisions": [
                {
                    "approverId": decision.approver_id,
                    "decision": decision.decision,
                    "comment": decision.comment,
                }
                for decision in request.decisions
            ],
        }
        if request.status == "APPROVED":
            return Completed(summary)
        if request.status == "REJECTED":
            return Failed(
                ApprovalError(f"approval {request.id} was rejected", ApprovalError.REJECTED, summary)
            )
        if request.status == "EXPIRED":
            return Failed(ApprovalError("approval timed out", ApprovalError.EXPIRED, summary))
        return Suspended(SUSPEND_APPROVAL, str(request.id), output={"approvalId": request.id})
