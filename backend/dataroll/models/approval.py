"""Approval request model definitions."""

from __future__ import annotations

from ..extensions import db
from .base import load_json, utcnow

APPROVAL_STATUSES = ("PENDING", "APPROVED", "REJECTED", "EXPIRED")
DECISIONS = ("APPROVED", "REJECTED")


class ApprovalRequest(db.Model):
    """Approval gate opened by an execution suspended at an approval node."""

    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id"), nullable=False, index=True
    )
    node_id = db.Column(db.String(128), nullable=False)
    team_id = db.Column(db.String(64), nullable=False)
    approvers_json = db.Column(db.Text, nullable=False, default="[]")
    require_all = db.Column(db.Boolean, nullable=False, default=True)
    allow_veto = db.Column(db.Boolean, nullable=False, default=True)
    timeout_seconds = db.Column(db.Integer, nullable=False)
    message = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.Enum(*APPROVAL_STATUSES, name="approval_status"),
        nullable=False,
        default="PENDING",
        index=True,
    )
    # Bumped on every write so concurrent deciders can compare-and-swap.
    version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime, nullable=True)

    decisions = db.relationship(
        "ApprovalDecision",
        back_populates="request",
        order_by="ApprovalDecision.id",
        cascade="all, delete-orphan",
    )

    @property
    def approvers(self) -> list[str]:
        return load_json(self.approvers_json, [])

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<ApprovalRequest {self.id} {self.status}>"


class ApprovalDecision(db.Model):
    """A single approver's decision on an approval request."""

    __tablename__ = "approval_decisions"

    id = db.Column(db.Integer, primary_key=True)
    approval_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id"), nullable=False, index=True
    )
    approver_id = db.Column(db.String(64), nullable=False)
    decision = db.Column(db.Enum(*DECISIONS, name="approval_decision"), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    request = db.relationship("ApprovalRequest", back_populates="decisions")

    __table_args__ = (
        db.UniqueConstraint("approval_id", "approver_id", name="uq_approval_decision"),
    )
