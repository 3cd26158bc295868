"""Execution and node execution model definitions."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..extensions import db
from .base import dump_json, load_json, utcnow

EXECUTION_STATUSES = (
    "pending",
    "running",
    "awaiting_approval",
    "success",
    "failed",
    "cancelled",
)
TERMINAL_STATUSES = frozenset({"success", "failed", "cancelled"})
NODE_STATUSES = ("pending", "running", "success", "failed")


class Execution(db.Model):
    """One run of a workflow against the definition it was created with."""

    __tablename__ = "workflow_executions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("workflows.id"), nullable=False, index=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id"), nullable=False
    )
    team_id = db.Column(db.String(64), nullable=False)
    status = db.Column(
        db.Enum(*EXECUTION_STATUSES, name="execution_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    context = db.Column(db.Text, nullable=False, default="{}")
    secrets = db.Column(db.Text, nullable=True)
    output = db.Column(db.Text, nullable=True)
    current_node_id = db.Column(db.String(128), nullable=True)
    resume_token = db.Column(db.String(255), nullable=True)
    error = db.Column(db.Text, nullable=True)
    triggered_by = db.Column(db.String(64), nullable=True)
    triggered_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    node_executions = db.relationship(
        "NodeExecution",
        back_populates="execution",
        order_by="NodeExecution.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def context_data(self) -> dict[str, Any]:
        return load_json(self.context, {})

    @property
    def secret_data(self) -> dict[str, Any]:
        return load_json(self.secrets, {})

    @property
    def output_data(self) -> Any:
        return load_json(self.output)

    @property
    def error_data(self) -> dict[str, Any] | None:
        return load_json(self.error)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Execution {self.id} {self.status}>"


class NodeExecution(db.Model):
    """Audit record of one node being processed inside an execution."""

    __tablename__ = "node_executions"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id"), nullable=False, index=True
    )
    node_id = db.Column(db.String(128), nullable=False)
    node_type = db.Column(db.String(32), nullable=False)
    node_label = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.Enum(*NODE_STATUSES, name="node_execution_status"), nullable=False, default="running"
    )
    input = db.Column(db.Text, nullable=False, default="{}")
    output = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    execution = db.relationship("Execution", back_populates="node_executions")

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def input_data(self) -> dict[str, Any]:
        return load_json(self.input, {})

    @property
    def output_data(self) -> Any:
        return load_json(self.output)

    @property
    def error_data(self) -> dict[str, Any] | None:
        return load_json(self.error)

    def finalize(
        self,
        status: str,
        *,
        output: Any = None,
        error: dict[str, Any] | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Close the record; a finalized node execution is never touched again."""

        if not self.is_open:
            raise ValueError(f"node execution {self.id} is already finalized")
        self.status = status
        self.output = dump_json(output)
        self.error = dump_json(error)
        self.completed_at = completed_at or utcnow()

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<NodeExecution {self.node_id} {self.status}>"
