"""Workflow and definition model definitions."""

from __future__ import annotations

from ..extensions import db
from .base import dump_json, load_json, utcnow

TRIGGER_KINDS = ("manual", "scheduled", "webhook", "event")


class Workflow(db.Model):
    """A team owned workflow pointing at its current definition."""

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    trigger = db.Column(
        db.Enum(*TRIGGER_KINDS, name="workflow_trigger"), nullable=False, default="manual"
    )
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    # Points at workflow_definitions.id of the current version.
    definition_id = db.Column(db.Integer, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=0)
    tags_json = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def tags(self) -> list[str]:
        return load_json(self.tags_json, [])

    @tags.setter
    def tags(self, value: list[str]) -> None:
        self.tags_json = dump_json(list(value or []))

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Workflow {self.name!r} v{self.version}>"


class WorkflowDefinition(db.Model):
    """Immutable snapshot of a workflow graph; every save adds a new row."""

    __tablename__ = "workflow_definitions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("workflows.id"), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)
    format = db.Column(db.String(8), nullable=False, default="json")
    nodes = db.Column(db.Text, nullable=False, default="[]")
    edges = db.Column(db.Text, nullable=False, default="[]")
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (db.UniqueConstraint("workflow_id", "version", name="uq_definition_version"),)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowDefinition {self.workflow_id}@{self.version}>"
