"""Audit log model definition."""

from __future__ import annotations

from ..extensions import db
from .base import load_json, utcnow


class AuditLog(db.Model):
    """Append-only record of workflow operations performed by users or the engine."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    resource = db.Column(db.String(64), nullable=False)
    resource_id = db.Column(db.String(64), nullable=True)
    team_id = db.Column(db.String(64), nullable=True)
    user_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def details_data(self) -> dict:
        return load_json(self.details, {})

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<AuditLog {self.action} {self.resource}:{self.resource_id}>"
