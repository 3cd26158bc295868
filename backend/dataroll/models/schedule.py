"""Scheduled resumption model definition."""

from __future__ import annotations

from ..extensions import db
from .base import utcnow


class ScheduledResume(db.Model):
    """Wake-up request for an execution suspended at a delay node."""

    __tablename__ = "scheduled_resumes"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id"), nullable=False, index=True
    )
    wake_at = db.Column(db.DateTime, nullable=False, index=True)
    fired_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
