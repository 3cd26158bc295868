"""Team membership model used for permission checks."""

from __future__ import annotations

from ..extensions import db
from .base import utcnow


class TeamMembership(db.Model):
    """Membership of a user in a team with a role."""

    __tablename__ = "team_memberships"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    role = db.Column(db.Enum("member", "admin", name="team_role"), nullable=False, default="member")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (db.UniqueConstraint("team_id", "user_id", name="uq_team_member"),)
