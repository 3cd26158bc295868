"""Database models for the Dataroll workflow backend."""

from .approval import ApprovalDecision, ApprovalRequest
from .audit import AuditLog
from .execution import Execution, NodeExecution
from .schedule import ScheduledResume
from .team import TeamMembership
from .workflow import Workflow, WorkflowDefinition

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "AuditLog",
    "Execution",
    "NodeExecution",
    "ScheduledResume",
    "TeamMembership",
    "Workflow",
    "WorkflowDefinition",
]
