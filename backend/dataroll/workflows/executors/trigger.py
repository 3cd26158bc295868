"""Trigger executor: the entry point of every walk."""
from __future__ import annotations

from ..definition import NodeKind
from ..results import Completed
from .base import NodeContext, NodeExecutor


class TriggerExecutor(NodeExecutor):
    kind = NodeKind.TRIGGER

    def execute(self, context: NodeContext) -> Completed:
        execution = context.scope.get("execution") or {}
        return Completed({"triggeredBy": execution.get("triggeredBy")})
