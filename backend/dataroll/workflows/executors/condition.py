"""Condition executor: picks the outgoing branch."""
from __future__ import annotations

from ..definition import NodeKind
from ..expressions import evaluate
from ..nodes import ConditionConfig
from ..results import Branch
from ..templating import lookup
from .base import NodeContext, NodeExecutor

DEFAULT_BRANCH = "default"


class ConditionExecutor(NodeExecutor):
    kind = NodeKind.CONDITION

    def execute(self, context: NodeContext) -> Branch:
        config: ConditionConfig = context.config  # type: ignore[assignment]

        if config.mode == "switch":
            value = lookup(context.scope, config.condition)
            if value is None:
                return Branch(DEFAULT_BRANCH, {"value": None, "branch": DEFAULT_BRANCH})
            if isinstance(value, bool):
                label = "true" if value else "false"
            else:
                label = str(value)
            return Branch(label, {"value": value, "branch": label})

        result = evaluate(config.condition, context.scope, config.operator, config.value)
        label = "true" if result else "false"
        return Branch(label, {"result": result, "branch": label})
