"""Action executor: marshals node config into an external action call."""
from __future__ import annotations

from collections.abc import Mapping

from ..collaborators import ActionInvoker
from ..definition import NodeKind
from ..errors import ExecutorError, WorkflowError
from ..nodes import ActionConfig
from ..results import Completed, Failed
from .base import NodeContext, NodeExecutor


class ActionExecutor(NodeExecutor):
    kind = NodeKind.ACTION

    def __init__(self, invoker: ActionInvoker, *, default_timeout: float = 30.0) -> None:
        self.invoker = invoker
        self.default_timeout = default_timeout

    def execute(self, context: NodeContext) -> Completed | Failed:
        config: ActionConfig = context.config  # type: ignore[assignment]
        timeout = config.timeout or self.default_timeout
        context.logger.info(
            "execution %s: running action %s at node %s",
            context.execution_id,
            config.action,
            context.node.id,
        )

        try:
            result = self.invoker.invoke(config.action, config.parameters_for_call(), timeout=timeout)
        except WorkflowError as exc:
            return Failed(exc)
        except Exception as exc:
            return Failed(
                ExecutorError(
                    f"action {config.action} failed: {exc}",
                    {"action": config.action, "node": context.node.id},
                )
            )

        if not isinstance(result, Mapping):
            result = {"result": result}
        return Completed(dict(result))
