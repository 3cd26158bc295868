"""Notification executor."""
from __future__ import annotations

from ..collaborators import NotificationDispatcher
from ..definition import NodeKind
from ..errors import ExecutorError, WorkflowError
from ..nodes import NotificationConfig
from ..results import Completed, Failed
from .base import NodeContext, NodeExecutor

BEST_EFFORT = "best_effort"
BLOCKING = "blocking"


class NotificationExecutor(NodeExecutor):
    """Dispatches a message; failed deliveries only fail blocking nodes."""

    kind = NodeKind.NOTIFICATION

    def __init__(self, dispatcher: NotificationDispatcher, *, policy: str = BEST_EFFORT) -> None:
        if policy not in (BEST_EFFORT, BLOCKING):
            raise ValueError(f"unknown notification policy {policy!r}")
        self.dispatcher = dispatcher
        self.policy = policy

    def _is_blocking(self, config: NotificationConfig) -> bool:
        if config.blocking is not None:
            return config.blocking
        return self.policy == BLOCKING

    def execute(self, context: NodeContext) -> Completed | Failed:
        config: NotificationConfig = context.config  # type: ignore[assignment]
        recipients = config.recipient_list()
        options = config.model_dump(
            exclude_none=True, exclude={"provider", "message", "template", "recipient", "recipients", "blocking"}
        )

        try:
            self.dispatcher.dispatch(config.provider, recipients, config.text(), options)
        except Exception as exc:
            error = exc if isinstance(exc, WorkflowError) else ExecutorError(str(exc))
            message = context.mask(error.message)
            if self._is_blocking(config):
                return Failed(
                    ExecutorError(
                        f"{config.provider} notification failed: {message}",
                        {"node": context.node.id, "provider": config.provider},
                    )
                )
            context.logger.warning(
                "execution %s: %s notification at node %s was not delivered: %s",
                context.execution_id,
                config.provider,
                context.node.id,
                message,
            )
            return Completed({"delivered": False, "provider": config.provider, "error": message})

        return Completed({"delivered": True, "provider": config.provider, "recipients": recipients})
