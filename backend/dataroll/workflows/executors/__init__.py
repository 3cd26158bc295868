"""Node executors, one strategy per node kind."""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..collaborators import ActionInvoker, NotificationDispatcher
from ..definition import NodeKind
from .action import ActionExecutor
from .approval import ApprovalExecutor
from .base import NodeContext, NodeExecutor
from .condition import DEFAULT_BRANCH, ConditionExecutor
from .delay import DelayExecutor
from .notification import BEST_EFFORT, BLOCKING, NotificationExecutor
from .trigger import TriggerExecutor

if TYPE_CHECKING:
    from ..approvals import ApprovalCoordinator


def build_executors(
    *,
    invoker: ActionInvoker,
    dispatcher: NotificationDispatcher,
    coordinator: ApprovalCoordinator,
    action_timeout: float = 30.0,
    notification_policy: str = BEST_EFFORT,
) -> dict[NodeKind, NodeExecutor]:
    executors: list[NodeExecutor] = [
        TriggerExecutor(),
        ActionExecutor(invoker, default_timeout=action_timeout),
        ConditionExecutor(),
        ApprovalExecutor(coordinator),
        NotificationExecutor(dispatcher, policy=notification_policy),
        DelayExecutor(),
    ]
    return {executor.kind: executor for executor in executors}


__all__ = [
    "BEST_EFFORT",
    "BLOCKING",
    "DEFAULT_BRANCH",
    "ActionExecutor",
    "ApprovalExecutor",
    "ConditionExecutor",
    "DelayExecutor",
    "NodeContext",
    "NodeExecutor",
    "NotificationExecutor",
    "TriggerExecutor",
    "build_executors",
]
