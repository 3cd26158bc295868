"""Delay executor: suspends the walk until a wake time."""
from __future__ import annotations

from datetime import datetime, timedelta

from ...models.base import utcnow
from ..definition import NodeKind
from ..nodes import DelayConfig
from ..results import SUSPEND_DELAY, Completed, Suspended
from .base import NodeContext, NodeExecutor


class DelayExecutor(NodeExecutor):
    kind = NodeKind.DELAY

    def execute(self, context: NodeContext) -> Completed | Suspended:
        config: DelayConfig = context.config  # type: ignore[assignment]
        now = context.now or utcnow()

        if context.is_reentry:
            wake_at = datetime.fromisoformat(context.resume_token)
            if now >= wake_at:
                return Completed({"waitedSeconds": config.duration, "wokeAt": now.isoformat()})
            return Suspended(SUSPEND_DELAY, context.resume_token, wake_at=wake_at)

        wake_at = now + timedelta(seconds=config.duration)
        return Suspended(SUSPEND_DELAY, wake_at.isoformat(), wake_at=wake_at)
