"""Base class shared by the per-kind node executors."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..context import mask_secrets
from ..definition import Node, NodeKind
from ..results import NodeResult

if TYPE_CHECKING:
    from ..nodes import NodeConfig


@dataclass
class NodeContext:
    """Everything an executor may look at when processing one node.

    The engine builds a fresh context for every node it enters; executors
    never touch the database rows directly.
    """

    execution_id: int | None
    workflow_id: int
    team_id: str
    node: Node
    config: NodeConfig
    scope: dict[str, Any] = field(default_factory=dict)
    triggered_by: str | None = None
    resume_token: str | None = None
    """Set when the engine re-enters a node that previously suspended."""

    now: datetime | None = None
    logger: Any = field(default_factory=lambda: logging.getLogger(__name__))
    secrets: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_reentry(self) -> bool:
        return self.resume_token is not None

    def mask(self, value: Any) -> Any:
        """Hide secret variable values; apply to anything that is logged."""

        return mask_secrets(value, self.secrets)


class NodeExecutor(ABC):
    """Strategy for one node kind."""

    kind: NodeKind

    @abstractmethod
    def execute(self, context: NodeContext) -> NodeResult:
        """Process the node and report how the walk should continue.

        Executors return a ``Failed`` result for expected failures instead of
        raising; the engine still converts stray exceptions into failures.
        """
        ...
