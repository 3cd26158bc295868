"""Result types returned across the engine boundary and by node executors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from .errors import WorkflowError

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Discriminated success/error outcome of a public operation."""

    value: T | None = None
    error: WorkflowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> OperationResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: WorkflowError) -> OperationResult[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""

        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class Completed:
    output: Any = None


@dataclass(frozen=True)
class Failed:
    error: WorkflowError


@dataclass(frozen=True)
class Suspended:
    """Pause the walk until the event named by ``reason`` occurs."""

    reason: str
    resume_token: str
    wake_at: datetime | None = None
    output: Any = None


@dataclass(frozen=True)
class Branch:
    """Follow the outgoing edge whose label equals ``edge_label``."""

    edge_label: str
    output: Any = field(default=None)


NodeResult = Completed | Failed | Suspended | Branch

SUSPEND_APPROVAL = "approval"
SUSPEND_DELAY = "delay"
