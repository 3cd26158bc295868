"""Typed configuration schemas for each node kind.

Node ``data`` is stored as a free-form mapping; these models give every kind
its own schema. Definitions are checked against them when they are saved and
the resolved config is checked again right before a node runs.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .definition import Definition, Node, NodeKind
from .errors import ValidationError
from .expressions import check_condition

MIGRATION_ACTIONS = frozenset({"discover_migrations", "dry_run", "execute_migrations", "rollback", "run_tests"})
HTTP_ACTIONS = frozenset({"custom_api_call", "http_request"})
TEAM_ADMIN = "team_admin"


class _NodeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TriggerConfig(_NodeConfig):
    description: str | None = None


class ActionConfig(_NodeConfig):
    action: Literal[
        "discover_migrations",
        "dry_run",
        "execute_migrations",
        "rollback",
        "run_tests",
        "custom_api_call",
        "http_request",
    ]
    connection_id: str | None = Field(default=None, alias="connectionId")
    migrations: list[str] | str | None = None
    url: str | None = None
    method: Literal["GET", "POST", "PUT", "DELETE"] | None = None
    headers: dict[str, str] | None = None
    body: str | dict[str, Any] | list[Any] | None = None
    parameters: dict[str, Any] | None = None
    timeout: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_required(self) -> ActionConfig:
        if self.action in MIGRATION_ACTIONS and not self.connection_id:
            raise ValueError(f"connectionId is required for {self.action}")
        if self.action in HTTP_ACTIONS and not self.url:
            raise ValueError(f"url is required for {self.action}")
        return self

    def parameters_for_call(self) -> dict[str, Any]:
        """Arguments handed to the action collaborator."""

        params = self.model_dump(by_alias=True, exclude_none=True)
        params.pop("action", None)
        params.pop("timeout", None)
        return params


class ConditionConfig(_NodeConfig):
    condition: str = Field(min_length=1)
    operator: Literal[
        "equals", "not_equals", "greater_than", "less_than", "contains", "not_contains"
    ] | None = None
    value: Any = None
    mode: Literal["boolean", "switch"] = "boolean"

    @model_validator(mode="after")
    def _check_syntax(self) -> ConditionConfig:
        # templated conditions are checked once resolved
        if "{{" not in self.condition:
            try:
                check_condition(self.condition, self.operator, self.mode)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
        return self


class ApprovalConfig(_NodeConfig):
    approvers: list[str] | str
    timeout: int
    require_all: bool = Field(default=True, alias="requireAll")
    allow_veto: bool = Field(default=True, alias="allowVeto")
    skip_if_creator: bool = Field(default=False, alias="skipIfCreator")
    message: str | None = None

    @field_validator("approvers")
    @classmethod
    def _non_empty(cls, value: list[str] | str) -> list[str] | str:
        if isinstance(value, list):
            cleaned = [item.strip() for item in value if item and item.strip()]
            if not cleaned:
                raise ValueError("at least one approver is required")
            return cleaned
        if not value.strip():
            raise ValueError("at least one approver is required")
        return value

    @field_validator("timeout")
    @classmethod
    def _within_bounds(cls, value: int, info: ValidationInfo) -> int:
        bounds = (info.context or {}).get("approval_timeout_bounds")
        if bounds is None:
            if value <= 0:
                raise ValueError("timeout must be positive")
            return value
        minimum, maximum = bounds
        if value < minimum:
            raise ValueError(f"timeout must be at least {minimum} seconds")
        if value > maximum:
            raise ValueError(f"timeout cannot exceed {maximum} seconds")
        return value

    def approver_list(self) -> list[str]:
        if isinstance(self.approvers, str):
            return [item.strip() for item in self.approvers.split(",") if item.strip()]
        return list(self.approvers)


class NotificationConfig(_NodeConfig):
    provider: Literal["slack", "email", "webhook", "pagerduty"]
    message: str | None = None
    template: str | None = None
    subject: str | None = None
    channel: str | None = None
    recipient: str | None = None
    recipients: list[str] | str | None = None
    url: str | None = None
    webhook: str | None = None
    blocking: bool | None = None

    @model_validator(mode="after")
    def _check_provider(self) -> NotificationConfig:
        if self.provider == "email" and not (self.recipients or self.recipient):
            raise ValueError("email notifications need recipients")
        if self.provider == "webhook" and not (self.url or self.webhook):
            raise ValueError("webhook notifications need a url")
        if self.provider == "pagerduty" and not self.recipient:
            raise ValueError("pagerduty notifications need a recipient")
        return self

    def recipient_list(self) -> list[str]:
        if isinstance(self.recipients, str):
            found = [item.strip() for item in self.recipients.split(",") if item.strip()]
        else:
            found = list(self.recipients or [])
        if self.recipient and self.recipient not in found:
            found.append(self.recipient)
        return found

    def text(self) -> str:
        return self.message or self.template or "Workflow notification"


class DelayConfig(_NodeConfig):
    duration: float = Field(ge=1)


CONFIG_MODELS: dict[NodeKind, type[_NodeConfig]] = {
    NodeKind.TRIGGER: TriggerConfig,
    NodeKind.ACTION: ActionConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.APPROVAL: ApprovalConfig,
    NodeKind.NOTIFICATION: NotificationConfig,
    NodeKind.DELAY: DelayConfig,
}

NodeConfig = TriggerConfig | ActionConfig | ConditionConfig | ApprovalConfig | NotificationConfig | DelayConfig


def _format_errors(exc: PydanticValidationError) -> list[str]:
    messages = []
    for issue in exc.errors():
        location = ".".join(str(part) for part in issue.get("loc", ()))
        message = issue.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def parse_node_config(
    node: Node,
    data: dict[str, Any] | None = None,
    *,
    approval_timeout_bounds: tuple[int, int] | None = None,
) -> NodeConfig:
    """Validate ``data`` (the node's own data by default) against the node kind's schema."""

    model = CONFIG_MODELS[node.kind]
    context = {"approval_timeout_bounds": approval_timeout_bounds} if approval_timeout_bounds else None
    try:
        return model.model_validate(node.data if data is None else data, context=context)
    except PydanticValidationError as exc:
        errors = _format_errors(exc)
        raise ValidationError(
            f"{node.kind.value} node {node.id} is misconfigured: " + "; ".join(errors),
            {"node": node.id, "errors": errors},
        ) from exc


def validate_node_configs(
    definition: Definition, *, approval_timeout_bounds: tuple[int, int] | None = None
) -> None:
    """Raise ValidationError naming every node whose config fails its schema."""

    problems: dict[str, list[str]] = {}
    for node in definition.nodes:
        try:
            parse_node_config(node, approval_timeout_bounds=approval_timeout_bounds)
        except ValidationError as exc:
            problems[node.id] = exc.details["errors"]
    if problems:
        summary = "; ".join(f"{node_id}: {', '.join(errors)}" for node_id, errors in problems.items())
        raise ValidationError(f"invalid node configuration: {summary}", {"nodes": problems})
