"""Durable per-execution context: variables plus node outputs keyed by node id."""
from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any

from sqlalchemy import update

from ..extensions import db
from ..models.base import dump_json, utcnow
from ..models.execution import Execution
from .definition import Definition, Variable
from .errors import StateError, ValidationError

MASK = "********"

JSONValue = None | bool | int | float | str | list["JSONValue"] | dict[str, "JSONValue"]


def ensure_json_value(value: Any, path: str = "$") -> JSONValue:
    """Return ``value`` as a JSON-like tree, raising ValidationError for anything else."""

    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"{path}: non-finite numbers cannot be stored")
        return value
    if isinstance(value, (list, tuple)):
        return [ensure_json_value(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        result: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"{path}: object keys must be strings")
            result[key] = ensure_json_value(item, f"{path}.{key}")
        return result
    raise ValidationError(f"{path}: {type(value).__name__} is not a JSON value")


def mask_secrets(value: Any, secrets: Mapping[str, Any]) -> Any:
    """Replace every secret value, including substrings, with the mask."""

    needles = sorted(
        {str(secret) for secret in secrets.values() if secret not in (None, "")},
        key=len,
        reverse=True,
    )
    if not needles:
        return value
    return _mask(value, needles)


def _mask(value: Any, needles: list[str]) -> Any:
    if isinstance(value, str):
        for needle in needles:
            value = value.replace(needle, MASK)
        return value
    if isinstance(value, list):
        return [_mask(item, needles) for item in value]
    if isinstance(value, Mapping):
        return {key: _mask(item, needles) for key, item in value.items()}
    if value is not None and not isinstance(value, bool) and str(value) in needles:
        return MASK
    return value


def _coerce_variable(variable: Variable, value: Any) -> Any:
    if value is None or variable.type in ("string", "secret"):
        return value
    if variable.type == "number" and isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            raise ValidationError(f"variable {variable.name} must be a number") from None
        return int(number) if number.is_integer() else number
    if variable.type == "boolean" and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered not in ("true", "false"):
            raise ValidationError(f"variable {variable.name} must be a boolean")
        return lowered == "true"
    if variable.type == "object" and isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            raise ValidationError(f"variable {variable.name} must be a JSON object") from None
    return value


class ExecutionContextStore:
    """Reads and writes execution context rows.

    The ``context`` column never holds secret values: secret variables are
    kept in the separate ``secrets`` column and substituted back on read.
    """

    def seed(
        self, definition: Definition, provided: Mapping[str, Any] | None = None
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Build the initial (context, secrets) pair from variable defaults and trigger input."""

        provided = dict(provided or {})
        node_ids = {node.id for node in definition.nodes}
        context: dict[str, Any] = {}
        secrets: dict[str, Any] = {}

        for variable in definition.variables:
            if variable.name in provided:
                value = provided.pop(variable.name)
            elif variable.default_value is not None:
                value = variable.default_value
            else:
                continue
            value = ensure_json_value(_coerce_variable(variable, value), variable.name)
            if variable.secret:
                secrets[variable.name] = value
                context[variable.name] = MASK
            else:
                context[variable.name] = value

        for name, value in provided.items():
            if name in node_ids:
                raise ValidationError(f"variable {name} collides with a node id")
            context[name] = ensure_json_value(value, name)
        return context, secrets

    def load(self, execution: Execution) -> dict[str, Any]:
        """Full context with secrets substituted; never persist or log the result."""

        context = execution.context_data
        context.update(execution.secret_data)
        return context

    def get(self, execution: Execution, key: str, default: Any = None) -> Any:
        return self.load(execution).get(key, default)

    def masked_context(self, execution: Execution) -> dict[str, Any]:
        return execution.context_data

    def mask(self, execution: Execution, value: Any) -> Any:
        return mask_secrets(value, execution.secret_data)

    def set(self, execution: Execution, key: str, value: Any, *, commit: bool = True) -> None:
        """Append or overwrite one entry while the execution is still running.

        The write is conditional on the status, so a result arriving after the
        execution was cancelled is refused with StateError.
        """

        value = ensure_json_value(value, key)
        if key in execution.secret_data:
            raise ValidationError(f"context entry {key} is a secret and cannot be overwritten")

        context = execution.context_data
        context[key] = mask_secrets(value, execution.secret_data)
        statement = (
            update(Execution)
            .where(Execution.id == execution.id, Execution.status == "running")
            .values(context=dump_json(context), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(statement).rowcount != 1:
            db.session.rollback()
            raise StateError(
                f"execution {execution.id} is no longer running; context write for {key} discarded"
            )
        db.session.expire(execution)
        if commit:
            db.session.commit()
