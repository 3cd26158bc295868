"""Saving definitions: every save validates and appends a new immutable version."""
from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models.workflow import Workflow, WorkflowDefinition
from .definition import (
    FORMATS,
    Definition,
    extract_nodes_and_edges,
    from_mapping,
    lint_definition,
    parse,
    serialize,
)
from .errors import GraphError, ParseError, ValidationError
from .nodes import validate_node_configs
from .templating import unknown_template_roots


def coerce_content(value: Any, format: str) -> str:
    """Accept either definition text or an already decoded mapping."""

    if format not in FORMATS:
        raise ParseError(f"unsupported definition format '{format}'")
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return serialize(from_mapping(value), format)
    raise ParseError("definition must be a string or an object")


def validate_definition(
    content: str,
    format: str = "json",
    *,
    max_bytes: int | None = None,
    approval_timeout_bounds: tuple[int, int] | None = None,
) -> tuple[Definition, list[str]]:
    """Run every save-time check; returns the definition plus non-fatal warnings."""

    if max_bytes is not None and len(content.encode("utf-8")) > max_bytes:
        raise ValidationError(
            f"definition exceeds the maximum size of {max_bytes} bytes", {"maxBytes": max_bytes}
        )

    definition = parse(content, format)
    validate_node_configs(definition, approval_timeout_bounds=approval_timeout_bounds)

    problems = lint_definition(definition)
    if problems:
        raise GraphError("workflow graph is invalid: " + "; ".join(problems), {"errors": problems})

    warnings = [
        f"template root '{root}' is not a variable or node id; it will be looked up in the previous node's output"
        for root in sorted(unknown_template_roots(definition))
    ]
    return definition, warnings


def save_definition(
    workflow: Workflow,
    content: str,
    format: str = "json",
    *,
    max_bytes: int | None = None,
    approval_timeout_bounds: tuple[int, int] | None = None,
) -> tuple[WorkflowDefinition, list[str]]:
    """Validate and stage a new definition version; the caller commits."""

    definition, warnings = validate_definition(
        content, format, max_bytes=max_bytes, approval_timeout_bounds=approval_timeout_bounds
    )
    nodes_text, edges_text = extract_nodes_and_edges(definition)
    version = (workflow.version or 0) + 1

    row = WorkflowDefinition(
        workflow_id=workflow.id,
        content=content,
        format=format,
        nodes=nodes_text,
        edges=edges_text,
        version=version,
    )
    db.session.add(row)
    db.session.flush()

    workflow.definition_id = row.id
    workflow.version = version
    workflow.trigger = definition.trigger
    return row, warnings
