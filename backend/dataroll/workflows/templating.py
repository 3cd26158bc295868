"""``{{ path }}`` interpolation of node configs against an execution scope."""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from .definition import RESERVED_NAMES, Definition

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_MISSING = object()

logger = logging.getLogger(__name__)


def lookup(scope: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted path against the scope.

    A bare root that is not in the scope falls back to the keys of the
    previous node's output, so ``migrationsFound`` finds the flag returned by
    the step before.
    """

    value = _lookup(scope, path)
    if value is _MISSING:
        return default
    return value


def _lookup(scope: Mapping[str, Any], path: str) -> Any:
    parts = [part for part in path.strip().split(".") if part]
    if not parts:
        return _MISSING

    root, rest = parts[0], parts[1:]
    if root in scope:
        current = scope[root]
    else:
        previous = scope.get("previous")
        if not isinstance(previous, Mapping) or root not in previous:
            return _MISSING
        current = previous[root]

    for part in rest:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve(template: str, scope: Mapping[str, Any]) -> Any:
    """Interpolate a single string; a lone placeholder keeps the raw value type."""

    whole = TEMPLATE_PATTERN.fullmatch(template.strip())
    if whole is not None:
        value = _lookup(scope, whole.group(1))
        if value is _MISSING:
            logger.warning("unresolved template expression %r", whole.group(1))
            return template
        return value

    def _replace(match: re.Match[str]) -> str:
        value = _lookup(scope, match.group(1))
        if value is _MISSING:
            logger.warning("unresolved template expression %r", match.group(1))
            return match.group(0)
        return _stringify(value)

    return TEMPLATE_PATTERN.sub(_replace, template)


def resolve_object(value: Any, scope: Mapping[str, Any]) -> Any:
    """Interpolate every string inside a nested config structure."""

    if isinstance(value, str):
        return resolve(value, scope)
    if isinstance(value, list):
        return [resolve_object(item, scope) for item in value]
    if isinstance(value, Mapping):
        return {key: resolve_object(item, scope) for key, item in value.items()}
    return value


def template_roots(value: Any) -> set[str]:
    """Collect the root names referenced by templates inside ``value``."""

    roots: set[str] = set()
    if isinstance(value, str):
        for match in TEMPLATE_PATTERN.finditer(value):
            roots.add(match.group(1).strip().split(".")[0])
    elif isinstance(value, list):
        for item in value:
            roots |= template_roots(item)
    elif isinstance(value, Mapping):
        for item in value.values():
            roots |= template_roots(item)
    return roots


def extract_template_variables(definition: Definition) -> set[str]:
    roots: set[str] = set()
    for node in definition.nodes:
        roots |= template_roots(node.data)
    return roots


def unknown_template_roots(definition: Definition) -> set[str]:
    """Template roots that name neither a variable, a node nor a built-in root."""

    known = {variable.name for variable in definition.variables}
    known |= {node.id for node in definition.nodes}
    known |= RESERVED_NAMES
    return extract_template_variables(definition) - known
