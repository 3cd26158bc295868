"""Workflow definition model: parsing, serialization and structural validation."""
from __future__ import annotations

import heapq
import json
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .errors import GraphError, ParseError

TRIGGER_KINDS = ("manual", "scheduled", "webhook", "event")
VARIABLE_TYPES = ("string", "number", "boolean", "object", "secret")
FORMATS = ("json", "yaml")
# Scope roots provided by the engine; node ids and variable names may not shadow them.
RESERVED_NAMES = frozenset({"execution", "previous", "variables", "outputs"})


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DELAY = "delay"


@dataclass(frozen=True)
class Node:
    id: str
    kind: NodeKind
    label: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    label: str | None = None


@dataclass(frozen=True)
class Variable:
    name: str
    type: str = "string"
    default_value: Any = None
    description: str | None = None
    is_secret: bool = False

    @property
    def secret(self) -> bool:
        return self.is_secret or self.type == "secret"


@dataclass(frozen=True)
class Definition:
    """Immutable snapshot of a workflow graph."""

    name: str
    trigger: str = "manual"
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    variables: tuple[Variable, ...] = ()
    description: str | None = None
    version: str = "1.0"

    def node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def trigger_node(self) -> Node | None:
        for node in self.nodes:
            if node.kind is NodeKind.TRIGGER:
                return node
        return None

    def outgoing(self, node_id: str) -> list[Edge]:
        """Return the edges leaving ``node_id`` in declaration order."""

        return [edge for edge in self.edges if edge.source == node_id]


# ---------------------------------------------------------------------------
# mapping <-> dataclass
# ---------------------------------------------------------------------------


def _require_str(raw: Mapping[str, Any], key: str, where: str, *, allow_empty: bool = False) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ParseError(f"{where}: '{key}' must be a non-empty string")
    return value


def _optional_str(raw: Mapping[str, Any], key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ParseError(f"{where}: '{key}' must be a string")
    return value


def _node_from_mapping(raw: Any, index: int) -> Node:
    where = f"nodes[{index}]"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where} must be an object")
    node_id = _require_str(raw, "id", where)
    kind = _require_str(raw, "type", where)
    try:
        node_kind = NodeKind(kind)
    except ValueError:
        raise ParseError(f"{where}: unknown node type '{kind}'") from None
    label = _require_str(raw, "label", where, allow_empty=True)
    data = raw.get("data", {})
    if not isinstance(data, Mapping):
        raise ParseError(f"{where}: 'data' must be an object")
    return Node(id=node_id, kind=node_kind, label=label, data=dict(data))


def _edge_from_mapping(raw: Any, index: int) -> Edge:
    where = f"edges[{index}]"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where} must be an object")
    return Edge(
        source=_require_str(raw, "source", where),
        target=_require_str(raw, "target", where),
        label=_optional_str(raw, "label", where),
    )


def _variable_from_mapping(raw: Any, index: int) -> Variable:
    if isinstance(raw, Variable):
        return raw
    where = f"variables[{index}]"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where} must be an object")
    var_type = raw.get("type", "string")
    if var_type not in VARIABLE_TYPES:
        raise ParseError(f"{where}: unknown variable type '{var_type}'")
    is_secret = raw.get("isSecret", False)
    if not isinstance(is_secret, bool):
        raise ParseError(f"{where}: 'isSecret' must be a boolean")
    return Variable(
        name=_require_str(raw, "name", where),
        type=var_type,
        default_value=raw.get("defaultValue"),
        description=_optional_str(raw, "description", where),
        is_secret=is_secret,
    )


def _list_field(raw: Mapping[str, Any], key: str, *, required: bool) -> list[Any]:
    value = raw.get(key)
    if value is None:
        if required:
            raise ParseError(f"'{key}' is required")
        return []
    if not isinstance(value, list):
        raise ParseError(f"'{key}' must be a list")
    return value


def from_mapping(raw: Any) -> Definition:
    """Build a definition from decoded content, checking fields but not graph shape."""

    if not isinstance(raw, Mapping):
        raise ParseError("workflow definition must be an object")

    trigger = raw.get("trigger", "manual")
    if trigger not in TRIGGER_KINDS:
        raise ParseError(f"unknown trigger '{trigger}'")

    version = raw.get("version", "1.0")
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        version = str(version)
    if not isinstance(version, str):
        raise ParseError("'version' must be a string")

    return Definition(
        name=_require_str(raw, "name", "definition"),
        description=_optional_str(raw, "description", "definition"),
        trigger=trigger,
        version=version,
        variables=tuple(
            _variable_from_mapping(item, index)
            for index, item in enumerate(_list_field(raw, "variables", required=False))
        ),
        nodes=tuple(
            _node_from_mapping(item, index)
            for index, item in enumerate(_list_field(raw, "nodes", required=True))
        ),
        edges=tuple(
            _edge_from_mapping(item, index)
            for index, item in enumerate(_list_field(raw, "edges", required=True))
        ),
    )


def _node_to_mapping(node: Node) -> dict[str, Any]:
    return {"id": node.id, "type": node.kind.value, "label": node.label, "data": dict(node.data)}


def _edge_to_mapping(edge: Edge) -> dict[str, Any]:
    payload: dict[str, Any] = {"source": edge.source, "target": edge.target}
    if edge.label is not None:
        payload["label"] = edge.label
    return payload


def _variable_to_mapping(variable: Variable) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": variable.name,
        "type": variable.type,
        "isSecret": variable.is_secret,
    }
    if variable.default_value is not None:
        payload["defaultValue"] = variable.default_value
    if variable.description is not None:
        payload["description"] = variable.description
    return payload


def to_mapping(definition: Definition) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "version": definition.version,
        "name": definition.name,
        "trigger": definition.trigger,
        "variables": [_variable_to_mapping(variable) for variable in definition.variables],
        "nodes": [_node_to_mapping(node) for node in definition.nodes],
        "edges": [_edge_to_mapping(edge) for edge in definition.edges],
    }
    if definition.description is not None:
        payload["description"] = definition.description
    return payload


# ---------------------------------------------------------------------------
# text encoding
# ---------------------------------------------------------------------------


def _check_format(format: str) -> None:
    if format not in FORMATS:
        raise ParseError(f"unsupported definition format '{format}'")


def parse(content: str, format: str = "json") -> Definition:
    """Parse definition text and validate the graph structure."""

    _check_format(format)
    if not isinstance(content, str) or not content.strip():
        raise ParseError("definition content is empty")

    try:
        raw = yaml.safe_load(content) if format == "yaml" else json.loads(content)
    except (ValueError, yaml.YAMLError) as exc:
        raise ParseError(f"failed to decode {format} definition: {exc}") from exc

    definition = from_mapping(raw)
    try:
        validate_graph(definition)
    except GraphError as exc:
        raise ParseError(exc.message, exc.details) from exc
    return definition


def serialize(definition: Definition, format: str = "json") -> str:
    _check_format(format)
    payload = to_mapping(definition)
    if format == "yaml":
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    return json.dumps(payload, indent=2)


def extract_nodes_and_edges(definition: Definition) -> tuple[str, str]:
    """Split a definition into the separately stored nodes/edges texts."""

    return (
        json.dumps([_node_to_mapping(node) for node in definition.nodes]),
        json.dumps([_edge_to_mapping(edge) for edge in definition.edges]),
    )


def reconstruct_definition(
    name: str,
    description: str | None,
    trigger: str,
    variables: Iterable[Any],
    nodes_text: str,
    edges_text: str,
    version: str = "1.0",
) -> Definition:
    """Assemble a definition from the discrete parts held by the editor."""

    try:
        nodes = json.loads(nodes_text or "[]")
        edges = json.loads(edges_text or "[]")
    except (TypeError, ValueError) as exc:
        raise ParseError(f"stored nodes/edges are not valid JSON: {exc}") from exc

    variable_items = [
        _variable_to_mapping(item) if isinstance(item, Variable) else item
        for item in (variables or [])
    ]
    return from_mapping(
        {
            "version": version,
            "name": name,
            "description": description,
            "trigger": trigger,
            "variables": variable_items,
            "nodes": nodes,
            "edges": edges,
        }
    )


# ---------------------------------------------------------------------------
# graph validation
# ---------------------------------------------------------------------------


def execution_order(definition: Definition) -> list[Node]:
    """Topologically sort nodes, breaking ties by declaration order."""

    position = {node.id: index for index, node in enumerate(definition.nodes)}
    indegree = {node.id: 0 for node in definition.nodes}
    adjacency: dict[str, list[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        if edge.source in adjacency and edge.target in indegree:
            adjacency[edge.source].append(edge.target)
            indegree[edge.target] += 1

    heap = [(position[node_id], node_id) for node_id, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    ordered: list[Node] = []
    while heap:
        _, node_id = heapq.heappop(heap)
        ordered.append(definition.nodes[position[node_id]])
        for neighbour in adjacency[node_id]:
            indegree[neighbour] -= 1
            if indegree[neighbour] == 0:
                heapq.heappush(heap, (position[neighbour], neighbour))

    if len(ordered) != len(definition.nodes):
        raise GraphError("workflow graph contains a cycle")
    return ordered


def _reachable_from(definition: Definition, start: str) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for edge in definition.outgoing(current):
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def validate_graph(definition: Definition) -> None:
    """Raise GraphError listing every structural problem in the definition."""

    errors: list[str] = []

    node_ids: set[str] = set()
    for node in definition.nodes:
        if node.id in node_ids:
            errors.append(f"duplicate node id: {node.id}")
        node_ids.add(node.id)

    for edge in definition.edges:
        if edge.source not in node_ids:
            errors.append(f"edge references missing source node: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"edge references missing target node: {edge.target}")

    triggers = [node for node in definition.nodes if node.kind is NodeKind.TRIGGER]
    if len(triggers) > 1:
        errors.append(f"workflow has {len(triggers)} trigger nodes, at most one is allowed")
    elif definition.nodes and not triggers:
        errors.append("workflow has nodes but no trigger node")

    for trigger in triggers:
        if any(edge.target == trigger.id for edge in definition.edges):
            errors.append(f"trigger node {trigger.id} must not have incoming edges")

    for node in definition.nodes:
        if node.id in RESERVED_NAMES:
            errors.append(f"node id {node.id} is reserved")

    variable_names: set[str] = set()
    for variable in definition.variables:
        if variable.name in variable_names:
            errors.append(f"duplicate variable: {variable.name}")
        variable_names.add(variable.name)
        if variable.name in node_ids:
            errors.append(f"variable {variable.name} collides with a node id")
        if variable.name in RESERVED_NAMES:
            errors.append(f"variable name {variable.name} is reserved")

    if not errors:
        try:
            execution_order(definition)
        except GraphError as exc:
            errors.append(exc.message)

    if not errors and len(triggers) == 1:
        reachable = _reachable_from(definition, triggers[0].id)
        for node in definition.nodes:
            if node.id not in reachable:
                errors.append(f"node {node.id} is not reachable from the trigger")

    if errors:
        raise GraphError("workflow graph is invalid: " + "; ".join(errors), {"errors": errors})


def lint_definition(definition: Definition) -> list[str]:
    """Return authoring mistakes that the engine can tolerate but a save should reject."""

    warnings: list[str] = []
    for node in definition.nodes:
        outgoing = definition.outgoing(node.id)
        if node.kind is NodeKind.CONDITION:
            if len(outgoing) < 2:
                warnings.append(f"condition node {node.id} needs at least two outgoing edges")
            labels = [edge.label for edge in outgoing]
            if any(not label for label in labels):
                warnings.append(f"condition node {node.id} has unlabeled outgoing edges")
            if len({label for label in labels if label}) != len([label for label in labels if label]):
                warnings.append(f"condition node {node.id} has duplicate branch labels")
        elif len(outgoing) > 1:
            warnings.append(
                f"node {node.id} has {len(outgoing)} outgoing edges; only the first will be followed"
            )
    return warnings
