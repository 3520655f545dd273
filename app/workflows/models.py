"""Workflow definitions, their parsed graph form and immutable snapshots."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from app.tickets.errors import MalformedWorkflowError

CREATE_NODE_ID = "create"


class WorkflowStatus(str, Enum):
    """Publication state of a workflow definition."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ConditionType(str, Enum):
    REQUIRES_COMMENT = "REQUIRES_COMMENT"
    REQUIRES_RESOLUTION = "REQUIRES_RESOLUTION"
    REQUIRES_ASSIGNMENT = "REQUIRES_ASSIGNMENT"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"
    PRIORITY_HIGH = "PRIORITY_HIGH"
    CUSTOM_FIELD_VALUE = "CUSTOM_FIELD_VALUE"


class ActionType(str, Enum):
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    ASSIGN_TO_USER = "ASSIGN_TO_USER"
    CALCULATE_RESOLUTION_TIME = "CALCULATE_RESOLUTION_TIME"
    UPDATE_PRIORITY = "UPDATE_PRIORITY"
    CREATE_SUBTASK = "CREATE_SUBTASK"
    SEND_EMAIL = "SEND_EMAIL"
    LOG_ACTIVITY = "LOG_ACTIVITY"


@dataclass(frozen=True, slots=True)
class WorkflowNode:
    """Lifecycle state in a workflow graph."""

    id: str
    label: str


@dataclass(frozen=True, slots=True)
class WorkflowCondition:
    type: ConditionType
    value: str | None = None
    is_required: bool = True


@dataclass(frozen=True, slots=True)
class WorkflowAction:
    type: ActionType
    config: Mapping[str, Any] = field(default_factory=dict)
    is_active: bool = True
    order: int = 0


@dataclass(frozen=True, slots=True)
class WorkflowEdge:
    """Permitted transition between two nodes."""

    id: str
    source: str
    target: str
    label: str
    roles: frozenset[str] = frozenset()
    conditions: tuple[WorkflowCondition, ...] = ()
    actions: tuple[WorkflowAction, ...] = ()
    is_create_transition: bool = False

    @property
    def is_create(self) -> bool:
        return self.is_create_transition or self.source == CREATE_NODE_ID


@dataclass(frozen=True, slots=True)
class WorkflowGraph:
    """Parsed, read-only view over a workflow definition document."""

    nodes: tuple[WorkflowNode, ...]
    edges: tuple[WorkflowEdge, ...]

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any] | None) -> "WorkflowGraph":
        if definition is None:
            return cls(nodes=(), edges=())
        if not isinstance(definition, Mapping):
            raise MalformedWorkflowError("Workflow definition must be a mapping")
        raw_nodes = _list_field(definition, "nodes")
        raw_edges = _list_field(definition, "edges")
        nodes = tuple(_parse_node(raw) for raw in raw_nodes)
        edges = tuple(_parse_edge(raw) for raw in raw_edges)
        return cls(nodes=nodes, edges=edges)

    def node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def create_edge(self) -> WorkflowEdge | None:
        for edge in self.edges:
            if edge.is_create:
                return edge
        return None


@dataclass(slots=True)
class WorkflowDefinition:
    """Live workflow row, owned and edited outside the engine."""

    id: str
    name: str
    version: int
    status: WorkflowStatus
    is_default: bool
    definition: Mapping[str, Any]
    created_at: datetime
    updated_at: datetime | None = None
    description: str | None = None
    transitions: Sequence[Mapping[str, Any]] = ()
    deleted_at: datetime | None = None

    @property
    def graph(self) -> WorkflowGraph:
        return WorkflowGraph.from_definition(self.definition)


@dataclass(frozen=True, slots=True)
class WorkflowSnapshot:
    """Immutable copy of a workflow definition embedded in a ticket."""

    id: str
    name: str
    version: int
    definition: Mapping[str, Any]
    transitions: tuple[Mapping[str, Any], ...]
    created_at: datetime | None

    @classmethod
    def capture(cls, workflow: WorkflowDefinition) -> "WorkflowSnapshot":
        return cls(
            id=workflow.id,
            name=workflow.name,
            version=workflow.version or 1,
            definition=_freeze(copy.deepcopy(dict(workflow.definition or {}))),
            transitions=tuple(_freeze(copy.deepcopy(dict(row))) for row in workflow.transitions or ()),
            created_at=workflow.created_at,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WorkflowSnapshot":
        created_at = payload.get("createdAt")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            version=int(payload.get("version") or 1),
            definition=_freeze(copy.deepcopy(dict(payload.get("definition") or {}))),
            transitions=tuple(_freeze(copy.deepcopy(dict(row))) for row in payload.get("transitions") or ()),
            created_at=created_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "definition": _thaw(self.definition),
            "transitions": [_thaw(row) for row in self.transitions],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    @property
    def graph(self) -> WorkflowGraph:
        return WorkflowGraph.from_definition(self.definition)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


def _list_field(document: Mapping[str, Any], key: str) -> Sequence[Any]:
    value = document.get(key)
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise MalformedWorkflowError(f"Workflow '{key}' must be a list")
    return value


def _data(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    data = raw.get("data")
    return data if isinstance(data, Mapping) else {}


def _require_id(raw: Any, kind: str) -> str:
    if not isinstance(raw, Mapping):
        raise MalformedWorkflowError(f"Workflow {kind} must be a mapping")
    value = raw.get("id")
    if not isinstance(value, str) or not value:
        raise MalformedWorkflowError(f"Workflow {kind} is missing an id")
    return value


def _parse_node(raw: Any) -> WorkflowNode:
    node_id = _require_id(raw, "node")
    label = _data(raw).get("label") or raw.get("label") or node_id
    return WorkflowNode(id=node_id, label=str(label))


def _parse_edge(raw: Any) -> WorkflowEdge:
    edge_id = _require_id(raw, "edge")
    source = raw.get("source")
    target = raw.get("target")
    if not isinstance(source, str) or not isinstance(target, str) or not source or not target:
        raise MalformedWorkflowError(f"Workflow edge {edge_id} needs a source and a target")

    data = _data(raw)

    def pick(key: str, default: Any) -> Any:
        if key in data:
            return data[key]
        return raw.get(key, default)

    roles = pick("roles", ()) or ()
    if isinstance(roles, str) or not isinstance(roles, (list, tuple, set, frozenset)):
        raise MalformedWorkflowError(f"Workflow edge {edge_id} roles must be a list")

    return WorkflowEdge(
        id=edge_id,
        source=source,
        target=target,
        label=str(raw.get("label") or data.get("label") or ""),
        roles=frozenset(str(role) for role in roles),
        conditions=tuple(_parse_condition(item, edge_id) for item in pick("conditions", ()) or ()),
        actions=tuple(
            sorted(
                (_parse_action(item, edge_id) for item in pick("actions", ()) or ()),
                key=lambda action: action.order,
            )
        ),
        is_create_transition=bool(pick("isCreateTransition", False)),
    )


def _parse_condition(raw: Any, edge_id: str) -> WorkflowCondition:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise MalformedWorkflowError(f"Workflow edge {edge_id} has an invalid condition")
    try:
        condition_type = ConditionType(str(raw.get("type")))
    except ValueError as exc:
        raise MalformedWorkflowError(f"Unknown condition type {raw.get('type')!r} on edge {edge_id}") from exc
    value = raw.get("value")
    return WorkflowCondition(
        type=condition_type,
        value=None if value is None else str(value),
        is_required=bool(raw.get("isRequired", True)),
    )


def _parse_action(raw: Any, edge_id: str) -> WorkflowAction:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise MalformedWorkflowError(f"Workflow edge {edge_id} has an invalid action")
    try:
        action_type = ActionType(str(raw.get("type")))
    except ValueError as exc:
        raise MalformedWorkflowError(f"Unknown action type {raw.get('type')!r} on edge {edge_id}") from exc
    config = raw.get("config") or {}
    if not isinstance(config, Mapping):
        raise MalformedWorkflowError(f"Action config on edge {edge_id} must be a mapping")
    return WorkflowAction(
        type=action_type,
        config=dict(config),
        is_active=bool(raw.get("isActive", True)),
        order=int(raw.get("order", 0) or 0),
    )
