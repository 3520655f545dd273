from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from app.tickets.state import normalize_state_key, normalize_status, role_key

from .models import WorkflowEdge, WorkflowGraph, WorkflowNode


@dataclass(frozen=True, slots=True)
class Transition:
    """A candidate status change offered to an actor."""

    id: str
    from_status: str
    to: str
    label: str
    can_execute: bool
    edge: WorkflowEdge = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class TransitionSet:
    """Every transition leaving a status, executable or not."""

    current_status: str
    transitions: tuple[Transition, ...]
    _target_aliases: tuple[frozenset[str], ...] = field(default=(), compare=False, repr=False)

    def __iter__(self) -> Iterator[Transition]:
        return iter(self.transitions)

    def __len__(self) -> int:
        return len(self.transitions)

    @property
    def executable(self) -> tuple[Transition, ...]:
        return tuple(transition for transition in self.transitions if transition.can_execute)

    @property
    def available_statuses(self) -> tuple[str, ...]:
        statuses: list[str] = []
        for transition in self.executable:
            if transition.to not in statuses:
                statuses.append(transition.to)
        return tuple(statuses)

    def find(self, requested_status: Any) -> Transition | None:
        """Return the transition leading to ``requested_status``.

        The requested value may name the target by status token, node id or
        label. When several edges reach the same target an executable one wins.
        """

        key = normalize_state_key(requested_status)
        matches = [
            transition
            for transition, aliases in zip(self.transitions, self._target_aliases)
            if key in aliases
        ]
        for transition in matches:
            if transition.can_execute:
                return transition
        return matches[0] if matches else None


def node_aliases(node: WorkflowNode) -> frozenset[str]:
    return frozenset(alias for alias in (normalize_state_key(node.id), normalize_state_key(node.label)) if alias)


def status_for_node(node: WorkflowNode) -> str:
    """Status token for a node.

    The id is kept only when it is a snake_case spelling of the label
    (``in_progress`` / "In Progress"). Any other node is named by its label.
    """

    if "_" in node.id and normalize_state_key(node.id) == normalize_state_key(node.label):
        return node.id.upper()
    return normalize_status(node.label or node.id)


def resolve_transitions(graph: WorkflowGraph, current_status: Any, actor_role: Any) -> TransitionSet:
    """List the transitions leaving ``current_status`` for an actor holding ``actor_role``."""

    current_key = normalize_state_key(current_status)
    role = role_key(actor_role)
    nodes = {node.id: node for node in graph.nodes}
    aliases = {node_id: node_aliases(node) for node_id, node in nodes.items()}

    transitions: list[Transition] = []
    target_aliases: list[frozenset[str]] = []
    for edge in graph.edges:
        if edge.is_create:
            continue
        source_aliases = aliases.get(edge.source) or frozenset({normalize_state_key(edge.source)})
        if current_key not in source_aliases:
            continue
        target = nodes.get(edge.target)
        if target is None:
            continue
        transitions.append(
            Transition(
                id=edge.id,
                from_status=normalize_status(current_status),
                to=status_for_node(target),
                label=edge.label or target.label,
                can_execute=role in edge.roles,
                edge=edge,
            )
        )
        target_aliases.append(aliases[target.id] | {normalize_state_key(status_for_node(target))})

    return TransitionSet(
        current_status=normalize_status(current_status),
        transitions=tuple(transitions),
        _target_aliases=tuple(target_aliases),
    )
