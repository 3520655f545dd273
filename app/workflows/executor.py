"""Validation and commit of a single ticket status change."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, Sequence
from uuid import UUID

from opentelemetry import trace

from app.tickets.errors import (
    InvalidTicketTransitionError,
    StorageUnavailableError,
    TicketConflictError,
    TicketNotFoundError,
    TransitionConditionError,
    TransitionNotPermittedError,
    WorkflowEngineError,
    WorkflowNotFoundError,
)
from app.tickets.models import Ticket, TicketHistoryEntry
from app.tickets.state import (
    CLOSED_STATUS,
    HIGH_PRIORITIES,
    RESOLVED_STATUS,
    normalize_status,
    role_key,
)

from .models import ActionType, ConditionType, WorkflowAction, WorkflowCondition, WorkflowGraph
from .resolver import Transition, resolve_transitions
from .snapshot import WorkflowStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TRACKED_FIELDS = ("status", "resolution", "priority", "assigned_to_id")
DEFERRED_ACTIONS = frozenset({ActionType.SEND_NOTIFICATION, ActionType.SEND_EMAIL, ActionType.CREATE_SUBTASK})


class TicketStore(Protocol):
    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        ...

    async def attach_workflow(self, ticket_id: UUID, workflow_id: str) -> None:
        ...

    async def apply_changes(
        self,
        ticket_id: UUID,
        *,
        expected_status: str,
        changes: Mapping[str, Any],
        history: Sequence[TicketHistoryEntry],
    ) -> Ticket | None:
        ...


class ExecutionPath(str, Enum):
    WORKFLOW = "workflow"
    LEGACY = "legacy"


@dataclass(frozen=True, slots=True)
class TransitionEffect:
    """Side effect requested by a workflow action and delivered by the caller."""

    type: ActionType
    ticket_id: UUID
    config: Mapping[str, Any]


@dataclass(slots=True)
class TransitionOutcome:
    ticket: Ticket
    history: tuple[TicketHistoryEntry, ...]
    path: ExecutionPath
    transition: Transition | None = None
    effects: tuple[TransitionEffect, ...] = ()
    warnings: tuple[str, ...] = ()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionExecutor:
    """Carry out a requested status change under the ticket's workflow.

    Validation and permission failures always reach the caller. Technical
    failures on the workflow path (storage outages, malformed definitions) fall
    back to the legacy path, which accepts the requested status as-is so that a
    broken workflow never blocks ticket progress.
    """

    def __init__(
        self,
        tickets: TicketStore,
        workflows: WorkflowStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tickets = tickets
        self._workflows = workflows
        self._clock = clock or _utcnow

    async def execute(
        self,
        ticket_id: UUID,
        requested_status: str,
        *,
        actor_id: str,
        actor_role: Any,
        comment: str | None = None,
        resolution: str | None = None,
    ) -> TransitionOutcome:
        with tracer.start_as_current_span("tickets.transition") as span:
            span.set_attribute("ticket.id", str(ticket_id))
            span.set_attribute("ticket.requested_status", str(requested_status))
            span.set_attribute("actor.role", role_key(actor_role))

            ticket = await self._tickets.get_ticket(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")

            warnings: list[str] = []
            if not ticket.has_workflow:
                ticket = await self._attach_default_workflow(ticket, warnings)

            if ticket.has_workflow:
                try:
                    outcome = await self._execute_workflow(
                        ticket,
                        requested_status,
                        actor_id=actor_id,
                        actor_role=actor_role,
                        comment=comment,
                        resolution=resolution,
                        warnings=warnings,
                    )
                except WorkflowEngineError as exc:
                    logger.exception(
                        "Workflow execution for ticket %s encountered a technical error, falling back to legacy path",
                        ticket.number,
                    )
                    warnings.append(f"Workflow path failed, legacy path used: {exc}")
                else:
                    span.set_attribute("ticket.transition_path", outcome.path.value)
                    return outcome

            outcome = await self._execute_legacy(
                ticket,
                requested_status,
                actor_id=actor_id,
                comment=comment,
                resolution=resolution,
                warnings=warnings,
            )
            span.set_attribute("ticket.transition_path", outcome.path.value)
            return outcome

    async def _attach_default_workflow(self, ticket: Ticket, warnings: list[str]) -> Ticket:
        try:
            workflow = await self._workflows.find_default()
        except StorageUnavailableError as exc:
            logger.warning("Could not look up default workflow for ticket %s: %s", ticket.number, exc)
            warnings.append(f"Default workflow lookup failed: {exc}")
            return ticket
        if workflow is None:
            return ticket

        try:
            await self._tickets.attach_workflow(ticket.id, workflow.id)
        except StorageUnavailableError as exc:
            logger.warning("Could not attach default workflow to ticket %s: %s", ticket.number, exc)
            warnings.append(f"Default workflow {workflow.id} not persisted on ticket: {exc}")
        else:
            logger.info("Assigned default workflow %s to ticket %s", workflow.id, ticket.number)
        return replace(ticket, workflow_id=workflow.id)

    async def _effective_graph(self, ticket: Ticket) -> WorkflowGraph:
        if ticket.workflow_snapshot is not None:
            return ticket.workflow_snapshot.graph

        workflow = await self._workflows.find_by_id(ticket.workflow_id) if ticket.workflow_id else None
        if workflow is None:
            workflow = await self._workflows.find_default()
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {ticket.workflow_id} for ticket {ticket.number} not found")
        return workflow.graph

    async def _execute_workflow(
        self,
        ticket: Ticket,
        requested_status: str,
        *,
        actor_id: str,
        actor_role: Any,
        comment: str | None,
        resolution: str | None,
        warnings: list[str],
    ) -> TransitionOutcome:
        graph = await self._effective_graph(ticket)
        transition = resolve_transitions(graph, ticket.status, actor_role).find(requested_status)
        if transition is None:
            raise InvalidTicketTransitionError(
                f"Transition from {ticket.status} to {normalize_status(requested_status)} is not defined"
            )
        if not transition.can_execute:
            raise TransitionNotPermittedError(
                f"Transition from {ticket.status} to {transition.to} is not allowed for role {role_key(actor_role)}"
            )

        self._check_conditions(ticket, transition.edge.conditions, comment=comment, resolution=resolution)

        now = self._clock()
        changes: dict[str, Any] = {"status": transition.to}
        if resolution:
            changes["resolution"] = resolution
        extra_history: list[TicketHistoryEntry] = []
        effects = self._apply_actions(
            ticket,
            transition,
            transition.edge.actions,
            changes,
            extra_history,
            actor_id=actor_id,
            now=now,
        )
        if normalize_status(transition.to) == CLOSED_STATUS:
            changes["closed_at"] = now
        changes["updated_at"] = now

        history = self._history_for(ticket, changes, actor_id=actor_id, note=comment, now=now) + extra_history
        updated = await self._commit(ticket, changes, history)
        logger.info("Ticket %s moved %s -> %s via workflow", ticket.number, ticket.status, transition.to)
        return TransitionOutcome(
            ticket=updated,
            history=tuple(history),
            path=ExecutionPath.WORKFLOW,
            transition=transition,
            effects=tuple(effects),
            warnings=tuple(warnings),
        )

    async def _execute_legacy(
        self,
        ticket: Ticket,
        requested_status: str,
        *,
        actor_id: str,
        comment: str | None,
        resolution: str | None,
        warnings: list[str],
    ) -> TransitionOutcome:
        status = normalize_status(requested_status)
        if not status:
            raise InvalidTicketTransitionError("A target status is required")

        now = self._clock()
        changes: dict[str, Any] = {"status": status}
        if resolution:
            changes["resolution"] = resolution
        if status == CLOSED_STATUS:
            changes["closed_at"] = now
        changes["updated_at"] = now

        history = self._history_for(
            ticket, changes, actor_id=actor_id, note=comment, now=now, always=("status",)
        )
        updated = await self._commit(ticket, changes, history)
        logger.info("Ticket %s moved %s -> %s via legacy path", ticket.number, ticket.status, status)
        return TransitionOutcome(
            ticket=updated,
            history=tuple(history),
            path=ExecutionPath.LEGACY,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _check_conditions(
        ticket: Ticket,
        conditions: Sequence[WorkflowCondition],
        *,
        comment: str | None,
        resolution: str | None,
    ) -> None:
        for condition in conditions:
            if not condition.is_required:
                continue
            if condition.type is ConditionType.REQUIRES_COMMENT:
                if not (comment or "").strip():
                    raise TransitionConditionError("A comment is required for this transition")
            elif condition.type is ConditionType.REQUIRES_RESOLUTION:
                if not (resolution or ticket.resolution):
                    raise TransitionConditionError("Resolution is required for this transition")
            elif condition.type is ConditionType.REQUIRES_ASSIGNMENT:
                if not ticket.assigned_to_id:
                    raise TransitionConditionError("Ticket must be assigned before this transition")
            elif condition.type is ConditionType.PRIORITY_HIGH:
                if normalize_status(ticket.priority) not in HIGH_PRIORITIES:
                    raise TransitionConditionError("This transition requires high priority")
            else:
                logger.debug("Condition %s is not evaluated by the engine", condition.type.value)

    def _apply_actions(
        self,
        ticket: Ticket,
        transition: Transition,
        actions: Sequence[WorkflowAction],
        changes: dict[str, Any],
        extra_history: list[TicketHistoryEntry],
        *,
        actor_id: str,
        now: datetime,
    ) -> list[TransitionEffect]:
        effects: list[TransitionEffect] = []
        for action in actions:
            if not action.is_active:
                continue
            config = action.config
            if action.type is ActionType.ASSIGN_TO_USER:
                if config.get("assignToCurrentUser"):
                    changes["assigned_to_id"] = actor_id
                elif config.get("userId"):
                    changes["assigned_to_id"] = str(config["userId"])
            elif action.type is ActionType.UPDATE_PRIORITY:
                if config.get("newPriority"):
                    changes["priority"] = normalize_status(config["newPriority"])
            elif action.type is ActionType.CALCULATE_RESOLUTION_TIME:
                if normalize_status(transition.to) in (RESOLVED_STATUS, CLOSED_STATUS):
                    elapsed = int((now - ticket.created_at).total_seconds())
                    extra_history.append(
                        self._history_entry(ticket, "resolution_time", None, str(elapsed), actor_id, "", now)
                    )
            elif action.type is ActionType.LOG_ACTIVITY:
                message = str(config.get("message") or "Workflow action executed")
                extra_history.append(self._history_entry(ticket, "workflow_action", None, message, actor_id, "", now))
            elif action.type in DEFERRED_ACTIONS:
                effects.append(TransitionEffect(type=action.type, ticket_id=ticket.id, config=dict(config)))
        return effects

    def _history_for(
        self,
        ticket: Ticket,
        changes: Mapping[str, Any],
        *,
        actor_id: str,
        note: str | None,
        now: datetime,
        always: tuple[str, ...] = (),
    ) -> list[TicketHistoryEntry]:
        entries: list[TicketHistoryEntry] = []
        for field_name in TRACKED_FIELDS:
            if field_name not in changes:
                continue
            old_value = getattr(ticket, field_name)
            new_value = changes[field_name]
            if old_value == new_value and field_name not in always:
                continue
            entries.append(self._history_entry(ticket, field_name, old_value, new_value, actor_id, note or "", now))
        return entries

    @staticmethod
    def _history_entry(
        ticket: Ticket,
        field_name: str,
        old_value: Any,
        new_value: Any,
        actor_id: str,
        note: str,
        now: datetime,
    ) -> TicketHistoryEntry:
        return TicketHistoryEntry(
            id=uuid.uuid4(),
            ticket_id=ticket.id,
            field_name=field_name,
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
            actor=actor_id,
            note=note,
            created_at=now,
        )

    async def _commit(
        self,
        ticket: Ticket,
        changes: Mapping[str, Any],
        history: Sequence[TicketHistoryEntry],
    ) -> Ticket:
        updated = await self._tickets.apply_changes(
            ticket.id,
            expected_status=ticket.status,
            changes=changes,
            history=history,
        )
        if updated is not None:
            return updated

        current = await self._tickets.get_ticket(ticket.id)
        if current is None:
            raise TicketNotFoundError(f"Ticket {ticket.id} not found")
        raise TicketConflictError(
            f"Ticket {ticket.number} changed from {ticket.status} to {current.status} during the transition"
        )
