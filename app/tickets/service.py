from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, Sequence
from uuid import UUID, uuid4

from app.workflows.executor import TicketStore, TransitionExecutor, TransitionOutcome
from app.workflows.models import WorkflowGraph
from app.workflows.resolver import TransitionSet, resolve_transitions
from app.workflows.snapshot import WorkflowStore, capture_default_workflow

from .errors import (
    DuplicateTicketNumberError,
    TicketNotFoundError,
    TicketServiceError,
    WorkflowNotFoundError,
)
from .models import Ticket, TicketHistoryEntry
from .numbering import TicketNumberAllocator
from .state import CLOSED_STATUS, RESOLVED_STATUS, TicketPriority, normalize_status

logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 3


class TicketRepositoryProtocol(TicketStore, Protocol):
    async def create_ticket(self, ticket: Ticket) -> Ticket:
        ...

    async def get_history(self, ticket_id: UUID) -> Sequence[TicketHistoryEntry]:
        ...

    async def list_stale_tickets(self, *, status: str, updated_before: datetime) -> Sequence[Ticket]:
        ...

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        ...


@dataclass(slots=True)
class TicketCreationResult:
    ticket: Ticket
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class AutoCloseReport:
    closed: list[str]
    failed: dict[str, str]


@dataclass(slots=True)
class AutoClosePolicy:
    enabled: bool = False
    days: int = 7
    actor_id: str = "system"
    actor_role: str = "ADMIN"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketService:
    """High level orchestration for ticket creation and lifecycle changes."""

    def __init__(
        self,
        repository: TicketRepositoryProtocol,
        workflows: WorkflowStore,
        allocator: TicketNumberAllocator,
        *,
        executor: TransitionExecutor | None = None,
        auto_close: AutoClosePolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._workflows = workflows
        self._allocator = allocator
        self._clock = clock or _utcnow
        self._executor = executor or TransitionExecutor(repository, workflows, clock=self._clock)
        self._auto_close = auto_close or AutoClosePolicy()

    async def create_ticket(
        self,
        *,
        title: str,
        description: str,
        requester_id: str,
        priority: str = TicketPriority.MEDIUM.value,
    ) -> TicketCreationResult:
        capture = await capture_default_workflow(self._workflows)
        warnings = list(capture.warnings)

        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            allocation = await self._allocator.allocate()
            warnings.extend(allocation.warnings)
            now = self._clock()
            ticket = Ticket(
                id=uuid4(),
                number=allocation.number,
                title=title,
                description=description,
                status=capture.initial_status,
                priority=normalize_status(priority),
                requester_id=requester_id,
                workflow_id=capture.workflow_id,
                workflow_snapshot=capture.snapshot,
                workflow_version=capture.version,
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self._repository.create_ticket(ticket)
            except DuplicateTicketNumberError:
                if attempt == MAX_CREATE_ATTEMPTS:
                    raise
                logger.warning("Ticket number %s was taken concurrently, allocating again", allocation.number)
                continue
            logger.info("Ticket created: %s with status %s", created.number, created.status)
            return TicketCreationResult(ticket=created, warnings=tuple(warnings))

        raise TicketServiceError("Ticket could not be created")

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def get_history(self, ticket_id: UUID) -> list[TicketHistoryEntry]:
        await self.get_ticket(ticket_id)
        return list(await self._repository.get_history(ticket_id))

    async def delete_ticket(self, ticket_id: UUID) -> None:
        deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")

    async def list_transitions(self, ticket_id: UUID, *, actor_role: Any) -> TransitionSet:
        """Transitions offered to ``actor_role`` from the ticket's current status."""

        ticket = await self.get_ticket(ticket_id)
        graph = await self._graph_for(ticket)
        return resolve_transitions(graph, ticket.status, actor_role)

    async def change_status(
        self,
        ticket_id: UUID,
        *,
        new_status: str,
        actor_id: str,
        actor_role: Any,
        comment: str | None = None,
        resolution: str | None = None,
    ) -> TransitionOutcome:
        logger.info("Updating status of ticket %s to %s by user %s", ticket_id, new_status, actor_id)
        return await self._executor.execute(
            ticket_id,
            new_status,
            actor_id=actor_id,
            actor_role=actor_role,
            comment=comment,
            resolution=resolution,
        )

    async def close_stale_resolved_tickets(self, *, now: datetime | None = None) -> AutoCloseReport:
        """Close tickets left in RESOLVED for longer than the configured number of days."""

        report = AutoCloseReport(closed=[], failed={})
        policy = self._auto_close
        if not policy.enabled:
            return report

        cutoff = (now or self._clock()) - timedelta(days=policy.days)
        tickets = await self._repository.list_stale_tickets(status=RESOLVED_STATUS, updated_before=cutoff)
        for ticket in tickets:
            try:
                await self._executor.execute(
                    ticket.id,
                    CLOSED_STATUS,
                    actor_id=policy.actor_id,
                    actor_role=policy.actor_role,
                    comment=f"Automatically closed after being resolved for {policy.days} days",
                )
            except TicketServiceError as exc:
                logger.warning("Auto-close of ticket %s failed: %s", ticket.number, exc)
                report.failed[ticket.number] = str(exc)
                continue
            logger.info("Auto-closed ticket %s", ticket.number)
            report.closed.append(ticket.number)

        if report.closed:
            logger.info("Auto-closed %d resolved tickets", len(report.closed))
        return report

    async def _graph_for(self, ticket: Ticket) -> WorkflowGraph:
        if ticket.workflow_snapshot is not None:
            return ticket.workflow_snapshot.graph
        workflow = await self._workflows.find_by_id(ticket.workflow_id) if ticket.workflow_id else None
        if workflow is None:
            workflow = await self._workflows.find_default()
        if workflow is None:
            if ticket.workflow_id:
                raise WorkflowNotFoundError(f"Workflow {ticket.workflow_id} for ticket {ticket.number} not found")
            return WorkflowGraph(nodes=(), edges=())
        return workflow.graph
