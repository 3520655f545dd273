from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from app.workflows.models import WorkflowSnapshot


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a service desk ticket."""

    id: UUID
    number: str
    title: str
    description: str
    status: str
    priority: str
    requester_id: str
    created_at: datetime
    updated_at: datetime
    assigned_to_id: str | None = None
    resolution: str | None = None
    workflow_id: str | None = None
    workflow_snapshot: WorkflowSnapshot | None = None
    workflow_version: int | None = None
    closed_at: datetime | None = None

    @property
    def has_workflow(self) -> bool:
        return self.workflow_id is not None or self.workflow_snapshot is not None


@dataclass(slots=True)
class TicketHistoryEntry:
    """Append-only record of a single field change on a ticket."""

    id: UUID
    ticket_id: UUID
    field_name: str
    old_value: str | None
    new_value: str | None
    actor: str
    created_at: datetime
    note: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
