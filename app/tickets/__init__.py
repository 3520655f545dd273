"""Ticket domain models, errors and status vocabulary."""

from .errors import (
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketNumberAllocationError,
    TicketServiceError,
    TransitionNotPermittedError,
    WorkflowNotFoundError,
)
from .models import Ticket, TicketHistoryEntry
from .state import TicketPriority, normalize_status

__all__ = [
    "InvalidTicketTransitionError",
    "Ticket",
    "TicketConflictError",
    "TicketHistoryEntry",
    "TicketNotFoundError",
    "TicketNumberAllocationError",
    "TicketPriority",
    "TicketServiceError",
    "TransitionNotPermittedError",
    "WorkflowNotFoundError",
    "normalize_status",
]
