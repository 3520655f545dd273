from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""


class WorkflowNotFoundError(TicketServiceError):
    """Raised when a ticket references a workflow that no longer resolves."""


class TransitionRejectedError(TicketServiceError):
    """Base class for transitions refused by the workflow rules."""


class InvalidTicketTransitionError(TransitionRejectedError):
    """Raised when attempting to transition to an unreachable state."""


class TransitionConditionError(InvalidTicketTransitionError):
    """Raised when a required transition condition is not met."""


class TransitionNotPermittedError(TransitionRejectedError):
    """Raised when the transition exists but the actor's role may not run it."""


class TicketConflictError(TransitionRejectedError):
    """Raised when the ticket changed status underneath a transition."""


class WorkflowEngineError(TicketServiceError):
    """Technical failure on the workflow path (storage, bad definitions)."""


class StorageUnavailableError(WorkflowEngineError):
    """Raised when the backing store cannot serve a request."""


class DuplicateTicketNumberError(StorageUnavailableError):
    """Raised when an insert collides with an existing ticket number."""


class MalformedWorkflowError(WorkflowEngineError):
    """Raised when a workflow definition cannot be interpreted."""


class TicketNumberAllocationError(TicketServiceError):
    """Raised when no unique ticket number could be allocated."""
