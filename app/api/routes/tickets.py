from __future__ import annotations

from datetime import datetime
from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from app.dependencies.tickets import AnyUser, get_ticket_service
from app.tickets.errors import (
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketNumberAllocationError,
    TicketServiceError,
    TransitionNotPermittedError,
    WorkflowEngineError,
    WorkflowNotFoundError,
)
from app.tickets.models import Ticket, TicketHistoryEntry
from app.tickets.service import TicketService
from app.tickets.state import TicketPriority
from app.workflows.resolver import Transition, TransitionSet

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketStatusChangeRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=100)
    comment: str | None = Field(default=None, max_length=2000)
    resolution: str | None = Field(default=None, max_length=5000)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    number: str
    title: str
    description: str
    status: str
    priority: str
    requester_id: str
    assigned_to_id: str | None
    resolution: str | None
    workflow_id: str | None
    workflow_version: int | None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None


class TicketHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_id: UUID
    field_name: str
    old_value: str | None
    new_value: str | None
    actor: str
    note: str
    created_at: datetime


class TransitionResponse(BaseModel):
    id: str
    from_status: str
    to: str
    label: str
    can_execute: bool


class TransitionListResponse(BaseModel):
    current_status: str
    transitions: list[TransitionResponse]
    available_statuses: list[str]


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_history_response(entry: TicketHistoryEntry) -> TicketHistoryResponse:
    return TicketHistoryResponse.model_validate(entry)


def _to_transition_response(transition: Transition) -> TransitionResponse:
    return TransitionResponse(
        id=transition.id,
        from_status=transition.from_status,
        to=transition.to,
        label=transition.label,
        can_execute=transition.can_execute,
    )


def _to_transition_list(transitions: TransitionSet) -> TransitionListResponse:
    return TransitionListResponse(
        current_status=transitions.current_status,
        transitions=[_to_transition_response(transition) for transition in transitions],
        available_statuses=list(transitions.available_statuses),
    )


def _raise_http(exc: TicketServiceError) -> NoReturn:
    if isinstance(exc, (TicketNotFoundError, WorkflowNotFoundError)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, TransitionNotPermittedError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, (InvalidTicketTransitionError, TicketConflictError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, (TicketNumberAllocationError, WorkflowEngineError)):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    raise exc


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, user: AnyUser, service: TicketServiceDep) -> TicketResponse:
    try:
        result = await service.create_ticket(
            title=payload.title,
            description=payload.description,
            requester_id=user.id,
            priority=payload.priority.value,
        )
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(result.ticket)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: UUID, _: AnyUser, service: TicketServiceDep) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(ticket)


@router.get("/{ticket_id}/transitions", response_model=TransitionListResponse)
async def list_ticket_transitions(ticket_id: UUID, user: AnyUser, service: TicketServiceDep) -> TransitionListResponse:
    try:
        transitions = await service.list_transitions(ticket_id, actor_role=user.active_role)
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_transition_list(transitions)


@router.post("/{ticket_id}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_id: UUID,
    payload: TicketStatusChangeRequest,
    user: AnyUser,
    service: TicketServiceDep,
) -> TicketResponse:
    try:
        outcome = await service.change_status(
            ticket_id,
            new_status=payload.status,
            actor_id=user.id,
            actor_role=user.active_role,
            comment=payload.comment,
            resolution=payload.resolution,
        )
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(outcome.ticket)


@router.get("/{ticket_id}/history", response_model=list[TicketHistoryResponse])
async def get_ticket_history(ticket_id: UUID, _: AnyUser, service: TicketServiceDep) -> list[TicketHistoryResponse]:
    try:
        entries = await service.get_history(ticket_id)
    except TicketServiceError as exc:
        _raise_http(exc)
    return [_to_history_response(entry) for entry in entries]
