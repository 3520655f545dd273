from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from app.dependencies.auth import CurrentUser, Role, User, role_required
from app.tickets.service import TicketService
from app.workflows.repository import WorkflowRepository

require_staff = role_required(Role.SUPPORT_STAFF, Role.SUPPORT_MANAGER, Role.ADMIN)

StaffUser = Annotated[User, Depends(require_staff)]
AnyUser = CurrentUser


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_workflow_repository(request: Request) -> WorkflowRepository:
    repository = getattr(request.app.state, "workflow_repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Workflow storage is not configured")
    return repository
