from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from app.dependencies.tickets import StaffUser, get_workflow_repository
from app.tickets.errors import StorageUnavailableError
from app.workflows.models import WorkflowDefinition
from app.workflows.repository import WorkflowRepository

router = APIRouter(prefix="/workflows", tags=["workflows"])


class WorkflowSummaryResponse(BaseModel):
    id: str
    name: str
    version: int
    status: str
    is_default: bool
    created_at: datetime


WorkflowRepositoryDep = Annotated[WorkflowRepository, Depends(get_workflow_repository)]


def _to_summary(workflow: WorkflowDefinition) -> WorkflowSummaryResponse:
    return WorkflowSummaryResponse(
        id=workflow.id,
        name=workflow.name,
        version=workflow.version,
        status=workflow.status.value,
        is_default=workflow.is_default,
        created_at=workflow.created_at,
    )


@router.get("", response_model=list[WorkflowSummaryResponse])
async def list_active_workflows(_: StaffUser, repository: WorkflowRepositoryDep) -> list[WorkflowSummaryResponse]:
    try:
        workflows = await repository.find_all_active()
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [_to_summary(workflow) for workflow in workflows]
