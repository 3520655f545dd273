from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from app.tickets.errors import MalformedWorkflowError, StorageUnavailableError
from app.tickets.state import DEFAULT_INITIAL_STATUS

from .models import WorkflowDefinition, WorkflowGraph, WorkflowSnapshot
from .resolver import status_for_node

logger = logging.getLogger(__name__)


class WorkflowStore(Protocol):
    async def find_by_id(self, workflow_id: str) -> WorkflowDefinition | None:
        ...

    async def find_default(self) -> WorkflowDefinition | None:
        ...

    async def find_all_active(self) -> Sequence[WorkflowDefinition]:
        ...


@dataclass(slots=True)
class WorkflowCapture:
    """Workflow fields stamped onto a ticket at creation time."""

    workflow_id: str | None
    snapshot: WorkflowSnapshot | None
    version: int | None
    initial_status: str
    warnings: tuple[str, ...] = ()


def extract_initial_status(graph: WorkflowGraph) -> str:
    """Derive the entry status from the graph's create transition."""

    edge = graph.create_edge
    if edge is None or not edge.target:
        return DEFAULT_INITIAL_STATUS

    target = graph.node(edge.target)
    if target is not None:
        return status_for_node(target)
    return edge.target.upper()


async def capture_default_workflow(repository: WorkflowStore) -> WorkflowCapture:
    """Snapshot the current default workflow for a ticket about to be created.

    Ticket creation must not depend on workflow configuration, so a missing
    default, an unreachable store or an unreadable definition all degrade to the
    fixed ``NEW`` entry status and are reported as warnings.
    """

    try:
        workflow = await repository.find_default()
    except StorageUnavailableError as exc:
        logger.exception("Failed to resolve default workflow")
        return WorkflowCapture(
            workflow_id=None,
            snapshot=None,
            version=None,
            initial_status=DEFAULT_INITIAL_STATUS,
            warnings=(f"Default workflow lookup failed: {exc}",),
        )

    if workflow is None:
        message = "No default workflow found, ticket will be created without workflow"
        logger.warning(message)
        return WorkflowCapture(
            workflow_id=None,
            snapshot=None,
            version=None,
            initial_status=DEFAULT_INITIAL_STATUS,
            warnings=(message,),
        )

    snapshot = WorkflowSnapshot.capture(workflow)
    warnings: list[str] = []
    try:
        initial_status = extract_initial_status(snapshot.graph)
    except MalformedWorkflowError as exc:
        message = f"Workflow {workflow.id} definition is malformed, using {DEFAULT_INITIAL_STATUS}: {exc}"
        logger.warning(message)
        warnings.append(message)
        initial_status = DEFAULT_INITIAL_STATUS

    return WorkflowCapture(
        workflow_id=workflow.id,
        snapshot=snapshot,
        version=snapshot.version,
        initial_status=initial_status,
        warnings=tuple(warnings),
    )
