from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.dependencies import auth as auth_deps
from app.dependencies import tickets as ticket_deps
from app.dependencies.auth import Role, User
from app.main import create_app
from app.tickets.errors import (
    InvalidTicketTransitionError,
    StorageUnavailableError,
    TicketConflictError,
    TicketNotFoundError,
    TicketNumberAllocationError,
    TransitionNotPermittedError,
)
from app.tickets.models import TicketHistoryEntry
from app.tickets.service import TicketCreationResult
from app.workflows.executor import ExecutionPath, TransitionOutcome
from app.workflows.models import WorkflowGraph
from app.workflows.resolver import resolve_transitions
from factories import make_ticket, make_workflow, support_definition


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()
    workflows = AsyncMock()
    staff = User("u-staff", "staff", (Role.SUPPORT_STAFF,))

    async def override_service():
        return service

    async def override_workflows():
        return workflows

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[ticket_deps.get_workflow_repository] = override_workflows
    app.dependency_overrides[auth_deps.get_current_user] = lambda: staff
    client = TestClient(app)
    try:
        yield client, service, workflows
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_endpoint_returns_created(ticket_client):
    client, service, _ = ticket_client
    ticket = make_ticket()
    service.create_ticket = AsyncMock(return_value=TicketCreationResult(ticket=ticket))

    response = client.post("/tickets", json={"title": "Printer", "description": "Smoking", "priority": "HIGH"})

    assert response.status_code == 201
    body = response.json()
    assert body["id"] == str(ticket.id)
    assert body["number"] == ticket.number
    assert body["status"] == "NEW"
    service.create_ticket.assert_awaited_with(
        title="Printer",
        description="Smoking",
        requester_id="u-staff",
        priority="HIGH",
    )


def test_create_ticket_validates_priority(ticket_client):
    client, _, _ = ticket_client

    response = client.post("/tickets", json={"title": "Printer", "description": "Smoking", "priority": "URGENT"})

    assert response.status_code == 422


def test_create_ticket_maps_allocation_failure(ticket_client):
    client, service, _ = ticket_client
    service.create_ticket = AsyncMock(side_effect=TicketNumberAllocationError("exhausted"))

    response = client.post("/tickets", json={"title": "Printer", "description": "Smoking"})

    assert response.status_code == 503


def test_get_ticket_not_found(ticket_client):
    client, service, _ = ticket_client
    service.get_ticket = AsyncMock(side_effect=TicketNotFoundError("missing"))

    response = client.get(f"/tickets/{uuid4()}")

    assert response.status_code == 404


def test_list_transitions_uses_active_role(ticket_client):
    client, service, _ = ticket_client
    graph = WorkflowGraph.from_definition(support_definition())
    service.list_transitions = AsyncMock(return_value=resolve_transitions(graph, "RESOLVED", "SUPPORT_STAFF"))
    ticket_id = uuid4()

    response = client.get(f"/tickets/{ticket_id}/transitions")

    assert response.status_code == 200
    body = response.json()
    assert body["current_status"] == "RESOLVED"
    assert [item["to"] for item in body["transitions"]] == ["CLOSED", "IN_PROGRESS"]
    assert [item["can_execute"] for item in body["transitions"]] == [False, True]
    assert body["available_statuses"] == ["IN_PROGRESS"]
    service.list_transitions.assert_awaited_with(ticket_id, actor_role=Role.SUPPORT_STAFF)


def test_change_status_returns_updated_ticket(ticket_client):
    client, service, _ = ticket_client
    ticket = make_ticket(status="IN_PROGRESS")
    service.change_status = AsyncMock(
        return_value=TransitionOutcome(ticket=ticket, history=(), path=ExecutionPath.WORKFLOW)
    )

    response = client.post(f"/tickets/{ticket.id}/status", json={"status": "IN_PROGRESS", "comment": "On it"})

    assert response.status_code == 200
    assert response.json()["status"] == "IN_PROGRESS"
    service.change_status.assert_awaited_with(
        ticket.id,
        new_status="IN_PROGRESS",
        actor_id="u-staff",
        actor_role=Role.SUPPORT_STAFF,
        comment="On it",
        resolution=None,
    )


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (TransitionNotPermittedError("role"), 403),
        (InvalidTicketTransitionError("nope"), 409),
        (TicketConflictError("raced"), 409),
        (TicketNotFoundError("missing"), 404),
        (StorageUnavailableError("down"), 503),
    ],
)
def test_change_status_error_mapping(ticket_client, error, status_code):
    client, service, _ = ticket_client
    service.change_status = AsyncMock(side_effect=error)

    response = client.post(f"/tickets/{uuid4()}/status", json={"status": "RESOLVED"})

    assert response.status_code == status_code


def test_history_endpoint_returns_entries(ticket_client):
    client, service, _ = ticket_client
    ticket = make_ticket()
    entry = TicketHistoryEntry(
        id=uuid4(),
        ticket_id=ticket.id,
        field_name="status",
        old_value="NEW",
        new_value="IN_PROGRESS",
        actor="u-staff",
        note="Picked up",
        created_at=datetime.now(timezone.utc),
    )
    service.get_history = AsyncMock(return_value=[entry])

    response = client.get(f"/tickets/{ticket.id}/history")

    assert response.status_code == 200
    assert response.json()[0]["field_name"] == "status"
    assert response.json()[0]["note"] == "Picked up"


def test_workflows_endpoint_lists_active_definitions(ticket_client):
    client, _, workflows = ticket_client
    workflows.find_all_active = AsyncMock(return_value=[make_workflow()])

    response = client.get("/workflows")

    assert response.status_code == 200
    assert response.json()[0]["id"] == "wf-support"
    assert response.json()[0]["status"] == "ACTIVE"


def test_requests_without_token_are_rejected():
    client = TestClient(create_app())

    response = client.get(f"/tickets/{uuid4()}")

    assert response.status_code == 401


def test_workflows_require_staff_role():
    client = TestClient(create_app())

    response = client.get("/workflows", headers={"Authorization": "Bearer user-token"})

    assert response.status_code == 403


def test_unconfigured_service_returns_503():
    client = TestClient(create_app())

    response = client.get(f"/tickets/{uuid4()}", headers={"Authorization": "Bearer staff-token"})

    assert response.status_code == 503
