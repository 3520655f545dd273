import pytest

from app.workflows.models import WorkflowDefinition
from factories import (
    FIXED_NOW,
    InMemoryCounterStore,
    InMemoryTicketStore,
    InMemoryWorkflowStore,
    YieldingCounterStore,
    YieldingTicketStore,
    make_workflow,
)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def ticket_store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def support_workflow() -> WorkflowDefinition:
    return make_workflow()


@pytest.fixture
def workflow_store(support_workflow) -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore(support_workflow)


@pytest.fixture
def empty_workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def yielding_ticket_store() -> YieldingTicketStore:
    return YieldingTicketStore()


@pytest.fixture
def yielding_counter_store() -> YieldingCounterStore:
    return YieldingCounterStore()
