import asyncio
from datetime import datetime, timezone

import pytest

from app.tickets.errors import TicketNumberAllocationError
from app.tickets.numbering import (
    COUNTER_KEY,
    TicketNumberAllocator,
    format_ticket_number,
    max_ticket_sequence,
    parse_ticket_sequence,
)
from factories import FIXED_NOW, InMemoryCounterStore, make_ticket


def _allocator(counter_store, ticket_store, **kwargs) -> TicketNumberAllocator:
    return TicketNumberAllocator(counter_store, ticket_store, clock=lambda: FIXED_NOW, **kwargs)


def test_format_and_parse_ticket_numbers():
    assert format_ticket_number(2025, 42) == "TKT-2025-000042"
    assert format_ticket_number(2025, 1234567) == "TKT-2025-1234567"
    assert parse_ticket_sequence("TKT-2024-000107") == 107
    assert parse_ticket_sequence("INC-2024-000107") is None
    assert parse_ticket_sequence("TKT-24-000107") is None
    assert parse_ticket_sequence("OPS-2024-000009", prefix="OPS") == 9


def test_max_sequence_ignores_foreign_numbers():
    numbers = ["TKT-2023-000010", "TKT-2025-000003", "legacy-99", "TKT-2025-abc"]
    assert max_ticket_sequence(numbers) == 10
    assert max_ticket_sequence([]) == 0


@pytest.mark.asyncio
async def test_allocate_initializes_counter_from_existing_tickets(counter_store, ticket_store):
    ticket_store.add(make_ticket(number="TKT-2025-000003"))

    result = await _allocator(counter_store, ticket_store).allocate()

    assert result.number == "TKT-2025-000004"
    assert result.sequence == 4
    assert result.counter_persisted is True
    assert result.warnings == ()
    assert counter_store.values[COUNTER_KEY] == "4"


@pytest.mark.asyncio
async def test_allocate_uses_year_of_clock(counter_store, ticket_store):
    allocator = TicketNumberAllocator(
        counter_store,
        ticket_store,
        clock=lambda: datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    result = await allocator.allocate()

    assert result.number == "TKT-2026-000001"


@pytest.mark.asyncio
async def test_sequential_allocations_are_unique(counter_store, ticket_store):
    allocator = _allocator(counter_store, ticket_store)
    issued = []
    for _ in range(5):
        result = await allocator.allocate()
        ticket_store.add(make_ticket(number=result.number))
        issued.append(result.number)

    assert len(set(issued)) == 5
    assert issued[-1] == "TKT-2025-000005"


@pytest.mark.asyncio
async def test_numbers_are_not_reused_after_delete(counter_store, ticket_store):
    allocator = _allocator(counter_store, ticket_store)
    first = await allocator.allocate()
    ticket_store.add(make_ticket(number=first.number))
    second = await allocator.allocate()
    latest = ticket_store.add(make_ticket(number=second.number))

    await ticket_store.delete_ticket(latest.id)
    third = await allocator.allocate()

    assert third.number not in {first.number, second.number}
    assert third.sequence == 3


@pytest.mark.asyncio
async def test_lagging_counter_is_corrected_with_warning(ticket_store):
    counters = InMemoryCounterStore({COUNTER_KEY: "2"})
    ticket_store.add(make_ticket(number="TKT-2025-000009"))

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000010"
    assert any("lower than max ticket number" in warning for warning in result.warnings)
    assert counters.values[COUNTER_KEY] == "10"


@pytest.mark.asyncio
async def test_counter_ahead_of_tickets_wins(ticket_store):
    counters = InMemoryCounterStore({COUNTER_KEY: "41"})
    ticket_store.add(make_ticket(number="TKT-2025-000005"))

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000042"
    assert result.warnings == ()


@pytest.mark.asyncio
async def test_invalid_counter_value_falls_back_to_max(ticket_store):
    counters = InMemoryCounterStore({COUNTER_KEY: "not-a-number"})
    ticket_store.add(make_ticket(number="TKT-2025-000007"))

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000008"
    assert any("Invalid counter value" in warning for warning in result.warnings)


@pytest.mark.asyncio
async def test_collision_moves_to_next_free_number(ticket_store):
    counters = InMemoryCounterStore({COUNTER_KEY: "5"})
    # Committed by a concurrent allocator after the max scan ran.
    ticket_store.add(make_ticket(number="TKT-2025-000006"))

    async def stale_scan():
        return []

    ticket_store.list_ticket_numbers = stale_scan

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000007"
    assert any("already exists" in warning for warning in result.warnings)
    assert counters.values[COUNTER_KEY] == "7"


@pytest.mark.asyncio
async def test_counter_store_outage_falls_back_without_persisting(ticket_store):
    counters = InMemoryCounterStore()
    counters.unavailable = True
    ticket_store.add(make_ticket(number="TKT-2025-000011"))

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000012"
    assert result.counter_persisted is False
    assert any("Counter store unavailable" in warning for warning in result.warnings)


@pytest.mark.asyncio
async def test_failed_counter_update_is_reported_not_raised(ticket_store):
    counters = InMemoryCounterStore()
    counters.fail_advance = True

    result = await _allocator(counters, ticket_store).allocate()

    assert result.number == "TKT-2025-000001"
    assert result.counter_persisted is False
    assert any("Failed to update ticket number counter" in warning for warning in result.warnings)


@pytest.mark.asyncio
async def test_allocation_gives_up_after_bounded_retries(counter_store, ticket_store):
    async def always_taken(number: str) -> bool:
        return True

    ticket_store.ticket_number_exists = always_taken

    with pytest.raises(TicketNumberAllocationError):
        await _allocator(counter_store, ticket_store, max_retries=3).allocate()


@pytest.mark.asyncio
async def test_interleaved_allocations_hand_out_distinct_numbers(yielding_counter_store, yielding_ticket_store):
    allocator = _allocator(yielding_counter_store, yielding_ticket_store)

    async def allocate_and_store():
        result = await allocator.allocate()
        await yielding_ticket_store.create_ticket(make_ticket(number=result.number))
        return result

    results = await asyncio.gather(*(allocate_and_store() for _ in range(5)))

    numbers = [result.number for result in results]
    assert len(set(numbers)) == len(numbers)
    assert sorted(numbers) == [format_ticket_number(2025, sequence) for sequence in range(1, 6)]
    assert yielding_counter_store.values[COUNTER_KEY] == "5"
