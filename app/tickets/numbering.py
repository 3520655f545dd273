"""Allocation of human readable ticket numbers (``TKT-2025-000042``).

Numbers are never reused, including after the owning ticket is deleted. Each
allocation takes the larger of the persisted counter and the highest suffix in
storage, then checks for collisions before handing the number out. There is no
lock; concurrent allocations are separated by the collision check and a bounded retry.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol, Sequence

from opentelemetry import trace

from .errors import StorageUnavailableError, TicketNumberAllocationError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_PREFIX = "TKT"
COUNTER_KEY = "ticket_number_counter"
MAX_COLLISION_RETRIES = 10


class CounterStore(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def advance(self, key: str, value: int) -> None:
        ...


class TicketNumberStore(Protocol):
    async def list_ticket_numbers(self) -> Sequence[str]:
        ...

    async def ticket_number_exists(self, number: str) -> bool:
        ...


@dataclass(slots=True)
class AllocationResult:
    number: str
    sequence: int
    counter_persisted: bool
    warnings: tuple[str, ...] = ()


def format_ticket_number(year: int, sequence: int, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}-{year:04d}-{sequence:06d}"


def _number_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}-\d{{4}}-(\d+)$")


def parse_ticket_sequence(number: str, prefix: str = DEFAULT_PREFIX) -> int | None:
    match = _number_pattern(prefix).match(number or "")
    if match is None:
        return None
    return int(match.group(1))


def max_ticket_sequence(numbers: Iterable[str], prefix: str = DEFAULT_PREFIX) -> int:
    pattern = _number_pattern(prefix)
    highest = 0
    for number in numbers:
        match = pattern.match(number or "")
        if match is not None:
            highest = max(highest, int(match.group(1)))
    return highest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketNumberAllocator:
    """Issue the next unique ticket number."""

    def __init__(
        self,
        counters: CounterStore,
        tickets: TicketNumberStore,
        *,
        prefix: str = DEFAULT_PREFIX,
        counter_key: str = COUNTER_KEY,
        max_retries: int = MAX_COLLISION_RETRIES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._counters = counters
        self._tickets = tickets
        self._prefix = prefix
        self._counter_key = counter_key
        self._max_retries = max_retries
        self._clock = clock or _utcnow

    async def allocate(self) -> AllocationResult:
        with tracer.start_as_current_span("tickets.allocate_number"):
            warnings: list[str] = []
            year = self._clock().year
            highest = max_ticket_sequence(await self._tickets.list_ticket_numbers(), self._prefix)

            try:
                raw_counter = await self._counters.get(self._counter_key)
            except StorageUnavailableError as exc:
                self._warn(warnings, "Counter store unavailable, falling back to max-based numbering: %s", exc)
                return await self._claim(year, highest + 1, warnings, persist=False)

            candidate = self._next_sequence(raw_counter, highest, warnings)
            persisted = await self._persist(candidate, warnings)
            number = format_ticket_number(year, candidate, self._prefix)
            if not await self._tickets.ticket_number_exists(number):
                logger.info("Generated ticket number %s (counter: %d)", number, candidate)
                return AllocationResult(number, candidate, persisted, tuple(warnings))

            self._warn(warnings, "Ticket number %s already exists, trying next number", number)
            return await self._claim(year, candidate + 1, warnings, persist=True)

    def _next_sequence(self, raw_counter: str | None, highest: int, warnings: list[str]) -> int:
        if raw_counter is None or not str(raw_counter).strip():
            logger.info("Ticket number counter not found, initializing from existing tickets")
            return highest + 1
        try:
            counter = int(str(raw_counter).strip())
        except ValueError:
            self._warn(warnings, "Invalid counter value %r, using max from tickets", raw_counter)
            return highest + 1
        if counter < highest:
            self._warn(
                warnings,
                "Counter value (%d) is lower than max ticket number (%d). Using %d to prevent ID reuse.",
                counter,
                highest,
                highest + 1,
            )
        return max(counter, highest) + 1

    async def _claim(self, year: int, start: int, warnings: list[str], *, persist: bool) -> AllocationResult:
        for candidate in range(start, start + self._max_retries):
            number = format_ticket_number(year, candidate, self._prefix)
            if await self._tickets.ticket_number_exists(number):
                continue
            persisted = await self._persist(candidate, warnings) if persist else False
            logger.info("Generated ticket number %s after retry", number)
            return AllocationResult(number, candidate, persisted, tuple(warnings))

        raise TicketNumberAllocationError(
            f"Unable to generate unique ticket number after {self._max_retries} attempts"
        )

    async def _persist(self, sequence: int, warnings: list[str]) -> bool:
        try:
            await self._counters.advance(self._counter_key, sequence)
        except StorageUnavailableError as exc:
            self._warn(warnings, "Failed to update ticket number counter to %d: %s", sequence, exc)
            return False
        return True

    @staticmethod
    def _warn(warnings: list[str], message: str, *args: object) -> None:
        logger.warning(message, *args)
        warnings.append(message % args)
