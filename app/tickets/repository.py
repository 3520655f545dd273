from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

import asyncpg

from app.services.postgres import translate_storage_errors
from app.workflows.models import WorkflowSnapshot

from .errors import DuplicateTicketNumberError
from .models import Ticket, TicketHistoryEntry

_TICKET_COLUMNS = (
    "id, number, title, description, status, priority, requester_id, assigned_to_id, resolution, "
    "workflow_id, workflow_snapshot, workflow_version, created_at, updated_at, closed_at"
)


class TicketRepository:
    """Data access layer for ticket records and their history."""

    MUTABLE_COLUMNS = frozenset({"status", "resolution", "priority", "assigned_to_id", "closed_at", "updated_at"})

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id UUID PRIMARY KEY,
        number TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        requester_id TEXT NOT NULL,
        assigned_to_id TEXT NULL,
        resolution TEXT NULL,
        workflow_id TEXT NULL,
        workflow_snapshot JSONB NULL,
        workflow_version INTEGER NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        closed_at TIMESTAMPTZ NULL
    )
    """

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_history (
        id UUID PRIMARY KEY,
        ticket_id UUID NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        field_name TEXT NOT NULL,
        old_value TEXT NULL,
        new_value TEXT NULL,
        actor TEXT NOT NULL,
        note TEXT NOT NULL DEFAULT '',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets (
        id, number, title, description, status, priority, requester_id, assigned_to_id, resolution,
        workflow_id, workflow_snapshot, workflow_version, created_at, updated_at, closed_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13, $14, $15)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_NUMBERS_SQL = """
    SELECT number FROM tickets
    """

    _NUMBER_EXISTS_SQL = """
    SELECT EXISTS (SELECT 1 FROM tickets WHERE number = $1)
    """

    _ATTACH_WORKFLOW_SQL = """
    UPDATE tickets
    SET workflow_id = $2,
        updated_at = CURRENT_TIMESTAMP
    WHERE id = $1 AND workflow_id IS NULL
    """

    _SELECT_STALE_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE status = $1 AND updated_at <= $2
    ORDER BY updated_at ASC
    """

    _DELETE_TICKET_SQL = """
    DELETE FROM tickets WHERE id = $1
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO ticket_history (id, ticket_id, field_name, old_value, new_value, actor, note, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
    """

    _SELECT_HISTORY_SQL = """
    SELECT id, ticket_id, field_name, old_value, new_value, actor, note, metadata, created_at
    FROM ticket_history
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with translate_storage_errors("Ticket schema setup"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE_TICKETS_SQL)
                await connection.execute(self._CREATE_HISTORY_SQL)

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        snapshot = ticket.workflow_snapshot
        async with translate_storage_errors("Ticket insert"):
            async with self._pool.acquire() as connection:
                try:
                    row = await connection.fetchrow(
                        self._INSERT_TICKET_SQL,
                        ticket.id,
                        ticket.number,
                        ticket.title,
                        ticket.description,
                        ticket.status,
                        ticket.priority,
                        ticket.requester_id,
                        ticket.assigned_to_id,
                        ticket.resolution,
                        ticket.workflow_id,
                        None if snapshot is None else json.dumps(snapshot.to_payload()),
                        ticket.workflow_version,
                        ticket.created_at,
                        ticket.updated_at,
                        ticket.closed_at,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise DuplicateTicketNumberError(f"Ticket number {ticket.number} already exists") from exc
        if row is None:
            raise RuntimeError("Failed to insert ticket")
        return self._row_to_ticket(row)

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        async with translate_storage_errors("Ticket lookup"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def list_ticket_numbers(self) -> list[str]:
        async with translate_storage_errors("Ticket number scan"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._SELECT_NUMBERS_SQL)
        return [str(row["number"]) for row in rows]

    async def ticket_number_exists(self, number: str) -> bool:
        async with translate_storage_errors("Ticket number lookup"):
            async with self._pool.acquire() as connection:
                exists = await connection.fetchval(self._NUMBER_EXISTS_SQL, number)
        return bool(exists)

    async def attach_workflow(self, ticket_id: UUID, workflow_id: str) -> None:
        async with translate_storage_errors("Workflow attachment"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._ATTACH_WORKFLOW_SQL, ticket_id, workflow_id)

    async def apply_changes(
        self,
        ticket_id: UUID,
        *,
        expected_status: str,
        changes: Mapping[str, Any],
        history: Sequence[TicketHistoryEntry],
    ) -> Ticket | None:
        """Update the ticket and append history in one transaction.

        The update only applies while the row still holds ``expected_status``;
        ``None`` is returned when no row matched.
        """

        unknown = set(changes) - self.MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported ticket columns: {sorted(unknown)}")
        if not changes:
            raise ValueError("No ticket changes supplied")

        assignments = [f"{column} = ${index}" for index, column in enumerate(changes, start=3)]
        statement = (
            f"UPDATE tickets SET {', '.join(assignments)} "
            f"WHERE id = $1 AND status = $2 RETURNING {_TICKET_COLUMNS}"
        )

        async with translate_storage_errors("Ticket update"):
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(statement, ticket_id, expected_status, *changes.values())
                    if row is None:
                        return None
                    for entry in history:
                        await self._insert_history(connection, entry)
        return self._row_to_ticket(row)

    async def get_history(self, ticket_id: UUID) -> list[TicketHistoryEntry]:
        async with translate_storage_errors("History lookup"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._SELECT_HISTORY_SQL, ticket_id)
        return [self._row_to_history(row) for row in rows]

    async def list_stale_tickets(self, *, status: str, updated_before: datetime) -> list[Ticket]:
        async with translate_storage_errors("Stale ticket scan"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._SELECT_STALE_SQL, status, updated_before)
        return [self._row_to_ticket(row) for row in rows]

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        async with translate_storage_errors("Ticket delete"):
            async with self._pool.acquire() as connection:
                result = await connection.execute(self._DELETE_TICKET_SQL, ticket_id)
        if isinstance(result, str):
            return result.strip().endswith(" 1")
        return bool(result)

    async def _insert_history(self, connection: Any, entry: TicketHistoryEntry) -> None:
        await connection.execute(
            self._INSERT_HISTORY_SQL,
            entry.id,
            entry.ticket_id,
            entry.field_name,
            entry.old_value,
            entry.new_value,
            entry.actor,
            entry.note,
            json.dumps(entry.metadata),
            entry.created_at,
        )

    @staticmethod
    def _row_to_ticket(row: Any) -> Ticket:
        snapshot_payload = _load_json(row["workflow_snapshot"])
        version = row["workflow_version"]
        return Ticket(
            id=_to_uuid(row["id"]),
            number=str(row["number"]),
            title=str(row["title"]),
            description=str(row["description"]),
            status=str(row["status"]),
            priority=str(row["priority"]),
            requester_id=str(row["requester_id"]),
            assigned_to_id=row["assigned_to_id"],
            resolution=row["resolution"],
            workflow_id=row["workflow_id"],
            workflow_snapshot=WorkflowSnapshot.from_payload(snapshot_payload) if snapshot_payload else None,
            workflow_version=None if version is None else int(version),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            closed_at=row["closed_at"],
        )

    @staticmethod
    def _row_to_history(row: Any) -> TicketHistoryEntry:
        metadata = _load_json(row["metadata"]) or {}
        return TicketHistoryEntry(
            id=_to_uuid(row["id"]),
            ticket_id=_to_uuid(row["ticket_id"]),
            field_name=str(row["field_name"]),
            old_value=row["old_value"],
            new_value=row["new_value"],
            actor=str(row["actor"]),
            note=str(row["note"] or ""),
            metadata={str(key): str(value) for key, value in dict(metadata).items()},
            created_at=row["created_at"],
        )


class SystemSettingRepository:
    """Key/value settings table; holds the ticket number counter."""

    _CREATE_SETTINGS_SQL = """
    CREATE TABLE IF NOT EXISTS system_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _SELECT_SETTING_SQL = """
    SELECT value FROM system_settings WHERE key = $1
    """

    # The stored counter only ever moves forward.
    _ADVANCE_COUNTER_SQL = """
    INSERT INTO system_settings (key, value, updated_at)
    VALUES ($1, $2, CURRENT_TIMESTAMP)
    ON CONFLICT (key) DO UPDATE
    SET value = CASE
            WHEN system_settings.value ~ '^[0-9]+$'
                THEN GREATEST(system_settings.value::bigint, EXCLUDED.value::bigint)::text
            ELSE EXCLUDED.value
        END,
        updated_at = CURRENT_TIMESTAMP
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with translate_storage_errors("Settings schema setup"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE_SETTINGS_SQL)

    async def get(self, key: str) -> str | None:
        async with translate_storage_errors(f"Reading setting {key}"):
            async with self._pool.acquire() as connection:
                value = await connection.fetchval(self._SELECT_SETTING_SQL, key)
        return None if value is None else str(value)

    async def advance(self, key: str, value: int) -> None:
        async with translate_storage_errors(f"Advancing setting {key}"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._ADVANCE_COUNTER_SQL, key, str(value))


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))
