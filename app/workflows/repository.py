from __future__ import annotations

import json
from typing import Any

import asyncpg

from app.services.postgres import translate_storage_errors

from .models import WorkflowDefinition, WorkflowStatus


class WorkflowRepository:
    """Read access to workflow definitions maintained by the workflow editor."""

    _COLUMNS = (
        "id, name, description, status, is_default, version, definition, transitions, "
        "created_at, updated_at, deleted_at"
    )

    _CREATE_WORKFLOWS_SQL = """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NULL,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        version INTEGER NOT NULL DEFAULT 1,
        definition JSONB NOT NULL,
        transitions JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TIMESTAMPTZ NULL
    )
    """

    _SELECT_BY_ID_SQL = f"""
    SELECT {_COLUMNS}
    FROM workflows
    WHERE id = $1 AND deleted_at IS NULL
    """

    _SELECT_DEFAULT_SQL = f"""
    SELECT {_COLUMNS}
    FROM workflows
    WHERE is_default AND status = 'ACTIVE' AND deleted_at IS NULL
    ORDER BY version DESC, updated_at DESC
    LIMIT 1
    """

    _SELECT_ACTIVE_SQL = f"""
    SELECT {_COLUMNS}
    FROM workflows
    WHERE status = 'ACTIVE' AND deleted_at IS NULL
    ORDER BY name ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with translate_storage_errors("Workflow schema setup"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE_WORKFLOWS_SQL)

    async def find_by_id(self, workflow_id: str) -> WorkflowDefinition | None:
        async with translate_storage_errors("Workflow lookup"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_BY_ID_SQL, workflow_id)
        return None if row is None else self._row_to_workflow(row)

    async def find_default(self) -> WorkflowDefinition | None:
        async with translate_storage_errors("Default workflow lookup"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_DEFAULT_SQL)
        return None if row is None else self._row_to_workflow(row)

    async def find_all_active(self) -> list[WorkflowDefinition]:
        async with translate_storage_errors("Active workflow scan"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._SELECT_ACTIVE_SQL)
        return [self._row_to_workflow(row) for row in rows]

    @staticmethod
    def _row_to_workflow(row: Any) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=str(row["id"]),
            name=str(row["name"]),
            description=row["description"],
            status=WorkflowStatus(str(row["status"])),
            is_default=bool(row["is_default"]),
            version=int(row["version"] or 1),
            definition=_load_json(row["definition"]) or {},
            transitions=tuple(_load_json(row["transitions"]) or ()),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)
