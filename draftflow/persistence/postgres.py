"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime

import asyncpg

from ..contracts import AgentMessage
from ..errors import (
    ConcurrentModificationError,
    DuplicateInputError,
    StoreUnavailableError,
)
from .models import Workflow
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresConnectionError) as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                input_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_messages (
                message_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                message_type TEXT NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflows (id, input_id, user_id, status, version, document) VALUES ($1, $2, $3, $4, $5, $6)",
                workflow.id,
                workflow.input_id,
                workflow.user_id,
                workflow.status.value,
                workflow.version,
                workflow.to_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateInputError(workflow.input_id) from exc
        finally:
            await conn.close()

    async def save_workflow(self, workflow: Workflow, expected_version: int) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflows
                SET status = $1, version = $2, document = $3
                WHERE id = $4 AND version = $5
                """,
                workflow.status.value,
                workflow.version,
                workflow.to_json(),
                workflow.id,
                expected_version,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if result.split()[-1] == "0":
            raise ConcurrentModificationError(workflow.id, expected_version)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document::text AS document FROM workflows WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Workflow.from_json(row["document"])

    async def exists_by_input_id(self, input_id: str) -> bool:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT 1 FROM workflows WHERE input_id = $1", input_id
            )
        finally:
            await conn.close()
        return row is not None

    async def list_workflows(self) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document::text AS document FROM workflows ORDER BY created_at"
            )
        finally:
            await conn.close()
        return [Workflow.from_json(r["document"]) for r in rows]

    async def record_message(self, message: AgentMessage) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                INSERT INTO processed_messages
                    (message_id, workflow_id, step_id, message_type)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (message_id) DO NOTHING
                """,
                message.message_id,
                message.workflow_id,
                message.step_id,
                message.message_type.value,
            )
        finally:
            await conn.close()
        return result.split()[-1] == "1"

    async def has_message(self, message_id: str) -> bool:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT 1 FROM processed_messages WHERE message_id = $1", message_id
            )
        finally:
            await conn.close()
        return row is not None

    async def prune_messages(self, before: datetime) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "DELETE FROM processed_messages WHERE recorded_at < $1", before
            )
        finally:
            await conn.close()
        return int(result.split()[-1])
