"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..contracts import AgentMessage, utcnow
from ..errors import (
    ConcurrentModificationError,
    DuplicateInputError,
    StoreUnavailableError,
)
from .models import Workflow
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                input_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_messages (
                message_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                message_type TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount
        except sqlite3.IntegrityError:
            self._conn.rollback()
            raise
        except sqlite3.OperationalError as exc:
            self._conn.rollback()
            raise StoreUnavailableError(str(exc)) from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, workflow: Workflow) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO workflows (id, input_id, user_id, status, version, document) VALUES (?, ?, ?, ?, ?, ?)",
                workflow.id,
                workflow.input_id,
                workflow.user_id,
                workflow.status.value,
                workflow.version,
                workflow.to_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateInputError(workflow.input_id) from exc

    async def save_workflow(self, workflow: Workflow, expected_version: int) -> None:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET status = ?, version = ?, document = ?
            WHERE id = ? AND version = ?
            """,
            workflow.status.value,
            workflow.version,
            workflow.to_json(),
            workflow.id,
            expected_version,
        )
        if updated == 0:
            raise ConcurrentModificationError(workflow.id, expected_version)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        return Workflow.from_json(row["document"])

    async def exists_by_input_id(self, input_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM workflows WHERE input_id = ?",
            input_id,
        )
        return row is not None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM workflows ORDER BY rowid",
        )
        return [Workflow.from_json(row["document"]) for row in rows]

    async def record_message(self, message: AgentMessage) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO processed_messages
                (message_id, workflow_id, step_id, message_type, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            message.message_id,
            message.workflow_id,
            message.step_id,
            message.message_type.value,
            utcnow().isoformat(timespec="microseconds"),
        )
        return inserted == 1

    async def has_message(self, message_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM processed_messages WHERE message_id = ?",
            message_id,
        )
        return row is not None

    async def prune_messages(self, before: datetime) -> int:
        # recorded_at holds UTC ISO timestamps, which sort as text
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM processed_messages WHERE recorded_at < ?",
            before.astimezone(timezone.utc).isoformat(timespec="microseconds"),
        )
