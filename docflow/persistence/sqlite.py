"""SQLite implementation of the instance store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..models import TERMINAL_STATUSES, WorkflowInstance
from .repository import InstanceStore


class SQLiteInstanceStore(InstanceStore):
    """Persist workflow instances using SQLite.

    The full instance is stored as a JSON document; the columns next to it
    exist for filtering and for the active index.
    """

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
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                document_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_status ON workflow_instances (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Store API
    async def get(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        if not row:
            return None
        return WorkflowInstance.model_validate_json(row["data"])

    async def save(self, instance: WorkflowInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_instances (id, workflow_id, organization_id, document_id, status, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data
            """,
            instance.id,
            instance.workflow_id,
            instance.organization_id,
            instance.document_id,
            instance.status,
            instance.model_dump_json(),
        )

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("status", status),
            ("organization_id", organization_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = "SELECT data FROM workflow_instances"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", *params)
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def list_active(self) -> list[WorkflowInstance]:
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM workflow_instances WHERE status NOT IN ({placeholders}) ORDER BY id",
            *sorted(TERMINAL_STATUSES),
        )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    def close(self) -> None:
        self._conn.close()
