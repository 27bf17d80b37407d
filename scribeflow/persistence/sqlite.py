"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from ..contracts import StepInstructions, WorkflowStatus
from ..errors import ActiveWorkflowExistsError
from .models import ChatMessage, StepInstance, StepMetadata, WorkflowInstance
from .repository import WorkflowRepository

_WORKFLOW_COLUMNS = (
    "id, thread_id, template_id, template_name, status, current_step_id, created_at, updated_at"
)
_STEP_COLUMNS = (
    "id, workflow_id, name, step_order, type, prompt, status, dependencies, "
    "instructions, metadata, updated_at"
)
_UPSERT_STEP = f"""
    INSERT INTO workflow_steps ({_STEP_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        status = excluded.status,
        metadata = excluded.metadata,
        updated_at = excluded.updated_at
"""


def _step_params(step: StepInstance) -> tuple:
    return (
        step.id,
        step.workflow_id,
        step.name,
        step.order,
        step.type.value,
        step.prompt,
        step.status.value,
        json.dumps(sorted(step.dependencies)),
        step.instructions.model_dump_json(),
        step.metadata.model_dump_json(),
        step.updated_at.isoformat(),
    )


def _row_to_step(row: sqlite3.Row) -> StepInstance:
    return StepInstance(
        id=row["id"],
        workflow_id=row["workflow_id"],
        name=row["name"],
        order=row["step_order"],
        type=row["type"],
        prompt=row["prompt"] or "",
        status=row["status"],
        dependencies=set(json.loads(row["dependencies"] or "[]")),
        instructions=StepInstructions.model_validate_json(row["instructions"] or "{}"),
        metadata=StepMetadata.model_validate_json(row["metadata"] or "{}"),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_workflow(row: sqlite3.Row, steps: Iterable[StepInstance] = ()) -> WorkflowInstance:
    return WorkflowInstance(
        id=row["id"],
        thread_id=row["thread_id"],
        template_id=row["template_id"],
        template_name=row["template_name"],
        status=row["status"],
        current_step_id=row["current_step_id"],
        steps=list(steps),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    A partial unique index on ``thread_id`` for active rows enforces the
    single-active-instance rule in the database itself.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                template_id TEXT NOT NULL,
                template_name TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflows_one_active_per_thread
            ON workflows (thread_id) WHERE status = 'active'
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows (id),
                name TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                type TEXT NOT NULL,
                prompt TEXT,
                status TEXT NOT NULL,
                dependencies TEXT,
                instructions TEXT,
                metadata TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                message_id TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS chat_messages_thread ON chat_messages (thread_id, seq)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _execute_many(self, statements: Sequence[tuple[str, tuple]]) -> None:
        """Run ``statements`` in one transaction."""
        with self._lock:
            try:
                cur = self._conn.cursor()
                for query, params in statements:
                    cur.execute(query, params)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _load_steps(self, workflow_id: str) -> list[StepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
            workflow_id,
        )
        return [_row_to_step(r) for r in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, instance: WorkflowInstance) -> None:
        statements = [
            (
                f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    instance.id,
                    instance.thread_id,
                    instance.template_id,
                    instance.template_name,
                    instance.status.value,
                    instance.current_step_id,
                    instance.created_at.isoformat(),
                    instance.updated_at.isoformat(),
                ),
            )
        ]
        statements.extend((_UPSERT_STEP, _step_params(step)) for step in instance.steps)
        try:
            await asyncio.to_thread(self._execute_many, statements)
        except sqlite3.IntegrityError as exc:
            if "thread_id" in str(exc):
                raise ActiveWorkflowExistsError(instance.thread_id) from exc
            raise

    async def save_step(self, step: StepInstance) -> None:
        await asyncio.to_thread(self._execute, _UPSERT_STEP, *_step_params(step))

    async def update_workflow(self, instance: WorkflowInstance) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET status = ?, current_step_id = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            instance.status.value,
            instance.current_step_id,
            instance.updated_at.isoformat(),
            instance.id,
            WorkflowStatus.ACTIVE.value,
        )
        return updated > 0

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        return _row_to_workflow(row, await self._load_steps(workflow_id))

    async def get_active_workflow(self, thread_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE thread_id = ? AND status = ?",
            thread_id,
            WorkflowStatus.ACTIVE.value,
        )
        if not row:
            return None
        return _row_to_workflow(row, await self._load_steps(row["id"]))

    async def get_workflow_status(self, workflow_id: str) -> Optional[WorkflowStatus]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT status FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowStatus(row["status"]) if row else None

    async def list_workflows(self, thread_id: Optional[str] = None) -> list[WorkflowInstance]:
        if thread_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE thread_id = ? ORDER BY created_at",
                thread_id,
            )
        return [_row_to_workflow(r) for r in rows]

    async def append_messages(self, messages: Sequence[ChatMessage]) -> None:
        statements = [
            (
                "INSERT INTO chat_messages (id, thread_id, role, content, message_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (m.id, m.thread_id, m.role, m.content, m.message_id, m.created_at.isoformat()),
            )
            for m in messages
        ]
        if statements:
            await asyncio.to_thread(self._execute_many, statements)

    async def recent_messages(self, thread_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, thread_id, role, content, message_id, created_at FROM chat_messages "
            "WHERE thread_id = ? ORDER BY seq DESC LIMIT ?",
            thread_id,
            limit,
        )
        return [
            ChatMessage(
                id=r["id"],
                thread_id=r["thread_id"],
                role=r["role"],
                content=r["content"],
                message_id=r["message_id"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in reversed(rows)
        ]

    def close(self) -> None:
        self._conn.close()
