"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Sequence

import asyncpg

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
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    ON CONFLICT (id) DO UPDATE SET
        status = EXCLUDED.status,
        metadata = EXCLUDED.metadata,
        updated_at = EXCLUDED.updated_at
"""


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _step_args(step: StepInstance) -> tuple:
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
        step.updated_at,
    )


def _record_to_step(r: asyncpg.Record) -> StepInstance:
    return StepInstance(
        id=r["id"],
        workflow_id=r["workflow_id"],
        name=r["name"],
        order=r["step_order"],
        type=r["type"],
        prompt=r["prompt"] or "",
        status=r["status"],
        dependencies=set(_json(r["dependencies"]) or []),
        instructions=StepInstructions.model_validate(_json(r["instructions"]) or {}),
        metadata=StepMetadata.model_validate(_json(r["metadata"]) or {}),
        updated_at=r["updated_at"],
    )


def _record_to_workflow(r: asyncpg.Record, steps: Iterable[StepInstance] = ()) -> WorkflowInstance:
    return WorkflowInstance(
        id=r["id"],
        thread_id=r["thread_id"],
        template_id=r["template_id"],
        template_name=r["template_name"],
        status=r["status"],
        current_step_id=r["current_step_id"],
        steps=list(steps),
        created_at=r["created_at"],
        updated_at=r["updated_at"],
    )


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                template_id TEXT NOT NULL,
                template_name TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflows_one_active_per_thread
            ON workflows (thread_id) WHERE status = 'active'
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows (id),
                name TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                type TEXT NOT NULL,
                prompt TEXT,
                status TEXT NOT NULL,
                dependencies JSONB,
                instructions JSONB,
                metadata JSONB,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                message_id TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, instance: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    instance.id,
                    instance.thread_id,
                    instance.template_id,
                    instance.template_name,
                    instance.status.value,
                    instance.current_step_id,
                    instance.created_at,
                    instance.updated_at,
                )
                for step in instance.steps:
                    await conn.execute(_UPSERT_STEP, *_step_args(step))
        except asyncpg.UniqueViolationError as exc:
            raise ActiveWorkflowExistsError(instance.thread_id) from exc
        finally:
            await conn.close()

    async def save_step(self, step: StepInstance) -> None:
        conn = await self._connect()
        try:
            await conn.execute(_UPSERT_STEP, *_step_args(step))
        finally:
            await conn.close()

    async def update_workflow(self, instance: WorkflowInstance) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflows SET status = $1, current_step_id = $2, updated_at = $3 "
                "WHERE id = $4 AND status = $5",
                instance.status.value,
                instance.current_step_id,
                instance.updated_at,
                instance.id,
                WorkflowStatus.ACTIVE.value,
            )
        finally:
            await conn.close()
        # asyncpg reports the command tag, e.g. "UPDATE 1".
        return result.split()[-1] != "0"

    async def _fetch_with_steps(
        self, conn: asyncpg.Connection, row: Optional[asyncpg.Record]
    ) -> WorkflowInstance | None:
        if not row:
            return None
        step_rows = await conn.fetch(
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE workflow_id = $1 ORDER BY step_order",
            row["id"],
        )
        return _record_to_workflow(row, (_record_to_step(r) for r in step_rows))

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
            )
            return await self._fetch_with_steps(conn, row)
        finally:
            await conn.close()

    async def get_active_workflow(self, thread_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE thread_id = $1 AND status = $2",
                thread_id,
                WorkflowStatus.ACTIVE.value,
            )
            return await self._fetch_with_steps(conn, row)
        finally:
            await conn.close()

    async def get_workflow_status(self, workflow_id: str) -> Optional[WorkflowStatus]:
        conn = await self._connect()
        try:
            status = await conn.fetchval("SELECT status FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return WorkflowStatus(status) if status else None

    async def list_workflows(self, thread_id: Optional[str] = None) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            if thread_id is None:
                rows = await conn.fetch(
                    f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE thread_id = $1 ORDER BY created_at",
                    thread_id,
                )
        finally:
            await conn.close()
        return [_record_to_workflow(r) for r in rows]

    async def append_messages(self, messages: Sequence[ChatMessage]) -> None:
        if not messages:
            return
        conn = await self._connect()
        try:
            await conn.executemany(
                "INSERT INTO chat_messages (id, thread_id, role, content, message_id, created_at) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                [
                    (m.id, m.thread_id, m.role, m.content, m.message_id, m.created_at)
                    for m in messages
                ],
            )
        finally:
            await conn.close()

    async def recent_messages(self, thread_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, thread_id, role, content, message_id, created_at FROM chat_messages "
                "WHERE thread_id = $1 ORDER BY seq DESC LIMIT $2",
                thread_id,
                limit,
            )
        finally:
            await conn.close()
        return [
            ChatMessage(
                id=r["id"],
                thread_id=r["thread_id"],
                role=r["role"],
                content=r["content"],
                message_id=r["message_id"],
                created_at=r["created_at"],
            )
            for r in reversed(rows)
        ]
