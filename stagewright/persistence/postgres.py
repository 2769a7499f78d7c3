"""PostgreSQL implementation of the work order repository."""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from .repository import WorkOrderRepository
from .sql import SQLUnitOfWork

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS work_orders (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        code TEXT,
        title TEXT NOT NULL,
        goal_md TEXT NOT NULL DEFAULT '',
        state TEXT NOT NULL,
        workflow_id TEXT,
        current_stage INTEGER,
        priority TEXT NOT NULL,
        tags JSONB NOT NULL,
        blocked_reason TEXT,
        start_context JSONB NOT NULL,
        stage_plan JSONB NOT NULL,
        started_at TIMESTAMPTZ,
        shipped_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS operations (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        work_order_id TEXT NOT NULL REFERENCES work_orders(id),
        station TEXT NOT NULL,
        title TEXT NOT NULL,
        notes TEXT,
        status TEXT NOT NULL,
        workflow_id TEXT,
        workflow_stage_index INTEGER NOT NULL,
        execution_type TEXT NOT NULL,
        iteration_count INTEGER NOT NULL DEFAULT 0,
        loop_target_op_id TEXT,
        loop_config_json TEXT,
        current_story_id TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 0,
        timeout_count INTEGER NOT NULL DEFAULT 0,
        assignee_agent_ids JSONB NOT NULL,
        blocked_reason TEXT,
        escalation_reason TEXT,
        escalated_at TIMESTAMPTZ,
        claimed_by TEXT,
        claim_expires_at TIMESTAMPTZ,
        last_claimed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS operations_one_in_progress
        ON operations (work_order_id) WHERE status = 'in_progress'
    """,
    """
    CREATE TABLE IF NOT EXISTS operation_stories (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        operation_id TEXT NOT NULL REFERENCES operations(id),
        work_order_id TEXT NOT NULL,
        story_index INTEGER NOT NULL,
        story_key TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        acceptance_criteria JSONB NOT NULL,
        status TEXT NOT NULL,
        output_json TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activities (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        type TEXT NOT NULL,
        actor TEXT NOT NULL,
        actor_type TEXT NOT NULL,
        actor_agent_id TEXT,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        summary TEXT NOT NULL,
        payload_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        work_order_id TEXT NOT NULL,
        operation_id TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        question TEXT NOT NULL,
        feedback TEXT,
        resolved_by TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receipts (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        work_order_id TEXT NOT NULL,
        operation_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        command_name TEXT NOT NULL,
        command_args_json TEXT,
        exit_code INTEGER,
        parsed_json TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        ended_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        work_order_id TEXT NOT NULL,
        operation_id TEXT,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        path_or_url TEXT NOT NULL,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS completion_tokens (
        operation_id TEXT NOT NULL,
        token TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (operation_id, token)
    )
    """,
)

_PLACEHOLDER = re.compile(r"\?")


def numbered_placeholders(query: str) -> str:
    """Rewrite ``?`` placeholders as ``$1, $2, ...``."""
    counter = iter(range(1, query.count("?") + 1))
    return _PLACEHOLDER.sub(lambda _: f"${next(counter)}", query)


class PostgresUnitOfWork(SQLUnitOfWork):
    integrity_errors = (asyncpg.UniqueViolationError,)
    native_datetimes = True
    order_column = "seq"
    # serializes concurrent transitions of the same work order
    work_order_lock_clause = " FOR UPDATE"

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def _execute(self, query: str, *params: Any) -> int:
        status = await self._conn.execute(numbered_placeholders(query), *params)
        tail = status.rsplit(" ", 1)[-1] if status else ""
        return int(tail) if tail.isdigit() else 0

    async def _fetchall(self, query: str, *params: Any) -> list[asyncpg.Record]:
        return await self._conn.fetch(numbered_placeholders(query), *params)


class PostgresWorkOrderRepository(WorkOrderRepository):
    """Persist work order state using PostgreSQL."""

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
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresUnitOfWork]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)
        finally:
            await conn.close()

    async def close(self) -> None:
        pass
