"""SQLite implementation of the work order repository."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from .repository import WorkOrderRepository
from .sql import SQLUnitOfWork

SCHEMA = """
CREATE TABLE IF NOT EXISTS work_orders (
    id TEXT PRIMARY KEY,
    code TEXT,
    title TEXT NOT NULL,
    goal_md TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL,
    workflow_id TEXT,
    current_stage INTEGER,
    priority TEXT NOT NULL,
    tags TEXT NOT NULL,
    blocked_reason TEXT,
    start_context TEXT NOT NULL,
    stage_plan TEXT NOT NULL,
    started_at TEXT,
    shipped_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS operations (
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
    assignee_agent_ids TEXT NOT NULL,
    blocked_reason TEXT,
    escalation_reason TEXT,
    escalated_at TEXT,
    claimed_by TEXT,
    claim_expires_at TEXT,
    last_claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS operations_one_in_progress
    ON operations (work_order_id) WHERE status = 'in_progress';

CREATE TABLE IF NOT EXISTS operation_stories (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL REFERENCES operations(id),
    work_order_id TEXT NOT NULL,
    story_index INTEGER NOT NULL,
    story_key TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    acceptance_criteria TEXT NOT NULL,
    status TEXT NOT NULL,
    output_json TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    id TEXT PRIMARY KEY,
    ts TEXT NOT NULL,
    type TEXT NOT NULL,
    actor TEXT NOT NULL,
    actor_type TEXT NOT NULL,
    actor_agent_id TEXT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    payload_json TEXT
);

CREATE TABLE IF NOT EXISTS approvals (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    question TEXT NOT NULL,
    feedback TEXT,
    resolved_by TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    command_name TEXT NOT NULL,
    command_args_json TEXT,
    exit_code INTEGER,
    parsed_json TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    path_or_url TEXT NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS completion_tokens (
    operation_id TEXT NOT NULL,
    token TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (operation_id, token)
);
"""


class SQLiteUnitOfWork(SQLUnitOfWork):
    integrity_errors = (sqlite3.IntegrityError,)

    def __init__(self, repository: "SQLiteWorkOrderRepository") -> None:
        self._repository = repository

    async def _execute(self, query: str, *params: Any) -> int:
        return await asyncio.to_thread(self._repository._execute, query, *params)

    async def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._repository._fetchall, query, *params)


class SQLiteWorkOrderRepository(WorkOrderRepository):
    """Persist work order state using SQLite.

    A single connection in autocommit mode is shared; transactions are opened
    explicitly with ``BEGIN IMMEDIATE`` and serialized by an asyncio lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteUnitOfWork]:
        async with self._lock:
            await asyncio.to_thread(self._execute, "BEGIN IMMEDIATE")
            try:
                yield SQLiteUnitOfWork(self)
            except BaseException:
                await asyncio.to_thread(self._execute, "ROLLBACK")
                raise
            await asyncio.to_thread(self._execute, "COMMIT")

    async def close(self) -> None:
        self._conn.close()
