"""Unit of work shared by the SQL backends."""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from pydantic import BaseModel

from ..errors import ConflictError, DuplicateCompletionError
from ..state_machine import OperationStatus
from .models import (
    Activity,
    Approval,
    Artifact,
    Operation,
    OperationStory,
    Receipt,
    WorkOrder,
)
from .repository import UnitOfWork


@dataclass(frozen=True)
class TableSpec:
    name: str
    model: Type[BaseModel]
    json_fields: Tuple[str, ...] = ()
    datetime_fields: Tuple[str, ...] = ()

    @property
    def columns(self) -> List[str]:
        return list(self.model.model_fields)


WORK_ORDERS = TableSpec(
    "work_orders",
    WorkOrder,
    json_fields=("tags", "start_context", "stage_plan"),
    datetime_fields=("started_at", "shipped_at", "created_at", "updated_at"),
)
OPERATIONS = TableSpec(
    "operations",
    Operation,
    json_fields=("assignee_agent_ids",),
    datetime_fields=(
        "escalated_at",
        "claim_expires_at",
        "last_claimed_at",
        "created_at",
        "updated_at",
    ),
)
STORIES = TableSpec(
    "operation_stories",
    OperationStory,
    json_fields=("acceptance_criteria",),
    datetime_fields=("created_at", "updated_at"),
)
ACTIVITIES = TableSpec("activities", Activity, datetime_fields=("ts",))
APPROVALS = TableSpec("approvals", Approval, datetime_fields=("created_at",))
RECEIPTS = TableSpec("receipts", Receipt, datetime_fields=("started_at", "ended_at"))
ARTIFACTS = TableSpec("artifacts", Artifact, datetime_fields=("created_at",))


def encode_row(spec: TableSpec, model: BaseModel, native_datetimes: bool) -> Dict[str, Any]:
    """Flatten ``model`` into column values.

    JSON columns are serialized to text; datetimes stay native when the
    driver handles them, otherwise they become ISO strings.
    """
    data = model.model_dump(mode="json")
    for name in spec.json_fields:
        data[name] = json.dumps(data[name]) if data[name] is not None else None
    if native_datetimes:
        for name in spec.datetime_fields:
            data[name] = getattr(model, name)
    return data


def decode_row(spec: TableSpec, row: Mapping[str, Any]) -> BaseModel:
    data = dict(row)
    for name in spec.json_fields:
        if isinstance(data.get(name), str):
            data[name] = json.loads(data[name])
    return spec.model.model_validate(data)


class SQLUnitOfWork(UnitOfWork, metaclass=abc.ABCMeta):
    """Unit of work written against ``?`` placeholders.

    Subclasses provide the driver calls, the unique-violation exception types
    and how rows are ordered by insertion.
    """

    integrity_errors: Tuple[Type[BaseException], ...] = ()
    native_datetimes = False
    order_column = "rowid"
    work_order_lock_clause = ""

    @abc.abstractmethod
    async def _execute(self, query: str, *params: Any) -> int:
        """Run a statement, returning the affected row count."""

    @abc.abstractmethod
    async def _fetchall(self, query: str, *params: Any) -> Sequence[Mapping[str, Any]]:
        """Run a query and return every row."""

    # ------------------------------------------------------------------
    # Generic row helpers
    async def _insert(self, spec: TableSpec, model: BaseModel) -> None:
        cols = spec.columns
        values = encode_row(spec, model, self.native_datetimes)
        await self._execute(
            f"INSERT INTO {spec.name} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})",
            *[values[c] for c in cols],
        )

    async def _update(self, spec: TableSpec, model: BaseModel) -> None:
        cols = [c for c in spec.columns if c != "id"]
        values = encode_row(spec, model, self.native_datetimes)
        await self._execute(
            f"UPDATE {spec.name} SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
            *[values[c] for c in cols],
            values["id"],
        )

    async def _select(
        self, spec: TableSpec, where: str = "", *params: Any, suffix: str = ""
    ) -> List[Any]:
        query = f"SELECT {', '.join(spec.columns)} FROM {spec.name}"
        if where:
            query += f" WHERE {where}"
        query += f" ORDER BY {self.order_column}{suffix}"
        rows = await self._fetchall(query, *params)
        return [decode_row(spec, row) for row in rows]

    async def _select_one(self, spec: TableSpec, entity_id: str, suffix: str = "") -> Any:
        rows = await self._select(spec, "id = ?", entity_id, suffix=suffix)
        return rows[0] if rows else None

    @staticmethod
    def _filters(**conditions: Any) -> Tuple[str, List[Any]]:
        clauses = [f"{col} = ?" for col, value in conditions.items() if value is not None]
        params = [value for value in conditions.values() if value is not None]
        return " AND ".join(clauses), params

    # ------------------------------------------------------------------
    # Work orders
    async def get_work_order(self, work_order_id: str) -> WorkOrder | None:
        return await self._select_one(
            WORK_ORDERS, work_order_id, suffix=self.work_order_lock_clause
        )

    async def list_work_orders(self) -> list[WorkOrder]:
        return await self._select(WORK_ORDERS)

    async def insert_work_order(self, work_order: WorkOrder) -> None:
        try:
            await self._insert(WORK_ORDERS, work_order)
        except self.integrity_errors as exc:
            raise ConflictError(f"Work order {work_order.id} already exists") from exc

    async def update_work_order(self, work_order: WorkOrder) -> None:
        await self._update(WORK_ORDERS, work_order)

    # ------------------------------------------------------------------
    # Operations
    async def get_operation(self, operation_id: str) -> Operation | None:
        return await self._select_one(OPERATIONS, operation_id)

    async def list_operations(
        self,
        work_order_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
    ) -> list[Operation]:
        where, params = self._filters(
            work_order_id=work_order_id, status=status.value if status else None
        )
        return await self._select(OPERATIONS, where, *params)

    async def insert_operation(self, operation: Operation) -> None:
        try:
            await self._insert(OPERATIONS, operation)
        except self.integrity_errors as exc:
            raise ConflictError(
                f"Work order {operation.work_order_id} already has an operation in progress"
            ) from exc

    async def update_operation(self, operation: Operation) -> None:
        try:
            await self._update(OPERATIONS, operation)
        except self.integrity_errors as exc:
            raise ConflictError(
                f"Work order {operation.work_order_id} already has an operation in progress"
            ) from exc

    # ------------------------------------------------------------------
    # Stories
    async def get_story(self, story_id: str) -> OperationStory | None:
        return await self._select_one(STORIES, story_id)

    async def list_stories(
        self, operation_id: Optional[str] = None, work_order_id: Optional[str] = None
    ) -> list[OperationStory]:
        where, params = self._filters(operation_id=operation_id, work_order_id=work_order_id)
        return await self._select(STORIES, where, *params)

    async def insert_story(self, story: OperationStory) -> None:
        await self._insert(STORIES, story)

    async def update_story(self, story: OperationStory) -> None:
        await self._update(STORIES, story)

    async def delete_stories(self, operation_id: str) -> int:
        return await self._execute(
            f"DELETE FROM {STORIES.name} WHERE operation_id = ?", operation_id
        )

    # ------------------------------------------------------------------
    # Audit and side records
    async def append_activity(self, activity: Activity) -> None:
        await self._insert(ACTIVITIES, activity)

    async def list_activities(self, entity_id: Optional[str] = None) -> list[Activity]:
        where, params = self._filters(entity_id=entity_id)
        return await self._select(ACTIVITIES, where, *params)

    async def add_approval(self, approval: Approval) -> None:
        await self._insert(APPROVALS, approval)

    async def list_approvals(self, work_order_id: str) -> list[Approval]:
        return await self._select(APPROVALS, "work_order_id = ?", work_order_id)

    async def add_receipt(self, receipt: Receipt) -> None:
        await self._insert(RECEIPTS, receipt)

    async def list_receipts(self, work_order_id: str) -> list[Receipt]:
        return await self._select(RECEIPTS, "work_order_id = ?", work_order_id)

    async def add_artifact(self, artifact: Artifact) -> None:
        await self._insert(ARTIFACTS, artifact)

    async def list_artifacts(self, work_order_id: str) -> list[Artifact]:
        return await self._select(ARTIFACTS, "work_order_id = ?", work_order_id)

    async def insert_completion_token(self, operation_id: str, token: str) -> None:
        try:
            await self._execute(
                "INSERT INTO completion_tokens (operation_id, token) VALUES (?, ?)",
                operation_id,
                token,
            )
        except self.integrity_errors as exc:
            raise DuplicateCompletionError(operation_id, token) from exc
