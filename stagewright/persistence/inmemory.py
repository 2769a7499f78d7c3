"""In-memory implementation of the work order repository."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

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
from .repository import UnitOfWork, WorkOrderRepository


@dataclass
class _State:
    work_orders: Dict[str, WorkOrder] = field(default_factory=dict)
    operations: Dict[str, Operation] = field(default_factory=dict)
    stories: Dict[str, OperationStory] = field(default_factory=dict)
    activities: List[Activity] = field(default_factory=list)
    approvals: List[Approval] = field(default_factory=list)
    receipts: List[Receipt] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    tokens: Set[Tuple[str, str]] = field(default_factory=set)


def _copy(model):
    return model.model_copy(deep=True)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, state: _State) -> None:
        self._state = state

    # ------------------------------------------------------------------
    async def get_work_order(self, work_order_id: str) -> WorkOrder | None:
        wo = self._state.work_orders.get(work_order_id)
        return _copy(wo) if wo else None

    async def list_work_orders(self) -> list[WorkOrder]:
        return [_copy(wo) for wo in self._state.work_orders.values()]

    async def insert_work_order(self, work_order: WorkOrder) -> None:
        if work_order.id in self._state.work_orders:
            raise ConflictError(f"Work order {work_order.id} already exists")
        self._state.work_orders[work_order.id] = _copy(work_order)

    async def update_work_order(self, work_order: WorkOrder) -> None:
        self._state.work_orders[work_order.id] = _copy(work_order)

    # ------------------------------------------------------------------
    def _check_single_in_progress(self, operation: Operation) -> None:
        if operation.status is not OperationStatus.IN_PROGRESS:
            return
        for other in self._state.operations.values():
            if (
                other.id != operation.id
                and other.work_order_id == operation.work_order_id
                and other.status is OperationStatus.IN_PROGRESS
            ):
                raise ConflictError(
                    f"Work order {operation.work_order_id} already has operation "
                    f"{other.id} in progress"
                )

    async def get_operation(self, operation_id: str) -> Operation | None:
        op = self._state.operations.get(operation_id)
        return _copy(op) if op else None

    async def list_operations(
        self,
        work_order_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
    ) -> list[Operation]:
        return [
            _copy(op)
            for op in self._state.operations.values()
            if (work_order_id is None or op.work_order_id == work_order_id)
            and (status is None or op.status is status)
        ]

    async def insert_operation(self, operation: Operation) -> None:
        self._check_single_in_progress(operation)
        self._state.operations[operation.id] = _copy(operation)

    async def update_operation(self, operation: Operation) -> None:
        self._check_single_in_progress(operation)
        self._state.operations[operation.id] = _copy(operation)

    # ------------------------------------------------------------------
    async def get_story(self, story_id: str) -> OperationStory | None:
        story = self._state.stories.get(story_id)
        return _copy(story) if story else None

    async def list_stories(
        self, operation_id: Optional[str] = None, work_order_id: Optional[str] = None
    ) -> list[OperationStory]:
        return [
            _copy(s)
            for s in self._state.stories.values()
            if (operation_id is None or s.operation_id == operation_id)
            and (work_order_id is None or s.work_order_id == work_order_id)
        ]

    async def insert_story(self, story: OperationStory) -> None:
        self._state.stories[story.id] = _copy(story)

    async def update_story(self, story: OperationStory) -> None:
        self._state.stories[story.id] = _copy(story)

    async def delete_stories(self, operation_id: str) -> int:
        doomed = [sid for sid, s in self._state.stories.items() if s.operation_id == operation_id]
        for sid in doomed:
            del self._state.stories[sid]
        return len(doomed)

    # ------------------------------------------------------------------
    async def append_activity(self, activity: Activity) -> None:
        self._state.activities.append(_copy(activity))

    async def list_activities(self, entity_id: Optional[str] = None) -> list[Activity]:
        return [
            _copy(a)
            for a in self._state.activities
            if entity_id is None or a.entity_id == entity_id
        ]

    async def add_approval(self, approval: Approval) -> None:
        self._state.approvals.append(_copy(approval))

    async def list_approvals(self, work_order_id: str) -> list[Approval]:
        return [_copy(a) for a in self._state.approvals if a.work_order_id == work_order_id]

    async def add_receipt(self, receipt: Receipt) -> None:
        self._state.receipts.append(_copy(receipt))

    async def list_receipts(self, work_order_id: str) -> list[Receipt]:
        return [_copy(r) for r in self._state.receipts if r.work_order_id == work_order_id]

    async def add_artifact(self, artifact: Artifact) -> None:
        self._state.artifacts.append(_copy(artifact))

    async def list_artifacts(self, work_order_id: str) -> list[Artifact]:
        return [_copy(a) for a in self._state.artifacts if a.work_order_id == work_order_id]

    async def insert_completion_token(self, operation_id: str, token: str) -> None:
        key = (operation_id, token)
        if key in self._state.tokens:
            raise DuplicateCompletionError(operation_id, token)
        self._state.tokens.add(key)


class InMemoryWorkOrderRepository(WorkOrderRepository):
    """Store work order state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions are serialized by a lock
    and roll back by restoring a snapshot taken when they began.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryUnitOfWork]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryUnitOfWork(self._state)
            except BaseException:
                self._state = snapshot
                raise

    async def close(self) -> None:
        pass
