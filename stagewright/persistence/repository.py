"""Repository abstraction for work order state persistence."""

from __future__ import annotations

from typing import AsyncContextManager, Optional, Protocol

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


class UnitOfWork(Protocol):
    """Reads and writes that commit or roll back together."""

    async def get_work_order(self, work_order_id: str) -> WorkOrder | None:
        """Retrieve the work order by id."""

    async def list_work_orders(self) -> list[WorkOrder]:
        """Return all work orders in creation order."""

    async def insert_work_order(self, work_order: WorkOrder) -> None:
        """Persist a new work order."""

    async def update_work_order(self, work_order: WorkOrder) -> None:
        """Overwrite a stored work order."""

    async def get_operation(self, operation_id: str) -> Operation | None:
        """Retrieve the operation by id."""

    async def list_operations(
        self,
        work_order_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
    ) -> list[Operation]:
        """Return operations in creation order, optionally filtered."""

    async def insert_operation(self, operation: Operation) -> None:
        """Persist a new operation.

        Raises ``ConflictError`` when it would be a second in-progress
        operation of its work order.
        """

    async def update_operation(self, operation: Operation) -> None:
        """Overwrite a stored operation; same in-progress rule as insert."""

    async def get_story(self, story_id: str) -> OperationStory | None:
        """Retrieve the story by id."""

    async def list_stories(
        self, operation_id: Optional[str] = None, work_order_id: Optional[str] = None
    ) -> list[OperationStory]:
        """Return stories in creation order, optionally filtered."""

    async def insert_story(self, story: OperationStory) -> None:
        """Persist a new story."""

    async def update_story(self, story: OperationStory) -> None:
        """Overwrite a stored story."""

    async def delete_stories(self, operation_id: str) -> int:
        """Remove every story of a loop operation, returning how many."""

    async def append_activity(self, activity: Activity) -> None:
        """Append an audit record."""

    async def list_activities(self, entity_id: Optional[str] = None) -> list[Activity]:
        """Return audit records in append order."""

    async def add_approval(self, approval: Approval) -> None:
        """Record an approval decision."""

    async def list_approvals(self, work_order_id: str) -> list[Approval]:
        """Return approvals of a work order."""

    async def add_receipt(self, receipt: Receipt) -> None:
        """Record a dispatch receipt."""

    async def list_receipts(self, work_order_id: str) -> list[Receipt]:
        """Return receipts of a work order."""

    async def add_artifact(self, artifact: Artifact) -> None:
        """Record a produced artifact reference."""

    async def list_artifacts(self, work_order_id: str) -> list[Artifact]:
        """Return artifacts of a work order."""

    async def insert_completion_token(self, operation_id: str, token: str) -> None:
        """Record a processed completion.

        Raises ``DuplicateCompletionError`` if the pair already exists.
        """


class WorkOrderRepository(Protocol):
    """Protocol for work order persistence backends."""

    def transaction(self) -> AsyncContextManager[UnitOfWork]:
        """Open a unit of work; commit on normal exit, roll back on error."""

    async def close(self) -> None:
        """Release backend resources."""
