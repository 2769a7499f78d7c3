"""Worker leases on in-progress operations and the reaper for expired ones."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from ..config import EngineLimits
from ..contracts import utcnow
from ..errors import LeaseConflictError, OperationNotActiveError, OperationNotFoundError
from ..persistence.models import Operation
from ..persistence.repository import UnitOfWork, WorkOrderRepository
from ..state_machine import OperationStatus
from .audit import record_activity

if TYPE_CHECKING:
    from .engine import StageEngine, TransitionOutcome

logger = logging.getLogger(__name__)


class LeaseManager:
    """Records which worker currently holds an operation and until when.

    Leases are advisory for the engine: completions are never rejected for
    an expired lease, only for one held by a different worker.
    """

    def __init__(self, repository: WorkOrderRepository, limits: Optional[EngineLimits] = None):
        self._repository = repository
        self._ttl = timedelta(seconds=(limits or EngineLimits()).lease_ttl_seconds)

    async def _load(self, uow: UnitOfWork, operation_id: str) -> Operation:
        operation = await uow.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        if operation.status is not OperationStatus.IN_PROGRESS:
            raise OperationNotActiveError(
                f"Operation {operation_id} is {operation.status.value}"
            )
        return operation

    @staticmethod
    def _held_by_other(operation: Operation, worker_id: str, now: datetime) -> bool:
        return (
            operation.claimed_by is not None
            and operation.claimed_by != worker_id
            and operation.claim_expires_at is not None
            and operation.claim_expires_at > now
        )

    async def claim(
        self, operation_id: str, worker_id: str, now: Optional[datetime] = None
    ) -> Operation:
        now = now or utcnow()
        async with self._repository.transaction() as uow:
            operation = await self._load(uow, operation_id)
            if self._held_by_other(operation, worker_id, now):
                raise LeaseConflictError(
                    f"Operation {operation_id} is leased to {operation.claimed_by}"
                )
            operation.claimed_by = worker_id
            operation.claim_expires_at = now + self._ttl
            operation.last_claimed_at = now
            operation.updated_at = now
            await uow.update_operation(operation)
            await record_activity(
                uow,
                "operation_claimed",
                operation.work_order_id,
                f"{worker_id} claimed {operation.title}",
                {"operationId": operation.id, "expiresAt": operation.claim_expires_at},
                actor=f"worker:{worker_id}",
                actor_type="worker",
            )
        logger.debug(f"Worker {worker_id} claimed operation {operation_id}")
        return operation

    async def renew(
        self, operation_id: str, worker_id: str, now: Optional[datetime] = None
    ) -> Operation:
        now = now or utcnow()
        async with self._repository.transaction() as uow:
            operation = await self._load(uow, operation_id)
            if operation.claimed_by != worker_id:
                raise LeaseConflictError(
                    f"Operation {operation_id} is not leased to {worker_id}"
                )
            operation.claim_expires_at = now + self._ttl
            operation.updated_at = now
            await uow.update_operation(operation)
        return operation

    async def release(self, operation_id: str, worker_id: str) -> None:
        async with self._repository.transaction() as uow:
            operation = await uow.get_operation(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            if operation.claimed_by != worker_id:
                return
            operation.claimed_by = None
            operation.claim_expires_at = None
            operation.updated_at = utcnow()
            await uow.update_operation(operation)

    async def expired(self, now: Optional[datetime] = None) -> List[Operation]:
        """In-progress operations whose lease ran out."""
        now = now or utcnow()
        async with self._repository.transaction() as uow:
            operations = await uow.list_operations(status=OperationStatus.IN_PROGRESS)
        return [
            op
            for op in operations
            if op.claimed_by is not None
            and op.claim_expires_at is not None
            and op.claim_expires_at <= now
        ]


class LeaseReaper:
    """Re-dispatches operations whose worker stopped renewing its lease."""

    def __init__(self, engine: "StageEngine", leases: LeaseManager):
        self._engine = engine
        self._leases = leases

    async def reap(self, now: Optional[datetime] = None) -> List["TransitionOutcome"]:
        outcomes = []
        for operation in await self._leases.expired(now):
            logger.info(
                f"Lease of {operation.claimed_by} on operation {operation.id} expired"
            )
            outcome = await self._engine.redispatch_operation(operation.id, "lease_expired")
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes
