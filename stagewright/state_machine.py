"""Lifecycle states and the transitions allowed between them."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidTransitionError


class WorkOrderState(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    SHIPPED = "shipped"


class OperationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    # loop operation waiting for the verification of its current story
    REVIEW = "review"
    COMPLETED = "completed"
    REWORK = "rework"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class StoryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class ExecutionType(str, Enum):
    SEQUENTIAL = "sequential"
    LOOP = "loop"


WORK_ORDER_TRANSITIONS: Dict[WorkOrderState, FrozenSet[WorkOrderState]] = {
    WorkOrderState.PLANNED: frozenset({WorkOrderState.ACTIVE, WorkOrderState.CANCELLED}),
    WorkOrderState.ACTIVE: frozenset(
        {WorkOrderState.BLOCKED, WorkOrderState.SHIPPED, WorkOrderState.CANCELLED}
    ),
    WorkOrderState.BLOCKED: frozenset({WorkOrderState.ACTIVE, WorkOrderState.CANCELLED}),
    WorkOrderState.SHIPPED: frozenset(),
    WorkOrderState.CANCELLED: frozenset(),
}

OPERATION_TRANSITIONS: Dict[OperationStatus, FrozenSet[OperationStatus]] = {
    OperationStatus.IN_PROGRESS: frozenset(
        {
            OperationStatus.REVIEW,
            OperationStatus.COMPLETED,
            OperationStatus.REWORK,
            OperationStatus.BLOCKED,
            OperationStatus.CANCELLED,
        }
    ),
    OperationStatus.REVIEW: frozenset(
        {
            OperationStatus.IN_PROGRESS,
            OperationStatus.COMPLETED,
            OperationStatus.BLOCKED,
            OperationStatus.CANCELLED,
        }
    ),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.REWORK: frozenset(),
    OperationStatus.BLOCKED: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}

TERMINAL_WORK_ORDER_STATES = frozenset(
    {WorkOrderState.SHIPPED, WorkOrderState.CANCELLED}
)
OPEN_OPERATION_STATUSES = frozenset({OperationStatus.IN_PROGRESS, OperationStatus.REVIEW})


def can_transition_work_order(current: WorkOrderState, target: WorkOrderState) -> bool:
    return target in WORK_ORDER_TRANSITIONS.get(current, frozenset())


def can_transition_operation(current: OperationStatus, target: OperationStatus) -> bool:
    return target in OPERATION_TRANSITIONS.get(current, frozenset())


def ensure_work_order_transition(current: WorkOrderState, target: WorkOrderState) -> None:
    if not can_transition_work_order(current, target):
        raise InvalidTransitionError(
            f"Work order cannot move from {current.value} to {target.value}"
        )


def ensure_operation_transition(current: OperationStatus, target: OperationStatus) -> None:
    if not can_transition_operation(current, target):
        raise InvalidTransitionError(
            f"Operation cannot move from {current.value} to {target.value}"
        )
