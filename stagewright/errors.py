"""Exception hierarchy raised by stagewright.

Every error escaping a unit of work aborts its transaction, so none of these
leave partially written state behind.
"""

from __future__ import annotations


class StagewrightError(Exception):
    """Base class for all stagewright errors."""


class ConfigurationError(StagewrightError):
    """Workflow, selection or agent configuration is invalid."""


class WorkflowNotFoundError(ConfigurationError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class StageIndexError(ConfigurationError):
    def __init__(self, index: int, work_order_id: str | None = None) -> None:
        target = f" for work order {work_order_id}" if work_order_id else ""
        super().__init__(f"Stage index {index} is not in the effective stage plan{target}")
        self.index = index


class NotFoundError(StagewrightError):
    """A referenced entity does not exist."""


class WorkOrderNotFoundError(NotFoundError):
    def __init__(self, work_order_id: str) -> None:
        super().__init__(f"Work order not found: {work_order_id}")
        self.work_order_id = work_order_id


class OperationNotFoundError(NotFoundError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Operation not found: {operation_id}")
        self.operation_id = operation_id


class InvalidTransitionError(StagewrightError):
    """A state change is not allowed from the current state."""


class OperationNotActiveError(InvalidTransitionError):
    """A completion arrived for an operation that is not waiting for one."""


class WorkOrderBusyError(InvalidTransitionError):
    """The work order already has an operation in progress."""


class InvalidCompletionError(StagewrightError):
    """A completion result is malformed for the operation it targets."""


class ConflictError(StagewrightError):
    """The request conflicts with state recorded earlier."""


class DuplicateCompletionError(ConflictError):
    def __init__(self, operation_id: str, token: str) -> None:
        super().__init__(
            f"Completion token {token!r} already processed for operation {operation_id}"
        )
        self.operation_id = operation_id
        self.token = token


class LeaseConflictError(ConflictError):
    """The operation is claimed by a different worker."""


class DispatchError(StagewrightError):
    """Delivering a task or notification failed."""


class TransportError(StagewrightError):
    """The message broker rejected or failed an operation."""
