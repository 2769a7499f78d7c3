"""Stage-transition engine driving work orders through their workflow."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..catalog import RunPlan, SelectionRequest, WorkflowCatalog, build_run_plan
from ..catalog.models import PlannedStage
from ..config import EngineLimits
from ..constants import DEFAULT_COORDINATOR_CHANNEL
from ..contracts import (
    AgentIdentity,
    DeliveryHandle,
    LoopStageMetadata,
    PreviousOutput,
    ResultStatus,
    StageResult,
    StoryContext,
    TaskKind,
    TaskPayload,
    parse_story_verify,
    utcnow,
)
from ..dispatch import Dispatcher, summarize_dispatch_error
from ..errors import (
    DispatchError,
    InvalidTransitionError,
    LeaseConflictError,
    OperationNotActiveError,
    OperationNotFoundError,
    WorkOrderBusyError,
    WorkOrderNotFoundError,
)
from ..persistence.models import Operation, WorkOrder
from ..persistence.repository import UnitOfWork, WorkOrderRepository
from ..state_machine import (
    OPEN_OPERATION_STATUSES,
    ExecutionType,
    OperationStatus,
    WorkOrderState,
    ensure_operation_transition,
    ensure_work_order_transition,
)
from ..stations import station_for_capability
from .audit import (
    record_activity,
    record_approval,
    record_artifacts,
    record_dispatch_receipt,
)
from .loops import LoopStageMixin

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    """State shared by every step of one atomic transition."""

    uow: UnitOfWork
    work_order: WorkOrder
    plan: RunPlan
    now: datetime


class TransitionOutcome(BaseModel):
    """What a call into the engine decided."""

    work_order_id: str
    operation_id: Optional[str] = None
    action: str
    work_order_state: WorkOrderState
    next_operation_id: Optional[str] = None


def _plan_of(work_order: WorkOrder) -> RunPlan:
    return RunPlan(workflow_id=work_order.workflow_id or "", stages=work_order.stage_plan)


class StageEngine(LoopStageMixin):
    """Deterministic orchestrator for work orders.

    Each public call runs as one unit of work: it reads the affected rows,
    decides the next step, writes every change and dispatches follow-up
    tasks. Any exception rolls the whole transition back.
    """

    def __init__(
        self,
        repository: WorkOrderRepository,
        catalog: WorkflowCatalog,
        resolver,
        dispatcher: Dispatcher,
        limits: Optional[EngineLimits] = None,
        coordinator_channel: str = DEFAULT_COORDINATOR_CHANNEL,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._limits = limits or EngineLimits()
        self._coordinator_channel = coordinator_channel

    @property
    def repository(self) -> WorkOrderRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Public API
    async def create_work_order(
        self,
        title: str,
        goal_md: str = "",
        priority: str = "medium",
        tags: Optional[List[str]] = None,
        code: Optional[str] = None,
    ) -> WorkOrder:
        work_order = WorkOrder(
            title=title, goal_md=goal_md, priority=priority, tags=tags or [], code=code
        )
        async with self._repository.transaction() as uow:
            await uow.insert_work_order(work_order)
            await record_activity(
                uow,
                "work_order_created",
                work_order.id,
                f"Work order created: {title}",
                {"priority": priority, "tags": work_order.tags},
            )
        logger.info(f"Created work order {work_order.id} ({title})")
        return work_order

    async def start_work_order(
        self,
        work_order_id: str,
        context: Optional[Dict[str, Any]] = None,
        workflow_id_override: Optional[str] = None,
    ) -> WorkOrder:
        """Resolve a workflow, freeze its effective stages and begin the first one."""
        start_context = dict(context or {})
        async with self._repository.transaction() as uow:
            work_order = await uow.get_work_order(work_order_id)
            if work_order is None:
                raise WorkOrderNotFoundError(work_order_id)
            await self._ensure_startable(uow, work_order)

            selection = await self._catalog.resolve(
                workflow_id_override,
                SelectionRequest(
                    title=work_order.title,
                    goal=work_order.goal_md,
                    priority=work_order.priority,
                    tags=work_order.tags,
                ),
            )
            workflow = await self._catalog.load(selection.workflow_id)
            plan = build_run_plan(workflow, start_context)
            first = plan.first_stage()

            now = utcnow()
            previous_state = work_order.state
            if previous_state is not WorkOrderState.ACTIVE:
                ensure_work_order_transition(previous_state, WorkOrderState.ACTIVE)
            work_order.state = WorkOrderState.ACTIVE
            work_order.workflow_id = workflow.id
            work_order.current_stage = first.index
            work_order.blocked_reason = None
            work_order.start_context = start_context
            work_order.stage_plan = plan.stages
            work_order.started_at = now
            work_order.updated_at = now

            ctx = Transition(uow, work_order, plan, now)
            await record_activity(
                uow,
                "work_order_started",
                work_order.id,
                f"Started workflow {workflow.id} ({selection.reason})",
                {
                    "workflowId": workflow.id,
                    "reason": selection.reason,
                    "matchedRuleId": selection.matched_rule_id,
                    "effectiveStages": plan.refs,
                    "previousState": previous_state.value,
                },
            )
            await self._begin_stage(ctx, first)
            await uow.update_work_order(work_order)

        logger.info(
            f"Work order {work_order.id} started on {workflow.id} with stages {plan.refs}"
        )
        return work_order

    async def advance_on_completion(
        self, operation_id: str, result: StageResult
    ) -> TransitionOutcome:
        """Apply a worker's result to its operation and move the work order on.

        The completion token is recorded first so a redelivered result fails
        with ``DuplicateCompletionError`` before anything else is touched.
        """
        async with self._repository.transaction() as uow:
            if result.completion_token:
                await uow.insert_completion_token(operation_id, result.completion_token)

            operation = await uow.get_operation(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            work_order = await uow.get_work_order(operation.work_order_id)
            if work_order is None:
                raise WorkOrderNotFoundError(operation.work_order_id)
            if work_order.state is not WorkOrderState.ACTIVE:
                raise OperationNotActiveError(
                    f"Work order {work_order.id} is {work_order.state.value}"
                )
            if operation.status is not OperationStatus.IN_PROGRESS:
                raise OperationNotActiveError(
                    f"Operation {operation.id} is {operation.status.value}"
                )
            if (
                operation.claimed_by
                and result.worker_id
                and result.worker_id != operation.claimed_by
            ):
                raise LeaseConflictError(
                    f"Operation {operation.id} is claimed by {operation.claimed_by}"
                )

            ctx = Transition(uow, work_order, _plan_of(work_order), utcnow())
            await self._record_completion(ctx, operation, result)

            verify = parse_story_verify(operation.loop_config_json)
            if verify is not None:
                outcome = await self._complete_story_verify(ctx, operation, verify, result)
            elif operation.execution_type is ExecutionType.LOOP:
                if operation.current_story_id is None:
                    outcome = await self._complete_loop_init(ctx, operation, result)
                else:
                    outcome = await self._complete_story_build(ctx, operation, result)
            else:
                outcome = await self._complete_stage(ctx, operation, result)

            work_order.updated_at = ctx.now
            await uow.update_work_order(work_order)

        logger.info(
            f"Operation {operation_id} {result.status.value}: {outcome.action} "
            f"(work order {outcome.work_order_id} {outcome.work_order_state.value})"
        )
        return outcome

    async def cancel_work_order(
        self, work_order_id: str, reason: Optional[str] = None
    ) -> WorkOrder:
        async with self._repository.transaction() as uow:
            work_order = await uow.get_work_order(work_order_id)
            if work_order is None:
                raise WorkOrderNotFoundError(work_order_id)
            ensure_work_order_transition(work_order.state, WorkOrderState.CANCELLED)
            now = utcnow()
            cancelled = []
            for operation in await uow.list_operations(work_order_id):
                if operation.status in OPEN_OPERATION_STATUSES:
                    self._set_status(operation, OperationStatus.CANCELLED)
                    self._release_claim(operation)
                    operation.updated_at = now
                    await uow.update_operation(operation)
                    cancelled.append(operation.id)
            work_order.state = WorkOrderState.CANCELLED
            work_order.updated_at = now
            await uow.update_work_order(work_order)
            await record_activity(
                uow,
                "work_order_cancelled",
                work_order.id,
                f"Work order cancelled: {reason or 'no reason given'}",
                {"reason": reason, "cancelledOperationIds": cancelled},
            )
        logger.info(f"Cancelled work order {work_order_id}")
        return work_order

    async def redispatch_operation(
        self, operation_id: str, reason: str = "lease_expired"
    ) -> Optional[TransitionOutcome]:
        """Send an in-progress operation to its agent again.

        Counts a timeout; once the operation's ``max_retries`` is exceeded it
        escalates instead. Returns ``None`` when the operation no longer
        waits for a result.
        """
        async with self._repository.transaction() as uow:
            operation = await uow.get_operation(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            work_order = await uow.get_work_order(operation.work_order_id)
            if (
                work_order is None
                or work_order.state is not WorkOrderState.ACTIVE
                or operation.status is not OperationStatus.IN_PROGRESS
            ):
                return None

            ctx = Transition(uow, work_order, _plan_of(work_order), utcnow())
            operation.timeout_count += 1
            self._release_claim(operation)
            if operation.timeout_count > operation.max_retries:
                outcome = await self._escalate(
                    ctx,
                    operation,
                    f"{operation.title} timed out {operation.timeout_count} times ({reason})",
                )
            else:
                await record_activity(
                    uow,
                    "operation_redispatched",
                    work_order.id,
                    f"Re-dispatching {operation.title} ({reason})",
                    {"operationId": operation.id, "timeoutCount": operation.timeout_count},
                )
                await self._redeliver(ctx, operation)
                outcome = self._outcome(ctx, operation, "redispatched", operation)
            work_order.updated_at = ctx.now
            await uow.update_work_order(work_order)
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    async def _ensure_startable(self, uow: UnitOfWork, work_order: WorkOrder) -> None:
        if work_order.state in (WorkOrderState.SHIPPED, WorkOrderState.CANCELLED):
            raise InvalidTransitionError(
                f"Work order {work_order.id} is {work_order.state.value}"
            )
        for operation in await uow.list_operations(work_order.id):
            if operation.status in OPEN_OPERATION_STATUSES:
                raise WorkOrderBusyError(
                    f"Work order {work_order.id} already has open operation {operation.id}"
                )

    @staticmethod
    def _set_status(operation: Operation, status: OperationStatus) -> None:
        ensure_operation_transition(operation.status, status)
        operation.status = status

    @staticmethod
    def _release_claim(operation: Operation) -> None:
        operation.claimed_by = None
        operation.claim_expires_at = None

    def _outcome(
        self,
        ctx: Transition,
        operation: Optional[Operation],
        action: str,
        next_operation: Optional[Operation] = None,
    ) -> TransitionOutcome:
        return TransitionOutcome(
            work_order_id=ctx.work_order.id,
            operation_id=operation.id if operation else None,
            action=action,
            work_order_state=ctx.work_order.state,
            next_operation_id=next_operation.id if next_operation else None,
        )

    async def _finish(self, ctx: Transition, operation: Operation) -> None:
        self._set_status(operation, OperationStatus.COMPLETED)
        self._release_claim(operation)
        operation.updated_at = ctx.now
        await ctx.uow.update_operation(operation)

    async def _stage_attempts(self, ctx: Transition, stage_index: int) -> int:
        """Genuine operations already created for a stage in the current run."""
        started = ctx.work_order.started_at
        return sum(
            1
            for op in await ctx.uow.list_operations(ctx.work_order.id)
            if op.workflow_stage_index == stage_index
            and parse_story_verify(op.loop_config_json) is None
            and (started is None or op.created_at >= started)
        )

    async def _rejections(self, ctx: Transition, stage_index: int) -> int:
        started = ctx.work_order.started_at
        return sum(
            1
            for op in await ctx.uow.list_operations(
                ctx.work_order.id, status=OperationStatus.REWORK
            )
            if op.workflow_stage_index == stage_index
            and parse_story_verify(op.loop_config_json) is None
            and (started is None or op.created_at >= started)
        )

    def _actor_for(self, operation: Operation, result: StageResult) -> tuple[str, Optional[str]]:
        agent_id = operation.assignee_agent_ids[0] if operation.assignee_agent_ids else None
        if result.worker_id:
            return f"worker:{result.worker_id}", agent_id
        if agent_id:
            return f"agent:{agent_id}", agent_id
        return "agent:unknown", None

    async def _record_completion(
        self, ctx: Transition, operation: Operation, result: StageResult
    ) -> None:
        actor, agent_id = self._actor_for(operation, result)
        await record_activity(
            ctx.uow,
            "operation_completed",
            ctx.work_order.id,
            f"{operation.title}: {result.status.value}",
            {
                "operationId": operation.id,
                "status": result.status.value,
                "feedback": result.feedback,
                "stageIndex": operation.workflow_stage_index,
                "storyId": operation.current_story_id,
                "completionToken": result.completion_token,
            },
            actor=actor,
            actor_type="agent",
            actor_agent_id=agent_id,
        )
        if result.artifacts:
            await record_artifacts(ctx.uow, operation, result.artifacts, created_by=actor)

    def _payload(
        self,
        ctx: Transition,
        operation: Operation,
        stage: PlannedStage,
        kind: TaskKind,
        *,
        feedback: Optional[str] = None,
        previous_output: Optional[PreviousOutput] = None,
        story: Optional[StoryContext] = None,
        max_stories: Optional[int] = None,
        parent_operation_id: Optional[str] = None,
    ) -> TaskPayload:
        work_order = ctx.work_order
        return TaskPayload(
            work_order_id=work_order.id,
            operation_id=operation.id,
            workflow_id=ctx.plan.workflow_id,
            stage_ref=stage.ref,
            stage_index=stage.index,
            kind=kind,
            title=work_order.title,
            goal=work_order.goal_md,
            iteration=operation.iteration_count,
            context=dict(work_order.start_context),
            feedback=feedback,
            previous_output=previous_output,
            story=story,
            max_stories=max_stories,
            parent_operation_id=parent_operation_id,
        )

    # ------------------------------------------------------------------
    # Dispatch
    async def _begin_stage(
        self,
        ctx: Transition,
        stage: PlannedStage,
        *,
        feedback: Optional[str] = None,
        loop_target_op_id: Optional[str] = None,
        previous_output: Optional[PreviousOutput] = None,
    ) -> Operation:
        """Create the operation for ``stage`` and dispatch it."""
        iteration = await self._stage_attempts(ctx, stage.index)
        operation = Operation(
            work_order_id=ctx.work_order.id,
            station=station_for_capability(stage.agent).value,
            title=stage.ref if iteration == 0 else f"{stage.ref} (rework {iteration})",
            notes=feedback,
            workflow_id=ctx.plan.workflow_id,
            workflow_stage_index=stage.index,
            execution_type=ExecutionType.LOOP if stage.is_loop else ExecutionType.SEQUENTIAL,
            iteration_count=iteration,
            loop_target_op_id=loop_target_op_id,
            max_retries=self._limits.operation_max_retries,
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        ctx.work_order.current_stage = stage.index
        if stage.is_loop:
            operation.loop_config_json = LoopStageMetadata(
                stage_ref=stage.ref, batch=iteration + 1
            ).to_json()
            await self._dispatch(
                ctx,
                operation,
                stage,
                TaskKind.LOOP_INIT,
                new=True,
                feedback=feedback,
                previous_output=previous_output,
                max_stories=self._story_limit(ctx, stage, operation),
            )
        else:
            await self._dispatch(
                ctx,
                operation,
                stage,
                TaskKind.STAGE,
                new=True,
                feedback=feedback,
                previous_output=previous_output,
            )
        return operation

    async def _dispatch(
        self,
        ctx: Transition,
        operation: Operation,
        stage: PlannedStage,
        kind: TaskKind,
        *,
        new: bool,
        **payload_fields: Any,
    ) -> Optional[DeliveryHandle]:
        """Resolve an agent for ``stage`` and hand ``operation`` to it.

        With ``new`` the operation is inserted, otherwise updated. When no
        agent resolves or delivery fails the operation ends up blocked.
        """
        agent = await self._resolver.resolve(stage.agent)
        if agent is None:
            await self._block_dispatch(
                ctx,
                operation,
                f"No agent available for capability '{stage.agent}'",
                new=new,
            )
            return None

        operation.assignee_agent_ids = [agent.id]
        operation.station = agent.station.value
        operation.updated_at = ctx.now
        if new:
            await ctx.uow.insert_operation(operation)
        else:
            await ctx.uow.update_operation(operation)
        payload = self._payload(ctx, operation, stage, kind, **payload_fields)
        return await self._deliver(ctx, operation, agent, payload)

    async def _deliver(
        self,
        ctx: Transition,
        operation: Operation,
        agent: AgentIdentity,
        payload: TaskPayload,
    ) -> Optional[DeliveryHandle]:
        try:
            handle = await self._dispatcher.dispatch(agent, payload)
        except DispatchError as exc:
            await self._block_dispatch(ctx, operation, summarize_dispatch_error(exc), new=False)
            return None

        await record_dispatch_receipt(ctx.uow, operation, payload, handle)
        await record_activity(
            ctx.uow,
            "dispatched",
            ctx.work_order.id,
            f"Dispatched {payload.kind.value} '{payload.stage_ref}' to {agent.display_name}",
            {
                "operationId": operation.id,
                "agentId": agent.id,
                "runtimeAgentId": agent.runtime_agent_id,
                "kind": payload.kind.value,
                "stageRef": payload.stage_ref,
                "storyId": payload.story.story_id if payload.story else None,
                "deliveryHandle": handle.model_dump(mode="json"),
            },
        )
        logger.debug(f"Dispatched operation {operation.id} to {agent.runtime_agent_id}")
        return handle

    async def _block_dispatch(
        self, ctx: Transition, operation: Operation, reason: str, *, new: bool
    ) -> None:
        if new:
            operation.status = OperationStatus.BLOCKED
        else:
            self._set_status(operation, OperationStatus.BLOCKED)
        operation.blocked_reason = reason
        operation.updated_at = ctx.now
        if new:
            await ctx.uow.insert_operation(operation)
        else:
            await ctx.uow.update_operation(operation)
        await self._block_parent_loop(ctx, operation, reason)
        await record_activity(
            ctx.uow,
            "dispatch_failed",
            ctx.work_order.id,
            f"Dispatch failed for {operation.title}: {reason}",
            {
                "operationId": operation.id,
                "stageIndex": operation.workflow_stage_index,
                "reason": reason,
            },
        )
        logger.warning(
            f"Operation {operation.id} of work order {ctx.work_order.id} blocked: {reason}"
        )

    async def _redeliver(self, ctx: Transition, operation: Operation) -> None:
        verify = parse_story_verify(operation.loop_config_json)
        if verify is not None:
            story = await ctx.uow.get_story(verify.story_id)
            await self._dispatch(
                ctx,
                operation,
                ctx.plan.stage(operation.workflow_stage_index),
                TaskKind.STORY_VERIFY,
                new=False,
                story=self._story_context(story) if story else None,
                parent_operation_id=verify.parent_operation_id,
            )
            return

        stage = ctx.plan.stage(operation.workflow_stage_index)
        if operation.execution_type is ExecutionType.LOOP and operation.current_story_id:
            story = await ctx.uow.get_story(operation.current_story_id)
            await self._dispatch(
                ctx,
                operation,
                stage,
                TaskKind.STORY_BUILD,
                new=False,
                story=self._story_context(story) if story else None,
            )
        elif operation.execution_type is ExecutionType.LOOP:
            await self._dispatch(
                ctx,
                operation,
                stage,
                TaskKind.LOOP_INIT,
                new=False,
                feedback=operation.notes,
                max_stories=self._story_limit(ctx, stage, operation),
            )
        else:
            await self._dispatch(
                ctx, operation, stage, TaskKind.STAGE, new=False, feedback=operation.notes
            )

    async def _notify(self, ctx: Transition, text: str) -> None:
        try:
            await self._dispatcher.notify(self._coordinator_channel, text)
        except DispatchError as exc:
            logger.warning(f"Coordinator notification failed: {exc}")
            await record_activity(
                ctx.uow,
                "notification_failed",
                ctx.work_order.id,
                f"Notification to {self._coordinator_channel} failed",
                {"error": summarize_dispatch_error(exc), "message": text},
            )

    # ------------------------------------------------------------------
    # Transitions
    async def _complete_stage(
        self, ctx: Transition, operation: Operation, result: StageResult
    ) -> TransitionOutcome:
        stage = ctx.plan.stage(operation.workflow_stage_index)
        if result.status is ResultStatus.VETOED:
            return await self._veto(ctx, operation, result)
        if result.status is ResultStatus.REJECTED:
            return await self._reject_stage(ctx, operation, stage, result)

        if stage.is_review_gate:
            await record_approval(
                ctx.uow,
                operation,
                "stage_review",
                "approved",
                f"Approve {stage.review_gate_for}?",
                feedback=result.feedback,
                resolved_by=self._actor_for(operation, result)[0],
            )
        await self._finish(ctx, operation)
        return await self._advance(
            ctx,
            stage,
            operation,
            PreviousOutput(stage_ref=stage.ref, output=result.output),
        )

    async def _advance(
        self,
        ctx: Transition,
        stage: PlannedStage,
        operation: Operation,
        previous_output: Optional[PreviousOutput] = None,
    ) -> TransitionOutcome:
        next_stage = ctx.plan.next_after(stage.index)
        if next_stage is None:
            return await self._ship(ctx, operation)
        next_op = await self._begin_stage(ctx, next_stage, previous_output=previous_output)
        return self._outcome(ctx, operation, "advanced", next_op)

    async def _reject_stage(
        self,
        ctx: Transition,
        operation: Operation,
        stage: PlannedStage,
        result: StageResult,
    ) -> TransitionOutcome:
        target = ctx.plan.gated_stage(stage) or stage
        rejections = await self._rejections(ctx, stage.index) + 1
        operation.iteration_count += 1
        if stage.is_review_gate:
            await record_approval(
                ctx.uow,
                operation,
                "stage_review",
                "rejected",
                f"Approve {stage.review_gate_for}?",
                feedback=result.feedback,
                resolved_by=self._actor_for(operation, result)[0],
            )

        if rejections > self._limits.max_review_loopbacks:
            return await self._escalate(
                ctx,
                operation,
                f"Stage '{stage.ref}' rejected {rejections} times "
                f"(limit {self._limits.max_review_loopbacks})",
            )

        self._set_status(operation, OperationStatus.REWORK)
        self._release_claim(operation)
        operation.updated_at = ctx.now
        await ctx.uow.update_operation(operation)
        await record_activity(
            ctx.uow,
            "rework_requested",
            ctx.work_order.id,
            f"{stage.ref} rejected; reworking {target.ref} ({rejections}/{self._limits.max_review_loopbacks})",
            {
                "operationId": operation.id,
                "targetStage": target.ref,
                "rejections": rejections,
                "feedback": result.feedback,
            },
        )
        next_op = await self._begin_stage(
            ctx, target, feedback=result.feedback, loop_target_op_id=operation.id
        )
        return self._outcome(ctx, operation, "rework", next_op)

    async def _veto(
        self,
        ctx: Transition,
        operation: Operation,
        result: StageResult,
        related: tuple[Operation, ...] = (),
    ) -> TransitionOutcome:
        reason = result.feedback or f"{operation.title} was vetoed"
        await record_approval(
            ctx.uow,
            operation,
            "veto",
            "vetoed",
            f"Continue with {operation.title}?",
            feedback=result.feedback,
            resolved_by=self._actor_for(operation, result)[0],
        )
        for op in (operation, *related):
            self._set_status(op, OperationStatus.BLOCKED)
            self._release_claim(op)
            op.blocked_reason = reason
            op.updated_at = ctx.now
            await ctx.uow.update_operation(op)
        self._block_work_order(ctx, reason)
        await record_activity(
            ctx.uow,
            "work_order_blocked",
            ctx.work_order.id,
            f"Vetoed at {operation.title}: {reason}",
            {"operationId": operation.id, "reason": reason},
        )
        await self._notify(
            ctx, f"Work Order Blocked: {ctx.work_order.title} ({ctx.work_order.id}) - {reason}"
        )
        logger.warning(f"Work order {ctx.work_order.id} blocked by veto: {reason}")
        return self._outcome(ctx, operation, "vetoed")

    async def _block_parent_loop(
        self, ctx: Transition, operation: Operation, reason: str
    ) -> None:
        """Block the loop operation a stuck story verification is holding in review."""
        verify = parse_story_verify(operation.loop_config_json)
        if verify is None:
            return
        parent = await ctx.uow.get_operation(verify.parent_operation_id)
        if parent is None or parent.status is not OperationStatus.REVIEW:
            return
        self._set_status(parent, OperationStatus.BLOCKED)
        self._release_claim(parent)
        parent.blocked_reason = reason
        parent.updated_at = ctx.now
        await ctx.uow.update_operation(parent)

    def _block_work_order(self, ctx: Transition, reason: str) -> None:
        ensure_work_order_transition(ctx.work_order.state, WorkOrderState.BLOCKED)
        ctx.work_order.state = WorkOrderState.BLOCKED
        ctx.work_order.blocked_reason = reason

    async def _escalate(
        self, ctx: Transition, operation: Operation, reason: str
    ) -> TransitionOutcome:
        self._set_status(operation, OperationStatus.BLOCKED)
        self._release_claim(operation)
        operation.blocked_reason = reason
        operation.escalation_reason = reason
        operation.escalated_at = ctx.now
        operation.updated_at = ctx.now
        await ctx.uow.update_operation(operation)
        await self._block_parent_loop(ctx, operation, reason)
        if self._limits.block_on_escalation:
            self._block_work_order(ctx, reason)
        await record_activity(
            ctx.uow,
            "escalated",
            ctx.work_order.id,
            f"Escalated {operation.title}: {reason}",
            {"operationId": operation.id, "reason": reason},
        )
        await self._notify(
            ctx, f"Work Order Escalated: {ctx.work_order.title} ({ctx.work_order.id}) - {reason}"
        )
        logger.warning(f"Escalated operation {operation.id}: {reason}")
        return self._outcome(ctx, operation, "escalated")

    async def _ship(self, ctx: Transition, operation: Operation) -> TransitionOutcome:
        work_order = ctx.work_order
        ensure_work_order_transition(work_order.state, WorkOrderState.SHIPPED)
        work_order.state = WorkOrderState.SHIPPED
        work_order.shipped_at = ctx.now
        work_order.blocked_reason = None
        await record_activity(
            ctx.uow,
            "work_order_shipped",
            work_order.id,
            f"Work order shipped: {work_order.title}",
            {"workflowId": work_order.workflow_id, "stages": ctx.plan.refs},
        )
        await self._notify(ctx, f"Work Order Complete: {work_order.title} ({work_order.id})")
        logger.info(f"Work order {work_order.id} shipped")
        return self._outcome(ctx, operation, "shipped")
