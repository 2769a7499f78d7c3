"""Loop stages: story batches, per-story builds and their verification."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, List, Optional

from pydantic import TypeAdapter, ValidationError

from ..catalog.models import PlannedStage
from ..contracts import (
    LoopStageMetadata,
    PreviousOutput,
    ResultStatus,
    StageResult,
    StoryContext,
    StorySpec,
    StoryVerifyMetadata,
    TaskKind,
    parse_loop_metadata,
)
from ..errors import InvalidCompletionError, InvalidTransitionError, OperationNotFoundError
from ..persistence.models import Operation, OperationStory
from ..state_machine import ExecutionType, OperationStatus, StoryStatus
from .audit import record_activity, record_approval

if TYPE_CHECKING:
    from .engine import Transition, TransitionOutcome

logger = logging.getLogger(__name__)

_story_list_adapter: TypeAdapter = TypeAdapter(List[StorySpec])


def parse_story_batch(output: Any) -> List[StorySpec]:
    """Read the stories a loop initiation produced.

    Accepts ``{"stories": [...]}``, a bare list or either of them encoded as
    JSON text.
    """
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except ValueError as exc:
            raise InvalidCompletionError(f"Story batch is not valid JSON: {exc}") from exc
    if isinstance(output, dict):
        output = output.get("stories")
    if not isinstance(output, list) or not output:
        raise InvalidCompletionError("Loop initiation must return a non-empty list of stories")
    try:
        stories = _story_list_adapter.validate_python(output)
    except ValidationError as exc:
        raise InvalidCompletionError(f"Invalid story in batch: {exc}") from exc

    keys = [story.story_key for story in stories if story.story_key]
    if len(keys) != len(set(keys)):
        raise InvalidCompletionError("Story keys must be unique within a batch")
    return stories


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 1 else None


class LoopStageMixin:
    """Loop handling for :class:`~stagewright.engine.engine.StageEngine`."""

    def _story_limit(self, ctx: "Transition", stage: PlannedStage, operation: Operation) -> int:
        limits = [self._limits.max_stories_per_batch]
        if stage.loop is not None:
            limits.append(stage.loop.max_stories)
            if operation.iteration_count > 0:
                limits.append(stage.loop.rework_max_stories)
        per_stage = ctx.work_order.start_context.get("maxStoriesByStage") or {}
        if isinstance(per_stage, dict):
            limits.append(_positive_int(per_stage.get(stage.ref)))
        return min(limit for limit in limits if limit is not None)

    @staticmethod
    def _story_context(story: OperationStory) -> StoryContext:
        return StoryContext(
            story_id=story.id,
            story_key=story.story_key,
            story_index=story.story_index,
            title=story.title,
            description=story.description,
            acceptance_criteria=story.acceptance_criteria,
            attempt=story.retry_count,
            build_output=json.loads(story.output_json) if story.output_json else None,
        )

    @staticmethod
    def _batch_number(operation: Operation) -> int:
        metadata = parse_loop_metadata(operation.loop_config_json)
        if isinstance(metadata, LoopStageMetadata):
            return metadata.batch
        return operation.iteration_count + 1

    # ------------------------------------------------------------------
    # Initiation
    async def _complete_loop_init(
        self, ctx: "Transition", operation: Operation, result: StageResult
    ) -> "TransitionOutcome":
        stage = ctx.plan.stage(operation.workflow_stage_index)
        if result.status is ResultStatus.VETOED:
            return await self._veto(ctx, operation, result)
        if result.status is ResultStatus.REJECTED:
            operation.retry_count += 1
            if operation.retry_count > operation.max_retries:
                return await self._escalate(
                    ctx,
                    operation,
                    f"Story planning for '{stage.ref}' failed {operation.retry_count} times",
                )
            await record_activity(
                ctx.uow,
                "loop_init_retry",
                ctx.work_order.id,
                f"Retrying story planning for {stage.ref}",
                {"operationId": operation.id, "retryCount": operation.retry_count},
            )
            await self._dispatch(
                ctx,
                operation,
                stage,
                TaskKind.LOOP_INIT,
                new=False,
                feedback=result.feedback,
                max_stories=self._story_limit(ctx, stage, operation),
            )
            return self._outcome(ctx, operation, "loop_init_retry", operation)

        specs = parse_story_batch(result.output)
        limit = self._story_limit(ctx, stage, operation)
        if len(specs) > limit:
            logger.info(
                f"Capping story batch for {stage.ref} from {len(specs)} to {limit} stories"
            )
            specs = specs[:limit]

        # a repeated initiation of the same operation replaces its batch
        purged = await ctx.uow.delete_stories(operation.id)
        batch = self._batch_number(operation)
        stories = []
        for n, spec in enumerate(specs, start=1):
            story = OperationStory(
                operation_id=operation.id,
                work_order_id=ctx.work_order.id,
                story_index=n - 1,
                story_key=spec.story_key or f"{stage.ref}_{batch}_{n}",
                title=spec.title,
                description=spec.description,
                acceptance_criteria=spec.acceptance_criteria,
                max_retries=self._limits.story_max_retries,
                created_at=ctx.now,
                updated_at=ctx.now,
            )
            await ctx.uow.insert_story(story)
            stories.append(story)

        await record_activity(
            ctx.uow,
            "stories_planned",
            ctx.work_order.id,
            f"Planned {len(stories)} stories for {stage.ref}",
            {
                "operationId": operation.id,
                "batch": batch,
                "storyKeys": [story.story_key for story in stories],
                "purged": purged,
            },
        )
        await self._start_story(ctx, operation, stage, stories[0])
        return self._outcome(ctx, operation, "stories_planned", operation)

    # ------------------------------------------------------------------
    # Story builds
    async def _start_story(
        self,
        ctx: "Transition",
        loop_op: Operation,
        stage: PlannedStage,
        story: OperationStory,
        feedback: Optional[str] = None,
    ) -> None:
        story.status = StoryStatus.IN_PROGRESS
        story.updated_at = ctx.now
        await ctx.uow.update_story(story)

        loop_op.current_story_id = story.id
        self._release_claim(loop_op)
        if loop_op.status is OperationStatus.REVIEW:
            self._set_status(loop_op, OperationStatus.IN_PROGRESS)
        await self._dispatch(
            ctx,
            loop_op,
            stage,
            TaskKind.STORY_BUILD,
            new=False,
            feedback=feedback,
            story=self._story_context(story),
        )

    async def _current_story(self, ctx: "Transition", loop_op: Operation) -> OperationStory:
        story = await ctx.uow.get_story(loop_op.current_story_id or "")
        if story is None:
            raise InvalidTransitionError(
                f"Loop operation {loop_op.id} points at missing story {loop_op.current_story_id}"
            )
        return story

    async def _complete_story_build(
        self, ctx: "Transition", operation: Operation, result: StageResult
    ) -> "TransitionOutcome":
        stage = ctx.plan.stage(operation.workflow_stage_index)
        story = await self._current_story(ctx, operation)

        if result.status is ResultStatus.VETOED:
            story.status = StoryStatus.FAILED
            story.updated_at = ctx.now
            await ctx.uow.update_story(story)
            return await self._veto(ctx, operation, result)
        if result.status is ResultStatus.REJECTED:
            return await self._retry_story(ctx, operation, stage, story, result.feedback)

        story.output_json = json.dumps(result.output, default=str)
        story.updated_at = ctx.now
        gate = ctx.plan.gate_for(stage)
        verify_each = stage.loop.verify_each if stage.loop is not None else True
        if gate is None or not verify_each:
            story.status = StoryStatus.DONE
            await ctx.uow.update_story(story)
            return await self._after_story_done(ctx, operation, stage)

        story.status = StoryStatus.VERIFYING
        await ctx.uow.update_story(story)
        # the loop operation must leave in_progress before the verifier is inserted
        self._set_status(operation, OperationStatus.REVIEW)
        self._release_claim(operation)
        operation.updated_at = ctx.now
        await ctx.uow.update_operation(operation)

        verify_op = Operation(
            work_order_id=ctx.work_order.id,
            station=operation.station,
            title=f"Verify {story.story_key}",
            workflow_id=ctx.plan.workflow_id,
            workflow_stage_index=gate.index,
            execution_type=ExecutionType.SEQUENTIAL,
            iteration_count=story.retry_count,
            loop_target_op_id=operation.id,
            loop_config_json=StoryVerifyMetadata(
                parent_operation_id=operation.id,
                story_id=story.id,
                loop_stage_index=stage.index,
            ).to_json(),
            current_story_id=story.id,
            max_retries=self._limits.operation_max_retries,
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        ctx.work_order.current_stage = gate.index
        await self._dispatch(
            ctx,
            verify_op,
            gate,
            TaskKind.STORY_VERIFY,
            new=True,
            story=self._story_context(story),
            parent_operation_id=operation.id,
        )
        return self._outcome(ctx, operation, "story_built", verify_op)

    async def _retry_story(
        self,
        ctx: "Transition",
        loop_op: Operation,
        stage: PlannedStage,
        story: OperationStory,
        feedback: Optional[str],
    ) -> "TransitionOutcome":
        story.retry_count += 1
        story.updated_at = ctx.now
        if story.retry_count > story.max_retries:
            story.status = StoryStatus.FAILED
            await ctx.uow.update_story(story)
            return await self._escalate(
                ctx,
                loop_op,
                f"Story {story.story_key} failed after {story.retry_count} attempts",
            )

        await record_activity(
            ctx.uow,
            "story_rework",
            ctx.work_order.id,
            f"Reworking story {story.story_key} ({story.retry_count}/{story.max_retries})",
            {
                "operationId": loop_op.id,
                "storyId": story.id,
                "retryCount": story.retry_count,
                "feedback": feedback,
            },
        )
        ctx.work_order.current_stage = stage.index
        await self._start_story(ctx, loop_op, stage, story, feedback=feedback)
        return self._outcome(ctx, loop_op, "story_rework", loop_op)

    # ------------------------------------------------------------------
    # Verification
    async def _complete_story_verify(
        self,
        ctx: "Transition",
        verify_op: Operation,
        metadata: StoryVerifyMetadata,
        result: StageResult,
    ) -> "TransitionOutcome":
        parent = await ctx.uow.get_operation(metadata.parent_operation_id)
        if parent is None:
            raise OperationNotFoundError(metadata.parent_operation_id)
        if (
            parent.status is not OperationStatus.REVIEW
            or parent.current_story_id != metadata.story_id
        ):
            raise InvalidTransitionError(
                f"Loop operation {parent.id} is not waiting on story {metadata.story_id}"
            )
        stage = ctx.plan.stage(metadata.loop_stage_index)
        story = await self._current_story(ctx, parent)
        question = f"Accept story {story.story_key}?"

        if result.status is ResultStatus.VETOED:
            story.status = StoryStatus.FAILED
            story.updated_at = ctx.now
            await ctx.uow.update_story(story)
            return await self._veto(ctx, verify_op, result, related=(parent,))

        actor = self._actor_for(verify_op, result)[0]
        if result.status is ResultStatus.REJECTED:
            await record_approval(
                ctx.uow,
                verify_op,
                "story_verify",
                "rejected",
                question,
                feedback=result.feedback,
                resolved_by=actor,
            )
            self._set_status(verify_op, OperationStatus.REWORK)
            self._release_claim(verify_op)
            verify_op.iteration_count += 1
            verify_op.updated_at = ctx.now
            await ctx.uow.update_operation(verify_op)
            return await self._retry_story(ctx, parent, stage, story, result.feedback)

        await record_approval(
            ctx.uow,
            verify_op,
            "story_verify",
            "approved",
            question,
            feedback=result.feedback,
            resolved_by=actor,
        )
        await self._finish(ctx, verify_op)
        story.status = StoryStatus.DONE
        story.updated_at = ctx.now
        await ctx.uow.update_story(story)
        return await self._after_story_done(ctx, parent, stage)

    async def _after_story_done(
        self, ctx: "Transition", loop_op: Operation, stage: PlannedStage
    ) -> "TransitionOutcome":
        stories = sorted(
            await ctx.uow.list_stories(operation_id=loop_op.id),
            key=lambda s: s.story_index,
        )
        pending = [s for s in stories if s.status is StoryStatus.PENDING]
        ctx.work_order.current_stage = stage.index
        if pending:
            await self._start_story(ctx, loop_op, stage, pending[0])
            return self._outcome(ctx, loop_op, "next_story", loop_op)

        await self._finish(ctx, loop_op)
        await record_activity(
            ctx.uow,
            "loop_completed",
            ctx.work_order.id,
            f"All {len(stories)} stories of {stage.ref} are done",
            {"operationId": loop_op.id, "storyKeys": [s.story_key for s in stories]},
        )
        output = {
            "stories": [
                {
                    "storyKey": s.story_key,
                    "title": s.title,
                    "output": json.loads(s.output_json) if s.output_json else None,
                }
                for s in stories
            ]
        }
        return await self._advance(
            ctx, stage, loop_op, PreviousOutput(stage_ref=stage.ref, output=output)
        )
