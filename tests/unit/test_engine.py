"""Transition rules and safety properties of the stage engine."""

from datetime import timedelta

import pytest

from stagewright.contracts import ResultStatus, StageResult, TaskKind, utcnow
from stagewright.engine import LeaseManager, LeaseReaper
from stagewright.errors import (
    DuplicateCompletionError,
    InvalidCompletionError,
    InvalidTransitionError,
    LeaseConflictError,
    OperationNotActiveError,
    OperationNotFoundError,
    WorkflowNotFoundError,
    WorkOrderBusyError,
    WorkOrderNotFoundError,
)
from stagewright.ingestion import CompletionIngestor, derive_completion_token
from stagewright.state_machine import OperationStatus, StoryStatus, WorkOrderState


@pytest.mark.asyncio
async def test_start_unknown_workflow_leaves_no_state(pipeline):
    wo = await pipeline.engine.create_work_order("Anything")
    with pytest.raises(WorkflowNotFoundError):
        await pipeline.engine.start_work_order(wo.id, {}, "no_such_workflow")

    stored = await pipeline.work_order(wo.id)
    assert stored.state is WorkOrderState.PLANNED
    assert stored.workflow_id is None
    assert await pipeline.operations(wo.id) == []
    assert [a.type for a in await pipeline.activities(wo.id)] == ["work_order_created"]
    assert pipeline.dispatcher.tasks == []


@pytest.mark.asyncio
async def test_start_missing_work_order(pipeline):
    with pytest.raises(WorkOrderNotFoundError):
        await pipeline.engine.start_work_order("missing")


@pytest.mark.asyncio
async def test_start_rejects_busy_and_terminal_work_orders(pipeline):
    wo = await pipeline.create_and_start()
    with pytest.raises(WorkOrderBusyError):
        await pipeline.engine.start_work_order(wo.id)

    await pipeline.engine.cancel_work_order(wo.id, "not needed")
    with pytest.raises(InvalidTransitionError):
        await pipeline.engine.start_work_order(wo.id)


@pytest.mark.asyncio
async def test_explicit_workflow_id_is_case_insensitive(pipeline):
    wo = await pipeline.create_and_start(workflow_id="CC_Ops_Change")
    assert wo.workflow_id == "cc_ops_change"


async def _snapshot(pipeline, work_order_id):
    return (
        await pipeline.work_order(work_order_id),
        await pipeline.operations(work_order_id),
        await pipeline.stories(work_order_id),
        await pipeline.activities(work_order_id),
        await pipeline.approvals(work_order_id),
        len(pipeline.dispatcher.tasks),
        len(pipeline.dispatcher.notifications),
    )


@pytest.mark.asyncio
async def test_duplicate_completion_token_is_rejected_without_changes(pipeline, batch):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer(output={"plan": "v1"})
    await pipeline.answer(ResultStatus.APPROVED)
    await pipeline.answer(output=batch(2))
    await pipeline.answer(output={"diff": "x"})
    verify, _ = await pipeline.answer(ResultStatus.APPROVED, token="tok-1")
    before = await _snapshot(pipeline, wo.id)

    with pytest.raises(DuplicateCompletionError):
        await pipeline.engine.advance_on_completion(
            verify.operation_id,
            StageResult(status=ResultStatus.APPROVED, completion_token="tok-1"),
        )

    assert await _snapshot(pipeline, wo.id) == before
    [done, pending] = before[2]
    assert done.status is StoryStatus.DONE
    assert pending.status is StoryStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_ingestor_reports_duplicates(pipeline):
    wo = await pipeline.create_and_start()
    ingestor = CompletionIngestor(pipeline.engine)
    op_id = pipeline.dispatcher.last_payload.operation_id
    result = StageResult(status=ResultStatus.COMPLETED, output={"plan": "v1"})

    first = await ingestor.ingest(op_id, result)
    assert first.status == "applied"
    assert first.completion_token == derive_completion_token(op_id, result)
    assert first.outcome.action == "advanced"

    second = await ingestor.ingest(op_id, result)
    assert second.status == "duplicate"
    assert second.outcome is None
    assert len(await pipeline.operations(wo.id)) == 2


@pytest.mark.asyncio
async def test_completion_for_finished_or_unknown_operation(pipeline):
    await pipeline.create_and_start()
    payload, _ = await pipeline.answer()

    with pytest.raises(OperationNotActiveError):
        await pipeline.engine.advance_on_completion(
            payload.operation_id, StageResult(status=ResultStatus.COMPLETED)
        )
    with pytest.raises(OperationNotFoundError):
        await pipeline.engine.advance_on_completion(
            "missing", StageResult(status=ResultStatus.COMPLETED)
        )


@pytest.mark.asyncio
async def test_missing_agent_blocks_operation_but_not_work_order(make_pipeline, registry_factory):
    pipeline = make_pipeline(registry_factory(["plan_review"]))
    wo = await pipeline.create_and_start()

    ops = await pipeline.operations(wo.id)
    assert len(ops) == 1
    assert ops[0].status is OperationStatus.BLOCKED
    assert ops[0].blocked_reason == "No agent available for capability 'plan'"
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.ACTIVE
    assert "dispatch_failed" in [a.type for a in await pipeline.activities(wo.id)]
    assert pipeline.dispatcher.tasks == []


@pytest.mark.asyncio
async def test_dispatch_error_blocks_operation_with_summary(pipeline):
    pipeline.dispatcher.failing_runtimes.add("rt-plan_review")
    wo = await pipeline.create_and_start()
    await pipeline.answer()

    blocked = await pipeline.operations(wo.id, OperationStatus.BLOCKED)
    assert len(blocked) == 1
    assert blocked[0].blocked_reason == "connection refused"
    assert await pipeline.operations(wo.id, OperationStatus.IN_PROGRESS) == []


@pytest.mark.asyncio
async def test_veto_blocks_work_order(pipeline):
    wo = await pipeline.create_and_start()
    _, outcome = await pipeline.answer(ResultStatus.VETOED, feedback="Out of scope")

    assert outcome.action == "vetoed"
    stored = await pipeline.work_order(wo.id)
    assert stored.state is WorkOrderState.BLOCKED
    assert stored.blocked_reason == "Out of scope"
    assert [a.status for a in await pipeline.approvals(wo.id)] == ["vetoed"]
    assert any("Work Order Blocked" in text for _, text in pipeline.dispatcher.notifications)
    assert len(pipeline.dispatcher.tasks) == 1


@pytest.mark.asyncio
async def test_blocked_work_order_can_be_restarted(pipeline):
    wo = await pipeline.create_and_start()
    await pipeline.answer(ResultStatus.VETOED, feedback="Wait for legal")

    restarted = await pipeline.engine.start_work_order(wo.id, {"hasUnknowns": True})
    assert restarted.state is WorkOrderState.ACTIVE
    assert restarted.blocked_reason is None
    assert pipeline.dispatcher.last_payload.stage_ref == "research"
    assert pipeline.dispatcher.last_payload.iteration == 0


@pytest.mark.asyncio
async def test_review_gate_rejections_escalate_after_limit(pipeline):
    wo = await pipeline.create_and_start()
    await pipeline.answer()
    for _ in range(3):
        _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="again")
        assert outcome.action == "rework"
        await pipeline.answer()

    payload, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="still wrong")
    assert outcome.action == "escalated"

    escalated = next(
        op for op in await pipeline.operations(wo.id) if op.id == payload.operation_id
    )
    assert escalated.status is OperationStatus.BLOCKED
    assert escalated.escalation_reason
    assert escalated.escalated_at is not None
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.BLOCKED
    assert any("Work Order Escalated" in text for _, text in pipeline.dispatcher.notifications)


@pytest.mark.asyncio
async def test_plain_stage_rejection_reworks_itself(pipeline):
    wo = await pipeline.create_and_start()
    first, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="Too vague")
    assert outcome.action == "rework"
    again = pipeline.dispatcher.last_payload
    assert again.stage_ref == "plan"
    assert again.operation_id != first.operation_id
    assert again.feedback == "Too vague"

    reworked = await pipeline.operations(wo.id, OperationStatus.REWORK)
    assert [op.id for op in reworked] == [first.operation_id]


@pytest.mark.asyncio
async def test_story_fails_after_retry_limit(pipeline, batch):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    await pipeline.answer(output=batch(2))

    for _ in range(2):
        await pipeline.answer(output={"diff": "x"})
        _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="nope")
        assert outcome.action == "story_rework"
    await pipeline.answer(output={"diff": "x"})
    _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="nope")
    assert outcome.action == "escalated"

    stories = await pipeline.stories(wo.id)
    assert stories[0].status is StoryStatus.FAILED
    assert stories[0].retry_count == 3
    assert stories[1].status is StoryStatus.PENDING
    loop_op = next(op for op in await pipeline.operations(wo.id) if op.id == stories[0].operation_id)
    assert loop_op.status is OperationStatus.BLOCKED
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.BLOCKED


@pytest.mark.asyncio
async def test_story_build_rejection_counts_as_attempt(pipeline, batch):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    await pipeline.answer(output=batch(1))

    _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="cannot build")
    assert outcome.action == "story_rework"
    assert pipeline.dispatcher.last_payload.kind is TaskKind.STORY_BUILD
    assert (await pipeline.stories(wo.id))[0].retry_count == 1


@pytest.mark.asyncio
async def test_invalid_story_batch_rolls_back(pipeline):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    init = pipeline.dispatcher.last_payload

    with pytest.raises(InvalidCompletionError):
        await pipeline.engine.advance_on_completion(
            init.operation_id,
            StageResult(status=ResultStatus.COMPLETED, output={"stories": []}, completion_token="t"),
        )

    assert await pipeline.stories(wo.id) == []
    loop_op = next(op for op in await pipeline.operations(wo.id) if op.id == init.operation_id)
    assert loop_op.status is OperationStatus.IN_PROGRESS

    # the token was rolled back together with the failed transition
    outcome = await pipeline.engine.advance_on_completion(
        init.operation_id,
        StageResult(
            status=ResultStatus.COMPLETED,
            output={"stories": [{"title": "Only story"}]},
            completion_token="t",
        ),
    )
    assert outcome.action == "stories_planned"


@pytest.mark.asyncio
async def test_story_batch_is_capped_by_context(pipeline, batch):
    wo = await pipeline.create_and_start(
        workflow_id="cc_bug_fix", context={"maxStoriesByStage": {"build_stories": 2}}
    )
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    assert pipeline.dispatcher.last_payload.max_stories == 2
    await pipeline.answer(output=batch(4, with_keys=True))

    stories = await pipeline.stories(wo.id)
    assert [s.story_key for s in stories] == ["S-1", "S-2"]


@pytest.mark.asyncio
async def test_loop_init_rejection_retries_then_escalates(pipeline):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    init = pipeline.dispatcher.last_payload

    for _ in range(2):
        _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="unclear")
        assert outcome.action == "loop_init_retry"
        assert pipeline.dispatcher.last_payload.operation_id == init.operation_id
    _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="unclear")
    assert outcome.action == "escalated"
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.BLOCKED


@pytest.mark.asyncio
async def test_verify_veto_blocks_loop_and_work_order(pipeline, batch):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    await pipeline.answer(output=batch(1))
    build, _ = await pipeline.answer(output={"diff": "x"})
    await pipeline.answer(ResultStatus.VETOED, feedback="License violation")

    ops = {op.id: op for op in await pipeline.operations(wo.id)}
    assert ops[build.operation_id].status is OperationStatus.BLOCKED
    assert (await pipeline.stories(wo.id))[0].status is StoryStatus.FAILED
    assert (await pipeline.work_order(wo.id)).blocked_reason == "License violation"


async def _wait_for_verification(pipeline, batch):
    wo = await pipeline.create_and_start(workflow_id="cc_bug_fix")
    await pipeline.answer()
    await pipeline.answer(ResultStatus.APPROVED)
    await pipeline.answer(output=batch(1))
    build, _ = await pipeline.answer(output={"diff": "x"})
    return wo, build.operation_id


@pytest.mark.asyncio
async def test_timed_out_verification_blocks_loop_and_allows_restart(pipeline, batch):
    wo, loop_op_id = await _wait_for_verification(pipeline, batch)
    verify_op_id = pipeline.dispatcher.last_payload.operation_id
    assert pipeline.dispatcher.last_payload.kind is TaskKind.STORY_VERIFY

    leases = LeaseManager(pipeline.repository)
    reaper = LeaseReaper(pipeline.engine, leases)
    now = utcnow()
    for _ in range(3):
        await leases.claim(verify_op_id, "w1", now=now)
        [outcome] = await reaper.reap(now + timedelta(hours=1))
    assert outcome.action == "escalated"

    ops = {op.id: op for op in await pipeline.operations(wo.id)}
    assert ops[verify_op_id].status is OperationStatus.BLOCKED
    assert ops[loop_op_id].status is OperationStatus.BLOCKED
    assert "timed out" in ops[loop_op_id].blocked_reason
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.BLOCKED

    restarted = await pipeline.engine.start_work_order(wo.id)
    assert restarted.state is WorkOrderState.ACTIVE
    assert pipeline.dispatcher.last_payload.stage_ref == "plan"


@pytest.mark.asyncio
async def test_undeliverable_verification_blocks_loop_and_allows_restart(pipeline, batch):
    pipeline.dispatcher.failing_runtimes.add("rt-build_review")
    wo, loop_op_id = await _wait_for_verification(pipeline, batch)

    assert await pipeline.operations(wo.id, OperationStatus.REVIEW) == []
    blocked = {op.title: op for op in await pipeline.operations(wo.id, OperationStatus.BLOCKED)}
    assert set(blocked) == {"build_stories", "Verify build_stories_1_1"}
    assert blocked["build_stories"].id == loop_op_id
    assert blocked["build_stories"].blocked_reason == "connection refused"
    assert (await pipeline.work_order(wo.id)).state is WorkOrderState.ACTIVE

    pipeline.dispatcher.failing_runtimes.clear()
    await pipeline.engine.start_work_order(wo.id)
    assert pipeline.dispatcher.last_payload.stage_ref == "plan"


@pytest.mark.asyncio
async def test_completion_from_other_worker_conflicts(pipeline):
    await pipeline.create_and_start()
    op_id = pipeline.dispatcher.last_payload.operation_id
    async with pipeline.repository.transaction() as uow:
        op = await uow.get_operation(op_id)
        op.claimed_by = "worker-a"
        await uow.update_operation(op)

    with pytest.raises(LeaseConflictError):
        await pipeline.engine.advance_on_completion(
            op_id, StageResult(status=ResultStatus.COMPLETED, worker_id="worker-b")
        )
    outcome = await pipeline.engine.advance_on_completion(
        op_id, StageResult(status=ResultStatus.COMPLETED, worker_id="worker-a")
    )
    assert outcome.action == "advanced"


@pytest.mark.asyncio
async def test_cancel_closes_open_operations(pipeline):
    wo = await pipeline.create_and_start()
    cancelled = await pipeline.engine.cancel_work_order(wo.id, "duplicate request")

    assert cancelled.state is WorkOrderState.CANCELLED
    assert [op.status for op in await pipeline.operations(wo.id)] == [OperationStatus.CANCELLED]
    with pytest.raises(InvalidTransitionError):
        await pipeline.engine.cancel_work_order(wo.id)
