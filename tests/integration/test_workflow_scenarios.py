"""End-to-end runs of the bundled workflows through the stage engine."""

import pytest

from stagewright.contracts import ResultStatus, TaskKind
from stagewright.state_machine import OperationStatus, StoryStatus, WorkOrderState


def _complete_notifications(pipeline, work_order_id):
    return [
        text
        for _, text in pipeline.dispatcher.notifications
        if "Work Order Complete" in text and work_order_id in text
    ]


@pytest.mark.asyncio
async def test_bug_fix_runs_with_rework_retry_and_regenerated_batch(pipeline, batch):
    wo = await pipeline.create_and_start(
        title="Fix crash on login",
        goal="Users hit a regression when logging in",
        priority="high",
        tags=["bug"],
        context={"hasUnknowns": True, "touchesSecurity": True},
    )
    assert wo.workflow_id == "cc_bug_fix"
    assert [s.ref for s in wo.stage_plan] == [
        "research",
        "plan",
        "plan_review",
        "build_stories",
        "build_review",
        "security",
    ]
    assert pipeline.dispatcher.last_payload.stage_ref == "research"

    await pipeline.answer(output={"findings": "null session"})
    await pipeline.answer(output={"plan": "guard the session"})
    payload, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="Add a test plan")
    assert payload.stage_ref == "plan_review"
    assert outcome.action == "rework"

    replan = pipeline.dispatcher.last_payload
    assert replan.stage_ref == "plan"
    assert replan.feedback == "Add a test plan"
    assert replan.iteration == 1

    await pipeline.answer(output={"plan": "guard the session, with tests"})
    await pipeline.answer(ResultStatus.APPROVED)

    init = pipeline.dispatcher.last_payload
    assert init.kind is TaskKind.LOOP_INIT
    assert init.stage_ref == "build_stories"
    assert init.max_stories == 6
    await pipeline.answer(output=batch(3))

    build = pipeline.dispatcher.last_payload
    assert build.kind is TaskKind.STORY_BUILD
    assert build.story.story_key == "build_stories_1_1"
    await pipeline.answer(output={"diff": "v1"})

    verify = pipeline.dispatcher.last_payload
    assert verify.kind is TaskKind.STORY_VERIFY
    assert verify.stage_ref == "build_review"
    assert verify.story.build_output == {"diff": "v1"}
    await pipeline.answer(ResultStatus.REJECTED, feedback="Missing null check")

    rebuild = pipeline.dispatcher.last_payload
    assert rebuild.kind is TaskKind.STORY_BUILD
    assert rebuild.story.story_id == build.story.story_id
    assert rebuild.story.attempt == 1
    assert rebuild.feedback == "Missing null check"

    await pipeline.answer(output={"diff": "v2"})
    await pipeline.answer(ResultStatus.APPROVED)
    for _ in range(2):
        await pipeline.answer(output={"diff": "ok"})
        await pipeline.answer(ResultStatus.APPROVED)

    review = pipeline.dispatcher.last_payload
    assert review.kind is TaskKind.STAGE
    assert review.stage_ref == "build_review"
    _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="Split the session guard")
    assert outcome.action == "rework"

    reinit = pipeline.dispatcher.last_payload
    assert reinit.kind is TaskKind.LOOP_INIT
    assert reinit.stage_ref == "build_stories"
    assert reinit.iteration == 1
    assert reinit.max_stories == 3
    assert reinit.feedback == "Split the session guard"
    await pipeline.answer(output=batch(2))
    for _ in range(2):
        await pipeline.answer(output={"diff": "split"})
        await pipeline.answer(ResultStatus.APPROVED)

    payload, outcome = await pipeline.answer(ResultStatus.APPROVED)
    assert payload.stage_ref == "build_review"
    assert outcome.action == "advanced"

    payload, outcome = await pipeline.answer(ResultStatus.APPROVED, feedback="No new attack surface")
    assert payload.stage_ref == "security"
    assert outcome.action == "shipped"

    shipped = await pipeline.work_order(wo.id)
    assert shipped.state is WorkOrderState.SHIPPED
    assert shipped.shipped_at is not None
    assert len(_complete_notifications(pipeline, wo.id)) == 1

    stories = {s.story_key: s for s in await pipeline.stories(wo.id)}
    assert sorted(stories) == [
        "build_stories_1_1",
        "build_stories_1_2",
        "build_stories_1_3",
        "build_stories_2_1",
        "build_stories_2_2",
    ]
    assert {s.status for s in stories.values()} == {StoryStatus.DONE}
    assert stories["build_stories_1_1"].retry_count == 1
    assert stories["build_stories_2_1"].operation_id == reinit.operation_id

    reworked = await pipeline.operations(wo.id, OperationStatus.REWORK)
    assert sorted(op.title for op in reworked) == [
        "Verify build_stories_1_1",
        "build_review",
        "plan_review",
    ]

    approvals = await pipeline.approvals(wo.id)
    assert {a.type for a in approvals} == {"stage_review", "story_verify"}
    assert [a.status for a in approvals if a.type == "stage_review"] == [
        "rejected",
        "approved",
        "rejected",
        "approved",
    ]

    activity_types = [a.type for a in await pipeline.activities(wo.id)]
    assert activity_types[0] == "work_order_created"
    assert activity_types[-1] == "work_order_shipped"
    assert activity_types.count("rework_requested") == 2
    assert "story_rework" in activity_types
    assert activity_types.count("loop_completed") == 2


@pytest.mark.asyncio
async def test_content_creation_is_selected_and_loops_on_ui_agent(pipeline):
    wo = await pipeline.create_and_start(
        title="Write docs for the API",
        goal="Publish documentation for every endpoint",
        tags=["docs"],
    )
    assert wo.workflow_id == "cc_content_creation"
    assert [s.ref for s in wo.stage_plan] == [
        "plan",
        "plan_review",
        "content_stories",
        "content_review",
    ]

    shipped = await pipeline.approve_all(wo.id, stories=3)
    assert shipped.state is WorkOrderState.SHIPPED

    builds = pipeline.dispatcher.payloads(TaskKind.STORY_BUILD)
    assert [p.story.story_key for p in builds] == [
        "content_stories_1_1",
        "content_stories_1_2",
        "content_stories_1_3",
    ]
    runtimes = {
        p.kind: agent.runtime_agent_id
        for agent, p in pipeline.dispatcher.tasks
        if p.kind in (TaskKind.STORY_BUILD, TaskKind.STORY_VERIFY)
    }
    assert runtimes == {TaskKind.STORY_BUILD: "rt-ui", TaskKind.STORY_VERIFY: "rt-ui_review"}
    assert len(_complete_notifications(pipeline, wo.id)) == 1


@pytest.mark.asyncio
async def test_greenfield_default_with_ui_stages(pipeline):
    wo = await pipeline.create_and_start(title="New dashboard", context={"hasUi": True})
    assert wo.workflow_id == "cc_greenfield_project"
    assert [s.ref for s in wo.stage_plan] == [
        "plan",
        "plan_review",
        "build_stories",
        "build_review",
        "ui",
        "ui_review",
    ]
    # absolute workflow index of "plan", research was skipped
    assert wo.current_stage == 1

    await pipeline.answer(output={"plan": "v1"})
    await pipeline.answer(ResultStatus.APPROVED)
    init = pipeline.dispatcher.last_payload
    assert init.previous_output is not None
    assert init.previous_output.stage_ref == "plan_review"
    assert init.max_stories == 10

    shipped = await pipeline.approve_all(wo.id)
    assert shipped.state is WorkOrderState.SHIPPED
    assert shipped.current_stage == 6
    refs = [p.stage_ref for p in pipeline.dispatcher.payloads(TaskKind.STAGE)]
    assert refs == ["plan", "plan_review", "build_review", "ui", "ui_review"]


@pytest.mark.asyncio
async def test_ops_change_security_reviews_each_story_and_the_loop(pipeline):
    wo = await pipeline.create_and_start(
        title="Infrastructure migration for the queue cluster",
        goal="Deploy the new infrastructure with a runbook",
        tags=["infra"],
    )
    assert wo.workflow_id == "cc_ops_change"

    shipped = await pipeline.approve_all(wo.id, stories=2)
    assert shipped.state is WorkOrderState.SHIPPED

    security_kinds = [
        payload.kind
        for agent, payload in pipeline.dispatcher.tasks
        if agent.runtime_agent_id == "rt-security"
    ]
    assert security_kinds.count(TaskKind.STORY_VERIFY) == 2
    assert security_kinds.count(TaskKind.STAGE) == 1
    assert pipeline.dispatcher.last_payload.stage_ref == "ops_finalize"


@pytest.mark.asyncio
async def test_security_audit_runs_only_active_stages(pipeline):
    wo = await pipeline.create_and_start(
        title="Audit token handling",
        priority="P0",
        tags=["security"],
        context={"hasCodeChanges": True},
    )
    assert wo.workflow_id == "cc_security_audit"
    assert [s.ref for s in wo.stage_plan] == ["security", "build_review"]

    shipped = await pipeline.approve_all(wo.id)
    assert shipped.state is WorkOrderState.SHIPPED
    assert len(pipeline.dispatcher.tasks) == 2
    assert await pipeline.operations(wo.id, OperationStatus.REWORK) == []

    started = next(a for a in await pipeline.activities(wo.id) if a.type == "work_order_started")
    assert '"matchedRuleId": "p0_security_tags"' in started.payload_json


@pytest.mark.asyncio
async def test_loop_regenerates_a_smaller_batch_after_aggregate_rejection(pipeline, batch):
    wo = await pipeline.create_and_start(title="Fix flaky export", tags=["bug"], workflow_id="cc_bug_fix")
    await pipeline.answer()  # plan
    await pipeline.answer(ResultStatus.APPROVED)  # plan_review
    await pipeline.answer(output=batch(5))
    for _ in range(5):
        await pipeline.answer(output={"diff": "ok"})
        await pipeline.answer(ResultStatus.APPROVED)

    review = pipeline.dispatcher.last_payload
    assert review.kind is TaskKind.STAGE
    assert review.stage_ref == "build_review"
    assert len(review.previous_output.output["stories"]) == 5
    assert review.previous_output.output["stories"][0]["storyKey"] == "build_stories_1_1"

    _, outcome = await pipeline.answer(ResultStatus.REJECTED, feedback="Too coarse")
    assert outcome.action == "rework"

    reinit = pipeline.dispatcher.last_payload
    assert reinit.kind is TaskKind.LOOP_INIT
    assert reinit.iteration == 1
    assert reinit.max_stories == 3
    assert reinit.feedback == "Too coarse"

    await pipeline.answer(output=batch(4))
    stories = await pipeline.stories(wo.id)
    first = [s for s in stories if s.operation_id != reinit.operation_id]
    second = sorted(s.story_key for s in stories if s.operation_id == reinit.operation_id)
    assert second == ["build_stories_2_1", "build_stories_2_2", "build_stories_2_3"]
    assert len(second) < len(first)
    # the first batch is kept for the audit trail
    assert len(first) == 5

    shipped = await pipeline.approve_all(wo.id)
    assert shipped.state is WorkOrderState.SHIPPED
