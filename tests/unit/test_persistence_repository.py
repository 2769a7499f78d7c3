import pytest

from stagewright.catalog import YamlWorkflowCatalog, build_run_plan
from stagewright.errors import ConflictError, DuplicateCompletionError
from stagewright.persistence import (
    Activity,
    InMemoryWorkOrderRepository,
    Operation,
    OperationStory,
    SQLiteWorkOrderRepository,
    WorkOrder,
)
from stagewright.state_machine import OperationStatus, StoryStatus, WorkOrderState


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkOrderRepository()
    return SQLiteWorkOrderRepository(tmp_path / "wo.db")


async def _work_order(repo) -> WorkOrder:
    workflow = await YamlWorkflowCatalog().load("cc_bug_fix")
    wo = WorkOrder(
        title="Fix export",
        tags=["bug"],
        state=WorkOrderState.ACTIVE,
        workflow_id=workflow.id,
        current_stage=1,
        start_context={"touchesSecurity": True},
        stage_plan=build_run_plan(workflow, {"touchesSecurity": True}).stages,
    )
    async with repo.transaction() as uow:
        await uow.insert_work_order(wo)
    return wo


def _operation(wo: WorkOrder, **fields) -> Operation:
    fields = {"station": "spec", "title": "plan", "workflow_stage_index": 1, **fields}
    return Operation(work_order_id=wo.id, **fields)


@pytest.mark.asyncio
async def test_work_order_round_trip(repo):
    wo = await _work_order(repo)
    async with repo.transaction() as uow:
        stored = await uow.get_work_order(wo.id)
        listed = await uow.list_work_orders()

    assert stored == wo
    assert [s.ref for s in stored.stage_plan] == [
        "plan",
        "plan_review",
        "build_stories",
        "build_review",
        "security",
    ]
    assert stored.stage_plan[2].loop.max_stories == 6
    assert [w.id for w in listed] == [wo.id]


@pytest.mark.asyncio
async def test_only_one_operation_in_progress(repo):
    wo = await _work_order(repo)
    first = _operation(wo)
    async with repo.transaction() as uow:
        await uow.insert_operation(first)

    with pytest.raises(ConflictError):
        async with repo.transaction() as uow:
            await uow.insert_operation(_operation(wo, title="other"))

    # moving the first one out of in_progress frees the slot
    async with repo.transaction() as uow:
        first.status = OperationStatus.COMPLETED
        await uow.update_operation(first)
        await uow.insert_operation(_operation(wo, title="next"))
        ops = await uow.list_operations(wo.id, status=OperationStatus.IN_PROGRESS)
    assert [op.title for op in ops] == ["next"]


@pytest.mark.asyncio
async def test_failed_transaction_rolls_back(repo):
    wo = await _work_order(repo)
    with pytest.raises(RuntimeError):
        async with repo.transaction() as uow:
            await uow.insert_operation(_operation(wo))
            await uow.append_activity(
                Activity(type="x", actor="test", entity_id=wo.id, summary="x")
            )
            raise RuntimeError("boom")

    async with repo.transaction() as uow:
        assert await uow.list_operations(wo.id) == []
        assert await uow.list_activities(wo.id) == []


@pytest.mark.asyncio
async def test_completion_tokens_are_unique_per_operation(repo):
    async with repo.transaction() as uow:
        await uow.insert_completion_token("op-1", "tok")
        await uow.insert_completion_token("op-2", "tok")

    with pytest.raises(DuplicateCompletionError):
        async with repo.transaction() as uow:
            await uow.insert_completion_token("op-1", "tok")


@pytest.mark.asyncio
async def test_stories_are_scoped_to_their_operation(repo):
    wo = await _work_order(repo)
    loop_op = _operation(wo)
    async with repo.transaction() as uow:
        await uow.insert_operation(loop_op)
        for n in range(3):
            await uow.insert_story(
                OperationStory(
                    operation_id=loop_op.id,
                    work_order_id=wo.id,
                    story_index=n,
                    story_key=f"build_stories_1_{n + 1}",
                    title=f"Story {n}",
                    acceptance_criteria=["works"],
                )
            )

    async with repo.transaction() as uow:
        stories = await uow.list_stories(operation_id=loop_op.id)
        stories[0].status = StoryStatus.DONE
        stories[0].output_json = '{"diff": 1}'
        await uow.update_story(stories[0])

    async with repo.transaction() as uow:
        story = await uow.get_story(stories[0].id)
        assert story.status is StoryStatus.DONE
        assert story.acceptance_criteria == ["works"]
        assert await uow.delete_stories(loop_op.id) == 3
        assert await uow.list_stories(work_order_id=wo.id) == []


@pytest.mark.asyncio
async def test_engine_runs_on_sqlite(tmp_path, make_pipeline):
    repo = SQLiteWorkOrderRepository(tmp_path / "engine.db")
    pipeline = make_pipeline(repository=repo)
    wo = await pipeline.create_and_start("Fix export", tags=["bug"], workflow_id="cc_bug_fix")

    done = await pipeline.approve_all(wo.id, stories=2)

    assert done.state is WorkOrderState.SHIPPED
    async with repo.transaction() as uow:
        receipts = await uow.list_receipts(wo.id)
        stories = await uow.list_stories(work_order_id=wo.id)
    assert len(receipts) == len(pipeline.dispatcher.tasks)
    assert [s.status for s in stories] == [StoryStatus.DONE, StoryStatus.DONE]
    await repo.close()
