"""Shared fixtures: an engine wired to in-memory storage and a recording dispatcher."""

import uuid
from typing import Any, List, Optional, Tuple

import pytest

from stagewright.agents import AgentDescriptor, AgentRegistry, RegistryAgentResolver, Team
from stagewright.catalog import YamlWorkflowCatalog
from stagewright.contracts import (
    AgentIdentity,
    DeliveryHandle,
    ResultStatus,
    StageResult,
    TaskKind,
    TaskPayload,
)
from stagewright.dispatch import agent_topic, session_key
from stagewright.engine import StageEngine, TransitionOutcome
from stagewright.errors import DispatchError
from stagewright.persistence import InMemoryWorkOrderRepository
from stagewright.state_machine import OperationStatus, WorkOrderState
from stagewright.stations import station_for_capability

CAPABILITIES = (
    "research",
    "plan",
    "plan_review",
    "build",
    "build_review",
    "ui",
    "ui_review",
    "security",
    "ops",
)


def make_registry(capabilities=CAPABILITIES) -> AgentRegistry:
    agents = [
        AgentDescriptor(
            id=f"agent-{cap}",
            display_name=cap.replace("_", " ").title(),
            runtime_agent_id=f"rt-{cap}",
            station=station_for_capability(cap),
            capabilities=[cap],
        )
        for cap in capabilities
    ]
    return AgentRegistry(teams=[Team(name="test", agents=agents)])


def story_batch(count: int, with_keys: bool = False) -> dict:
    stories = []
    for n in range(1, count + 1):
        story = {
            "title": f"Story {n}",
            "description": f"Implement part {n}",
            "acceptanceCriteria": [f"part {n} works"],
        }
        if with_keys:
            story["storyKey"] = f"S-{n}"
        stories.append(story)
    return {"stories": stories}


class RecordingDispatcher:
    """Dispatcher that keeps every task and notification in memory."""

    def __init__(self) -> None:
        self.tasks: List[Tuple[AgentIdentity, TaskPayload]] = []
        self.notifications: List[Tuple[str, str]] = []
        self.failing_runtimes: set = set()

    async def dispatch(self, agent: AgentIdentity, payload: TaskPayload) -> DeliveryHandle:
        if agent.runtime_agent_id in self.failing_runtimes:
            raise DispatchError("error: connection refused\n  at gateway.send()")
        self.tasks.append((agent, payload))
        return DeliveryHandle(
            channel=agent_topic(agent.runtime_agent_id),
            message_id=str(uuid.uuid4()),
            session_key=session_key(agent, payload),
        )

    async def notify(self, channel: str, message: str) -> None:
        self.notifications.append((channel, message))

    @property
    def last_payload(self) -> TaskPayload:
        return self.tasks[-1][1]

    def payloads(self, kind: Optional[TaskKind] = None) -> List[TaskPayload]:
        return [p for _, p in self.tasks if kind is None or p.kind is kind]


class Pipeline:
    """Drives work orders through the engine by answering the latest task."""

    def __init__(self, registry: Optional[AgentRegistry] = None, repository=None) -> None:
        self.repository = repository or InMemoryWorkOrderRepository()
        self.catalog = YamlWorkflowCatalog()
        self.dispatcher = RecordingDispatcher()
        self.engine = StageEngine(
            self.repository,
            self.catalog,
            RegistryAgentResolver(registry or make_registry()),
            self.dispatcher,
        )

    async def create_and_start(
        self,
        title: str = "Build a thing",
        goal: str = "",
        context: Optional[dict] = None,
        workflow_id: Optional[str] = None,
        priority: str = "medium",
        tags: Optional[list] = None,
    ):
        wo = await self.engine.create_work_order(title, goal_md=goal, priority=priority, tags=tags)
        return await self.engine.start_work_order(wo.id, context or {}, workflow_id)

    async def answer(
        self,
        status: ResultStatus = ResultStatus.COMPLETED,
        output: Any = None,
        feedback: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Tuple[TaskPayload, TransitionOutcome]:
        payload = self.dispatcher.last_payload
        outcome = await self.engine.advance_on_completion(
            payload.operation_id,
            StageResult(status=status, output=output, feedback=feedback, completion_token=token),
        )
        await self.assert_single_in_progress(payload.work_order_id)
        return payload, outcome

    async def approve_all(self, work_order_id: str, stories: int = 2, limit: int = 200):
        """Answer every task positively until the work order leaves ``active``."""
        for _ in range(limit):
            wo = await self.work_order(work_order_id)
            if wo.state is not WorkOrderState.ACTIVE:
                return wo
            payload = self.dispatcher.last_payload
            if payload.kind is TaskKind.LOOP_INIT:
                await self.answer(output=story_batch(stories))
            elif payload.kind is TaskKind.STORY_VERIFY:
                await self.answer(ResultStatus.APPROVED)
            else:
                await self.answer(output={"done": payload.stage_ref})
        raise AssertionError("work order did not settle")

    async def work_order(self, work_order_id: str):
        async with self.repository.transaction() as uow:
            return await uow.get_work_order(work_order_id)

    async def operations(self, work_order_id: str, status: Optional[OperationStatus] = None):
        async with self.repository.transaction() as uow:
            return await uow.list_operations(work_order_id, status=status)

    async def stories(self, work_order_id: str):
        async with self.repository.transaction() as uow:
            return await uow.list_stories(work_order_id=work_order_id)

    async def activities(self, work_order_id: str):
        async with self.repository.transaction() as uow:
            return await uow.list_activities(work_order_id)

    async def approvals(self, work_order_id: str):
        async with self.repository.transaction() as uow:
            return await uow.list_approvals(work_order_id)

    async def assert_single_in_progress(self, work_order_id: str) -> None:
        in_progress = await self.operations(work_order_id, OperationStatus.IN_PROGRESS)
        assert len(in_progress) <= 1, [op.title for op in in_progress]


@pytest.fixture
def pipeline() -> Pipeline:
    return Pipeline()


@pytest.fixture
def make_pipeline():
    return Pipeline


@pytest.fixture
def batch():
    return story_batch


@pytest.fixture
def registry_factory():
    return make_registry
