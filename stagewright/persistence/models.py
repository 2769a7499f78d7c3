"""Persistent entities managed by the stage engine."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..catalog.models import PlannedStage
from ..contracts import utcnow
from ..state_machine import (
    ExecutionType,
    OperationStatus,
    StoryStatus,
    WorkOrderState,
)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkOrder(BaseModel):
    """Unit of work driven through a workflow pipeline."""

    id: str = Field(default_factory=new_id)
    code: Optional[str] = None
    title: str
    goal_md: str = ""
    state: WorkOrderState = WorkOrderState.PLANNED
    workflow_id: Optional[str] = None
    current_stage: Optional[int] = None
    priority: str = "medium"
    tags: List[str] = Field(default_factory=list)
    blocked_reason: Optional[str] = None
    start_context: Dict[str, Any] = Field(default_factory=dict)
    stage_plan: List[PlannedStage] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Operation(BaseModel):
    """One execution attempt of a stage, loop iteration or story verification."""

    id: str = Field(default_factory=new_id)
    work_order_id: str
    station: str
    title: str
    notes: Optional[str] = None
    status: OperationStatus = OperationStatus.IN_PROGRESS
    workflow_id: Optional[str] = None
    workflow_stage_index: int
    execution_type: ExecutionType = ExecutionType.SEQUENTIAL
    iteration_count: int = 0
    loop_target_op_id: Optional[str] = None
    loop_config_json: Optional[str] = None
    current_story_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    timeout_count: int = 0
    assignee_agent_ids: List[str] = Field(default_factory=list)
    blocked_reason: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    last_claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OperationStory(BaseModel):
    """One decomposed unit of a loop stage."""

    id: str = Field(default_factory=new_id)
    operation_id: str
    work_order_id: str
    story_index: int
    story_key: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    status: StoryStatus = StoryStatus.PENDING
    output_json: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Activity(BaseModel):
    """Append-only audit record."""

    id: str = Field(default_factory=new_id)
    ts: datetime = Field(default_factory=utcnow)
    type: str
    actor: str
    actor_type: str = "system"
    actor_agent_id: Optional[str] = None
    entity_type: str = "work_order"
    entity_id: str
    summary: str
    payload_json: Optional[str] = None


class Approval(BaseModel):
    id: str = Field(default_factory=new_id)
    work_order_id: str
    operation_id: str
    type: str
    status: str
    question: str
    feedback: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Receipt(BaseModel):
    id: str = Field(default_factory=new_id)
    work_order_id: str
    operation_id: str
    kind: str
    command_name: str
    command_args_json: Optional[str] = None
    exit_code: Optional[int] = None
    parsed_json: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class Artifact(BaseModel):
    id: str = Field(default_factory=new_id)
    work_order_id: str
    operation_id: Optional[str] = None
    type: str
    title: str
    path_or_url: str
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
