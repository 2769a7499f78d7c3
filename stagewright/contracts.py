"""Message contracts exchanged between the engine, dispatchers and workers."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from .stations import Station

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResultStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    VETOED = "vetoed"
    COMPLETED = "completed"


class StageResult(BaseModel):
    """Outcome reported by a worker for one operation."""

    status: ResultStatus
    output: Any = None
    feedback: Optional[str] = None
    artifacts: List[str] = Field(default_factory=list)
    completion_token: Optional[str] = None
    worker_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (ResultStatus.APPROVED, ResultStatus.COMPLETED)


class StorySpec(BaseModel):
    """One story produced by a loop initiation."""

    model_config = ConfigDict(populate_by_name=True)

    story_key: Optional[str] = Field(default=None, alias="storyKey")
    title: str
    description: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list, alias="acceptanceCriteria")

    @field_validator("acceptance_criteria", mode="before")
    @classmethod
    def _split_criteria(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [line.strip("- ").strip() for line in value.splitlines() if line.strip()]
        return value


class AgentIdentity(BaseModel):
    """Concrete worker chosen to execute a stage."""

    id: str
    display_name: str
    station: Station
    runtime_agent_id: str
    team_id: Optional[str] = None


class PreviousOutput(BaseModel):
    """Output produced by the stage that ran before the dispatched one."""

    stage_ref: str
    output: Any


class TaskKind(str, Enum):
    STAGE = "stage"
    LOOP_INIT = "loop_init"
    STORY_BUILD = "story_build"
    STORY_VERIFY = "story_verify"


class StoryContext(BaseModel):
    story_id: str
    story_key: str
    story_index: int
    title: str
    description: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    attempt: int = 0
    build_output: Any = None


class TaskPayload(BaseModel):
    """Everything a worker needs to execute one operation."""

    work_order_id: str
    operation_id: str
    workflow_id: str
    stage_ref: str
    stage_index: int
    kind: TaskKind = TaskKind.STAGE
    title: str
    goal: str = ""
    iteration: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    feedback: Optional[str] = None
    previous_output: Optional[PreviousOutput] = None
    story: Optional[StoryContext] = None
    max_stories: Optional[int] = None
    parent_operation_id: Optional[str] = None


class DeliveryHandle(BaseModel):
    """Receipt returned by a dispatcher once a task is handed over."""

    channel: str
    message_id: str
    session_key: str
    delivered_at: datetime = Field(default_factory=utcnow)


class Envelope(BaseModel):
    """Common metadata for every message put on a transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str):
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class TaskMessage(Envelope):
    agent_id: str
    session_key: str
    payload: TaskPayload


class CompletionMessage(Envelope):
    operation_id: str
    result: StageResult


class NotificationMessage(Envelope):
    channel: str
    text: str


# ---------------------------------------------------------------------------
# Loop metadata stored in ``Operation.loop_config_json``


class _LoopMetadataBase(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class StoryVerifyMetadata(_LoopMetadataBase):
    """Marks a transient operation verifying one story of a loop."""

    kind: Literal["story_verify"] = "story_verify"
    parent_operation_id: str = Field(alias="parentOperationId", min_length=1)
    story_id: str = Field(alias="storyId", min_length=1)
    loop_stage_index: int = Field(alias="loopStageIndex", ge=0)


class LoopStageMetadata(_LoopMetadataBase):
    """Describes a loop operation and which story batch it belongs to."""

    kind: Literal["loop_stage"] = "loop_stage"
    stage_ref: str = Field(alias="stageRef")
    over: Literal["stories"] = "stories"
    completion: Literal["all_done"] = "all_done"
    batch: int = Field(1, ge=1)


LoopMetadata = Annotated[
    Union[StoryVerifyMetadata, LoopStageMetadata], Field(discriminator="kind")
]
_loop_metadata_adapter: TypeAdapter = TypeAdapter(LoopMetadata)


def parse_loop_metadata(raw: Optional[str]) -> Optional[LoopMetadata]:
    """Parse ``loop_config_json``; anything malformed or unknown yields ``None``."""
    if not raw:
        return None
    try:
        return _loop_metadata_adapter.validate_json(raw)
    except (ValidationError, ValueError):
        logger.debug(f"Ignoring unparseable loop metadata: {raw!r}")
        return None


def parse_story_verify(raw: Optional[str]) -> Optional[StoryVerifyMetadata]:
    metadata = parse_loop_metadata(raw)
    return metadata if isinstance(metadata, StoryVerifyMetadata) else None
