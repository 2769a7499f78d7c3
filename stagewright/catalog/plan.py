"""Effective stage plan of a single work order run."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import ConfigurationError, StageIndexError
from .models import PlannedStage, WorkflowConfig


class RunPlan(BaseModel):
    """Frozen list of the stages that take part in a run, in workflow order."""

    workflow_id: str
    stages: List[PlannedStage] = Field(default_factory=list)

    @property
    def refs(self) -> List[str]:
        return [stage.ref for stage in self.stages]

    def first_stage(self) -> PlannedStage:
        if not self.stages:
            raise ConfigurationError(
                f"Workflow {self.workflow_id} has no active stages for this context"
            )
        return self.stages[0]

    def stage(self, index: int) -> PlannedStage:
        """Return the planned stage at absolute workflow ``index``."""
        for stage in self.stages:
            if stage.index == index:
                return stage
        raise StageIndexError(index)

    def next_after(self, index: int) -> Optional[PlannedStage]:
        return next((s for s in self.stages if s.index > index), None)

    def by_ref(self, ref: str) -> Optional[PlannedStage]:
        return next((s for s in self.stages if s.ref == ref), None)

    def gate_for(self, stage: PlannedStage) -> Optional[PlannedStage]:
        """Active review gate that formally reviews ``stage``, if any."""
        return next(
            (s for s in self.stages if s.review_gate_for == stage.ref and s.index > stage.index),
            None,
        )

    def gated_stage(self, gate: PlannedStage) -> Optional[PlannedStage]:
        """Active stage reviewed by ``gate``; ``None`` when it was skipped."""
        if gate.review_gate_for is None:
            return None
        return self.by_ref(gate.review_gate_for)


def build_run_plan(workflow: WorkflowConfig, context: Dict[str, Any]) -> RunPlan:
    """Evaluate every activation predicate once against ``context``."""
    stages = [
        PlannedStage(index=index, **stage.model_dump())
        for index, stage in enumerate(workflow.stages)
        if stage.is_active(context)
    ]
    return RunPlan(workflow_id=workflow.id, stages=stages)
