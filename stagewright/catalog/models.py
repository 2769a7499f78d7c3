"""Pydantic models describing workflow definitions and selection rules."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ActivationPredicate(BaseModel):
    """Condition deciding whether a stage takes part in a run.

    Written in YAML either as a flag name (``touchesSecurity``), a negated
    flag (``"!hasUnknowns"``) or a mapping with ``all``/``any``/``none`` lists.
    A flag is set when the start context holds a truthy value under it.
    """

    model_config = ConfigDict(populate_by_name=True)

    all_of: List[str] = Field(default_factory=list, alias="all")
    any_of: List[str] = Field(default_factory=list, alias="any")
    none_of: List[str] = Field(default_factory=list, alias="none")

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            flag = value.strip()
            if flag.startswith("!"):
                return {"none": [flag[1:].strip()]}
            return {"all": [flag]}
        return value

    @model_validator(mode="after")
    def _require_clause(self) -> "ActivationPredicate":
        if not (self.all_of or self.any_of or self.none_of):
            raise ValueError("activation predicate needs at least one flag")
        return self

    def evaluate(self, context: Dict[str, Any]) -> bool:
        def is_set(flag: str) -> bool:
            return bool(context.get(flag))

        if self.all_of and not all(is_set(flag) for flag in self.all_of):
            return False
        if self.any_of and not any(is_set(flag) for flag in self.any_of):
            return False
        if self.none_of and any(is_set(flag) for flag in self.none_of):
            return False
        return True


class LoopSettings(BaseModel):
    over: Literal["stories"] = "stories"
    completion: Literal["all_done"] = "all_done"
    verify_each: bool = True
    max_stories: Optional[int] = Field(default=None, ge=1)
    rework_max_stories: Optional[int] = Field(default=None, ge=1)


class StageConfig(BaseModel):
    """One step of a workflow."""

    ref: str
    agent: str = Field(..., description="Capability reference resolved to an agent")
    type: Literal["single", "loop"] = "single"
    description: Optional[str] = None
    review_gate_for: Optional[str] = None
    condition: Optional[ActivationPredicate] = None
    loop: Optional[LoopSettings] = None

    @model_validator(mode="after")
    def _default_loop_settings(self) -> "StageConfig":
        if self.type == "loop" and self.loop is None:
            self.loop = LoopSettings()
        return self

    @property
    def is_loop(self) -> bool:
        return self.type == "loop"

    @property
    def is_review_gate(self) -> bool:
        return self.review_gate_for is not None

    def is_active(self, context: Dict[str, Any]) -> bool:
        return self.condition is None or self.condition.evaluate(context)


class PlannedStage(StageConfig):
    """Stage that is part of a run, with its absolute workflow index."""

    index: int = Field(..., ge=0)


class WorkflowConfig(BaseModel):
    id: str
    description: Optional[str] = None
    stages: List[StageConfig] = Field(..., min_length=1)

    @field_validator("stages")
    @classmethod
    def _check_stage_refs(cls, stages: List[StageConfig]) -> List[StageConfig]:
        seen: set[str] = set()
        for stage in stages:
            if stage.ref in seen:
                raise ValueError(f"duplicate stage ref '{stage.ref}'")
            if stage.review_gate_for is not None and stage.review_gate_for not in seen:
                raise ValueError(
                    f"stage '{stage.ref}' gates '{stage.review_gate_for}', "
                    "which is not an earlier stage"
                )
            seen.add(stage.ref)
        return stages


class SelectionRule(BaseModel):
    """Rule mapping work order attributes onto a workflow."""

    id: str
    workflow_id: str
    priority: List[str] = Field(default_factory=list)
    tags_any: List[str] = Field(default_factory=list)
    title_keywords_any: List[str] = Field(default_factory=list)
    goal_keywords_any: List[str] = Field(default_factory=list)
    precedes: List[str] = Field(default_factory=list)


class SelectionConfig(BaseModel):
    default_workflow_id: str
    rules: List[SelectionRule] = Field(default_factory=list)


class WorkflowSelection(BaseModel):
    workflow_id: str
    reason: Literal["explicit", "rule", "default"]
    matched_rule_id: Optional[str] = None


class SelectionRequest(BaseModel):
    """Attributes of a work order that selection rules match against."""

    title: str = ""
    goal: str = ""
    priority: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
