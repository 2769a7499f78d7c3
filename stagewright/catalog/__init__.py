"""Workflow definitions, selection and stage activation."""

from __future__ import annotations

from .catalog import BUNDLED_WORKFLOWS_DIR, WorkflowCatalog, YamlWorkflowCatalog
from .models import (
    ActivationPredicate,
    LoopSettings,
    PlannedStage,
    SelectionConfig,
    SelectionRequest,
    SelectionRule,
    StageConfig,
    WorkflowConfig,
    WorkflowSelection,
)
from .plan import RunPlan, build_run_plan
from .selection import order_rules_by_precedence, rule_matches, select_workflow

__all__ = [
    "ActivationPredicate",
    "BUNDLED_WORKFLOWS_DIR",
    "LoopSettings",
    "PlannedStage",
    "RunPlan",
    "SelectionConfig",
    "SelectionRequest",
    "SelectionRule",
    "StageConfig",
    "WorkflowCatalog",
    "WorkflowConfig",
    "WorkflowSelection",
    "YamlWorkflowCatalog",
    "build_run_plan",
    "order_rules_by_precedence",
    "rule_matches",
    "select_workflow",
]
