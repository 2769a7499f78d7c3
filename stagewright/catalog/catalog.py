"""Workflow catalog backed by YAML definition files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError, WorkflowNotFoundError
from .models import (
    SelectionConfig,
    SelectionRequest,
    WorkflowConfig,
    WorkflowSelection,
)
from .selection import normalize_selection, select_workflow

logger = logging.getLogger(__name__)

BUNDLED_WORKFLOWS_DIR = Path(__file__).resolve().parent.parent / "workflows"
SELECTION_FILE_NAME = "workflow-selection.yaml"


class WorkflowCatalog(Protocol):
    """Source of workflow definitions consumed by the engine."""

    async def resolve(
        self,
        requested_workflow_id: Optional[str] = None,
        request: Optional[SelectionRequest] = None,
    ) -> WorkflowSelection:
        """Decide which workflow applies to a work order."""

    async def load(self, workflow_id: str) -> WorkflowConfig:
        """Return the workflow definition or raise ``WorkflowNotFoundError``."""

    async def list_workflows(self) -> list[WorkflowConfig]:
        """Return all known workflows."""


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


class YamlWorkflowCatalog(WorkflowCatalog):
    """Load workflows from ``*.yaml`` files in a directory.

    Every file except the selection file defines one workflow. Definitions are
    read eagerly and kept until :meth:`reload` is called.
    """

    def __init__(
        self,
        workflows_dir: str | Path | None = None,
        selection_file: str | Path | None = None,
    ) -> None:
        self.workflows_dir = Path(workflows_dir) if workflows_dir else BUNDLED_WORKFLOWS_DIR
        self.selection_file = (
            Path(selection_file) if selection_file else self.workflows_dir / SELECTION_FILE_NAME
        )
        self._workflows: Dict[str, WorkflowConfig] = {}
        self._selection: SelectionConfig | None = None
        self.reload()

    def reload(self) -> None:
        if not self.workflows_dir.is_dir():
            raise ConfigurationError(f"Workflows directory not found: {self.workflows_dir}")

        workflows: Dict[str, WorkflowConfig] = {}
        for path in sorted(self.workflows_dir.glob("*.yaml")):
            if path.resolve() == self.selection_file.resolve():
                continue
            try:
                workflow = WorkflowConfig.model_validate(_read_yaml(path))
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid workflow in {path}: {exc}") from exc
            if workflow.id in workflows:
                raise ConfigurationError(f"Duplicate workflow id {workflow.id!r} in {path}")
            workflows[workflow.id] = workflow

        if self.selection_file.exists():
            try:
                selection = SelectionConfig.model_validate(_read_yaml(self.selection_file))
            except ValidationError as exc:
                raise ConfigurationError(
                    f"Invalid selection file {self.selection_file}: {exc}"
                ) from exc
        else:
            selection = SelectionConfig(default_workflow_id="")

        self._selection = normalize_selection(selection, workflows.keys())
        self._workflows = workflows
        logger.info(
            f"Loaded {len(workflows)} workflows from {self.workflows_dir} "
            f"(default={self._selection.default_workflow_id})"
        )

    @property
    def selection(self) -> SelectionConfig:
        assert self._selection is not None
        return self._selection

    async def resolve(
        self,
        requested_workflow_id: Optional[str] = None,
        request: Optional[SelectionRequest] = None,
    ) -> WorkflowSelection:
        return select_workflow(
            self.selection,
            self._workflows.keys(),
            request or SelectionRequest(),
            requested_workflow_id=requested_workflow_id,
        )

    async def load(self, workflow_id: str) -> WorkflowConfig:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(workflow_id) from None

    async def list_workflows(self) -> List[WorkflowConfig]:
        return [self._workflows[key] for key in sorted(self._workflows)]
