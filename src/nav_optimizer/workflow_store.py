"""Persistent storage for recorded workflows and their optimized steps."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .models import OptimizationResult, SavedWorkflow

logger = logging.getLogger(__name__)

_UNSAFE_ID = re.compile(r"[^a-zA-Z0-9_.-]+")


class WorkflowStoreError(RuntimeError):
    """Raised when a stored workflow cannot be read or parsed."""


def load_workflow_file(path: Path) -> SavedWorkflow:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise WorkflowStoreError(f"Cannot read workflow file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise WorkflowStoreError(f"Workflow file {path} is invalid JSON: {exc}") from exc
    try:
        return SavedWorkflow.model_validate(payload)
    except ValidationError as exc:
        raise WorkflowStoreError(f"Workflow file {path} failed validation: {exc}") from exc


def write_workflow_file(path: Path, workflow: SavedWorkflow) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = workflow.model_dump(mode="json", by_alias=True, exclude_none=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


class WorkflowStore:
    """Stores workflows as one JSON file per workflow id under a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, workflow_id: str) -> Path:
        slug = _UNSAFE_ID.sub("-", workflow_id).strip("-") or "workflow"
        return self.root / f"{slug}.json"

    def load(self, workflow_id: str) -> Optional[SavedWorkflow]:
        path = self._path_for(workflow_id)
        if not path.exists():
            return None
        return load_workflow_file(path)

    def save(self, workflow: SavedWorkflow) -> Path:
        path = self._path_for(workflow.id)
        write_workflow_file(path, workflow)
        logger.info("Stored workflow '%s' (%s steps)", workflow.name, len(workflow.steps))
        return path

    def save_optimization(self, workflow_id: str, result: OptimizationResult) -> SavedWorkflow:
        """Attach optimized steps to a stored workflow, leaving the recorded steps untouched."""
        workflow = self.load(workflow_id)
        if workflow is None:
            raise WorkflowStoreError(f"No stored workflow with id {workflow_id}")
        updated = workflow.model_copy(
            update={
                "optimized_steps": result.optimized_steps,
                "optimization_metadata": result.metadata,
            }
        )
        self.save(updated)
        return updated

    def list_ids(self) -> List[str]:
        ids: List[str] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                ids.append(load_workflow_file(path).id)
            except WorkflowStoreError as exc:
                logger.debug("Skipping unreadable workflow file %s: %s", path, exc)
        return ids
