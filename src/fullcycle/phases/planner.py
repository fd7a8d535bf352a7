"""Planning phase: turn a task description into an :class:`ExecutionPlan`."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..errors import PlanningError
from ..models.llm_client import LLMClientError
from ..prompts import SYSTEM_PROMPT_PLANNER, render_plan_prompt
from ..schema import ChangeType, ExecutionPlan, PlannedChange
from ..tools.protected import is_protected, normalise_repo_path, resolve_inside
from .base import PhaseLLM

LOGGER = logging.getLogger(__name__)

FALLBACK_SUMMARY = "Plan needs refinement: single change derived from the task description"
_PATH_TOKEN_RE = re.compile(r"^[\w@+-][\w@+./-]*$")
_EXTENSION_RE = re.compile(r"\.[A-Za-z][A-Za-z0-9]{0,7}$")


class PlannedChangePayload(BaseModel):
    """Plan entry as emitted by the model; camelCase keys are accepted."""

    model_config = ConfigDict(extra="ignore")

    file_path: str = Field(validation_alias=AliasChoices("file_path", "filePath", "path", "file"))
    change_type: ChangeType = Field(
        default=ChangeType.MODIFY,
        validation_alias=AliasChoices("change_type", "changeType", "type", "action"),
    )
    description: str = ""

    @field_validator("change_type", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class PlanPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str = ""
    planned_changes: List[PlannedChangePayload] = Field(
        default_factory=list,
        validation_alias=AliasChoices("planned_changes", "plannedChanges", "changes", "files"),
    )
    estimated_files_count: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("estimated_files_count", "estimatedFilesCount"),
    )


def first_path_token(task: str) -> Optional[str]:
    """Return the first token of ``task`` that looks like a repository path."""
    for raw in task.split():
        token = raw.strip("`'\"()[]{}<>,;:!?").rstrip(".")
        if not token or "://" in raw or not _PATH_TOKEN_RE.match(token):
            continue
        if "/" in token or _EXTENSION_RE.search(token):
            return normalise_repo_path(token)
    return None


class TaskPlanner:
    """Produces the execution plan for a task; never raises for bad model output."""

    def __init__(self, llm: PhaseLLM, root: Path, *, protected_patterns: Sequence[str]) -> None:
        self._llm = llm
        self.root = Path(root)
        self._protected = tuple(protected_patterns)

    def plan(self, task: str, *, context: str = "", tracked_paths: Sequence[str] = ()) -> ExecutionPlan:
        try:
            payload = self._request_plan(task, context, tracked_paths)
        except PlanningError as error:
            LOGGER.warning("Falling back to a single-change plan: %s", error)
            return self.fallback_plan(task)
        changes = self._normalise(payload.planned_changes, tracked_paths)
        return ExecutionPlan(
            task_description=task,
            planned_changes=tuple(changes),
            estimated_files_count=payload.estimated_files_count or len(changes),
            summary=payload.summary.strip() or task.strip(),
        )

    def _request_plan(self, task: str, context: str, tracked_paths: Sequence[str]) -> PlanPayload:
        prompt = render_plan_prompt(task, context, tracked_paths)
        try:
            payload = self._llm.structured(prompt, PlanPayload, system_prompt=SYSTEM_PROMPT_PLANNER, phase="plan")
        except LLMClientError as error:
            raise PlanningError(f"planner response unusable: {error}") from error
        if not payload.planned_changes:
            raise PlanningError("planner returned no changes")
        return payload

    def _exists(self, path: str, tracked: set[str]) -> bool:
        if path in tracked:
            return True
        target = resolve_inside(self.root, path)
        return target is not None and target.is_file()

    def _normalise(self, entries: Sequence[PlannedChangePayload], tracked_paths: Sequence[str]) -> List[PlannedChange]:
        tracked = set(tracked_paths)
        changes: List[PlannedChange] = []
        seen: set[str] = set()
        for entry in entries:
            path = normalise_repo_path(entry.file_path)
            if not path or path in seen:
                continue
            change_type = entry.change_type
            if change_type == ChangeType.DELETE and is_protected(path, self._protected):
                LOGGER.warning("Dropping planned deletion of protected path %s", path)
                continue
            if change_type == ChangeType.CREATE and self._exists(path, tracked):
                change_type = ChangeType.MODIFY
            seen.add(path)
            changes.append(PlannedChange(file_path=path, change_type=change_type, description=entry.description))
        return changes

    def fallback_plan(self, task: str) -> ExecutionPlan:
        path = first_path_token(task) or ""
        if path and self._exists(path, set()):
            change_type = ChangeType.MODIFY
        else:
            change_type = ChangeType.CREATE
        change = PlannedChange(file_path=path, change_type=change_type, description=task.strip())
        return ExecutionPlan(
            task_description=task,
            planned_changes=(change,),
            estimated_files_count=1,
            summary=FALLBACK_SUMMARY,
        )


__all__ = ["FALLBACK_SUMMARY", "PlanPayload", "PlannedChangePayload", "TaskPlanner", "first_path_token"]
