"""Apply an execution plan to the working tree through the language model.

Every write goes through the same gates: protected paths and paths outside
the repository are refused, model output is cleaned into raw file content,
and rewrites of large files that shrink implausibly are discarded by the
anti-truncation guard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from ..errors import NoChangesAppliedError
from ..extraction import clean_code_response, count_lines
from ..models.llm_client import LLMResponseFormatError
from ..prompts import SYSTEM_PROMPT_CODER, render_create_prompt, render_fix_prompt, render_modify_prompt
from ..schema import ChangeType, ExecutionPlan, FileChange, PlannedChange
from ..tools.protected import is_protected, normalise_repo_path, resolve_inside
from .base import PhaseLLM

LOGGER = logging.getLogger(__name__)

TRUNCATION_MIN_LINES = 50
TRUNCATION_MIN_RATIO = 0.5


def is_truncated(
    old_lines: int,
    new_lines: int,
    *,
    min_lines: int = TRUNCATION_MIN_LINES,
    min_ratio: float = TRUNCATION_MIN_RATIO,
) -> bool:
    """Return ``True`` when a rewrite of an ``old_lines`` file to ``new_lines`` looks cut off."""
    if old_lines <= min_lines:
        return False
    return new_lines / old_lines < min_ratio


@dataclass(slots=True)
class ApplyOutcome:
    """What happened to each entry of a plan."""

    changes: List[FileChange] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [change.path for change in self.changes]


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class ChangeApplier:
    """Generates, rewrites and deletes files on behalf of the pipeline."""

    def __init__(
        self,
        llm: PhaseLLM,
        root: Path,
        *,
        protected_patterns: Sequence[str],
        progress: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._llm = llm
        self.root = Path(root).resolve()
        self._protected = tuple(protected_patterns)
        self._progress = progress

    def _report(self, message: str) -> None:
        LOGGER.info(message.strip())
        if self._progress is not None:
            self._progress(message)

    def _target(self, raw_path: str) -> tuple[str, Optional[Path]]:
        """Return the normalised path and its absolute location, or ``None`` when refused."""
        path = normalise_repo_path(raw_path)
        if not path:
            self._report("   Skipping plan entry without a file path")
            return path, None
        if is_protected(path, self._protected):
            self._report(f"   Skipping protected file {path}")
            return path, None
        target = resolve_inside(self.root, path)
        if target is None:
            self._report(f"   Skipping {path}: outside the repository")
        return path, target

    def _generate(self, prompt: str, path: str, *, phase: str) -> Optional[str]:
        """Return the cleaned file content, or ``None`` when the reply was blank."""
        try:
            response = self._llm.text(prompt, system_prompt=SYSTEM_PROMPT_CODER, phase=phase)
        except LLMResponseFormatError as error:
            self._report(f"   Rejected {path}: the model returned no content ({error})")
            return None
        return clean_code_response(response, path=path)

    # ----------------------------------------------------------------- plan
    def apply_plan(self, plan: ExecutionPlan, *, context: str = "") -> ApplyOutcome:
        """Apply every planned change in order.

        Raises :class:`NoChangesAppliedError` when nothing was written.
        """
        outcome = ApplyOutcome()
        for change in plan.planned_changes:
            path, target = self._target(change.file_path)
            if target is None:
                outcome.skipped.append(path)
                continue
            if change.change_type == ChangeType.DELETE:
                record = self._delete(path, target)
            elif change.change_type == ChangeType.MODIFY and target.is_file():
                record = self._modify(plan.task_description, change, path, target, context)
            else:
                record = self._create(plan.task_description, change, path, target, context)
            if record is None:
                outcome.rejected.append(path)
            else:
                outcome.changes.append(record)

        if not outcome.changes:
            raise NoChangesAppliedError("No changes applied: every planned change was skipped or rejected")
        return outcome

    def _create(
        self, task: str, change: PlannedChange, path: str, target: Path, context: str
    ) -> Optional[FileChange]:
        self._report(f"   Creating {path}")
        prompt = render_create_prompt(task, path, change.description, context)
        content = self._generate(prompt, path, phase="create")
        if content is None:
            return None
        if not content.strip():
            self._report(f"   Rejected {path}: the model returned no content")
            return None
        _write(target, content)
        return FileChange(path=path, lines_added=count_lines(content), lines_removed=0, is_new=True)

    def _modify(
        self, task: str, change: PlannedChange, path: str, target: Path, context: str
    ) -> Optional[FileChange]:
        self._report(f"   Modifying {path}")
        original = _read(target)
        prompt = render_modify_prompt(task, path, change.description, original, context)
        content = self._generate(prompt, path, phase="modify")
        if content is None:
            return None
        return self._replace(path, target, original, content)

    def _delete(self, path: str, target: Path) -> Optional[FileChange]:
        if not target.is_file():
            self._report(f"   {path} is already absent")
            return None
        removed = count_lines(_read(target))
        target.unlink()
        self._report(f"   Deleted {path}")
        return FileChange(path=path, lines_added=0, lines_removed=removed)

    def _replace(self, path: str, target: Path, original: str, content: str) -> Optional[FileChange]:
        """Write ``content`` over ``original`` unless it is empty, unchanged or truncated."""
        if not content.strip():
            self._report(f"   Rejected rewrite of {path}: the model returned no content")
            return None
        if content == original:
            self._report(f"   {path} unchanged")
            return None
        old_lines = count_lines(original)
        new_lines = count_lines(content)
        if is_truncated(old_lines, new_lines):
            self._report(
                f"   Rejected rewrite of {path}: size dropped from {old_lines} to {new_lines} lines"
            )
            return None
        _write(target, content)
        return FileChange(
            path=path,
            lines_added=max(0, new_lines - old_lines),
            lines_removed=max(0, old_lines - new_lines),
        )

    # ------------------------------------------------------------------ fixes
    def fix_file(self, raw_path: str, problems: Iterable[str], *, task: str = "") -> Optional[FileChange]:
        """Ask for a corrected copy of one file and write it through the guard.

        Returns ``None`` when the path is refused, missing, or the rewrite is
        rejected.
        """
        path, target = self._target(raw_path)
        if target is None:
            return None
        if not target.is_file():
            self._report(f"   Cannot fix {path}: file does not exist")
            return None
        original = _read(target)
        prompt = render_fix_prompt(path, original, list(problems), task=task)
        content = self._generate(prompt, path, phase="fix")
        if content is None:
            return None
        return self._replace(path, target, original, content)


__all__ = ["ApplyOutcome", "ChangeApplier", "TRUNCATION_MIN_LINES", "TRUNCATION_MIN_RATIO", "is_truncated"]
