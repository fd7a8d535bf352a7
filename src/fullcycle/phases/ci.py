"""Remote CI wait loop with log-driven automatic fixes."""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..errors import CIFailureError
from ..models.llm_client import LLMResponseFormatError
from ..prompts import SYSTEM_PROMPT_CODER, render_ci_files_prompt
from ..schema import CIResult, CIStatus, PipelineConfig
from ..state import FixingCIError, RunContext, WaitingForCI
from ..tools.github import PullRequestGateway
from ..tools.protected import is_protected, normalise_repo_path, resolve_inside
from ..tools.vcs import VersionControlDriver
from .applier import ChangeApplier
from .base import PhaseLLM
from .validator import LocalValidator, parse_diagnostics

LOGGER = logging.getLogger(__name__)

LOG_EXCERPT_CHARS = 3_000
MAX_FILES_PER_FIX = 5

TERMINAL_STATUSES = frozenset({CIStatus.SUCCESS, CIStatus.FAILED, CIStatus.CANCELLED})


class FailureKind(str, Enum):
    COMPILATION = "compilation"
    TEST = "test"
    LINT = "lint"
    UNKNOWN = "unknown"


# Checked in order; compilation errors usually also fail the test step.
_FAILURE_PATTERNS: tuple[tuple[FailureKind, re.Pattern[str]], ...] = (
    (
        FailureKind.COMPILATION,
        re.compile(
            r"(^e: |compilation (?:error|failed)|compileKotlin|compileJava|error TS\d+|"
            r"cannot find symbol|unresolved reference|SyntaxError|IndentationError|"
            r"ImportError|ModuleNotFoundError|build failed|error\[E\d+\])",
            re.IGNORECASE | re.MULTILINE,
        ),
    ),
    (
        FailureKind.TEST,
        re.compile(
            r"(^FAILED |tests? failed|AssertionError|assert .* failed|\d+ failed|"
            r"There were failing tests|Test.*FAILED)",
            re.IGNORECASE | re.MULTILINE,
        ),
    ),
    (
        FailureKind.LINT,
        re.compile(
            r"(ktlint|detekt|eslint|flake8|ruff|pylint|mypy|checkstyle|lint(?:ing)? (?:failed|errors?))",
            re.IGNORECASE,
        ),
    ),
)


def classify_failure(logs: str) -> FailureKind:
    for kind, pattern in _FAILURE_PATTERNS:
        if pattern.search(logs):
            return kind
    return FailureKind.UNKNOWN


class FileListPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    files: List[str] = Field(default_factory=list)


class CIWatcher:
    """Waits for CI on the pull request and repairs failures within the retry budget."""

    def __init__(
        self,
        gateway: PullRequestGateway,
        vcs: VersionControlDriver,
        applier: ChangeApplier,
        validator: LocalValidator,
        llm: PhaseLLM,
        config: PipelineConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._vcs = vcs
        self._applier = applier
        self._validator = validator
        self._llm = llm
        self._config = config
        self._sleep = sleep
        self._clock = clock

    def wait(self, pr_number: int) -> CIResult:
        """Poll until CI reaches a terminal status or the wait window closes.

        A success with no checks reported is only accepted after one more
        poll at the same interval.
        """
        deadline = self._clock() + self._config.ci_wait_timeout
        grace_used = False
        while True:
            result = self._gateway.get_ci_status(pr_number)
            if result.status in TERMINAL_STATUSES:
                if result.checks_reported or grace_used:
                    return result
                grace_used = True
                LOGGER.info("No checks reported for #%s yet; polling once more", pr_number)
            if self._clock() >= deadline:
                return result
            self._sleep(self._config.ci_poll_interval)

    def run(self, ctx: RunContext, pr_number: int, branch: str) -> CIResult:
        """Wait for CI, fixing failures. Raises :class:`CIFailureError` when it cannot pass."""
        max_retries = self._config.max_ci_retries
        attempt = 0
        while True:
            ctx.transition(WaitingForCI(pr_number=pr_number))
            ctx.ci_runs += 1
            ctx.progress(f"Waiting for CI on #{pr_number} (run {ctx.ci_runs})")
            result = self.wait(pr_number)

            if result.status == CIStatus.SUCCESS:
                ctx.progress("   CI passed")
                return result
            if result.status == CIStatus.CANCELLED:
                raise CIFailureError(f"CI was cancelled{_suffix(result)}")
            if result.status != CIStatus.FAILED:
                raise CIFailureError(
                    f"CI still {result.status.value.lower()} after {self._config.ci_wait_timeout:g}s"
                )

            attempt += 1
            error = result.error_message or "CI checks failed"
            ctx.transition(FixingCIError(error=error, attempt=attempt))
            ctx.progress(f"   CI failed ({error}); fix attempt {attempt}/{max_retries}")
            self.fix(ctx, result, branch)
            if attempt >= max_retries:
                raise CIFailureError(f"CI failed after {attempt} attempts")

    def _logs(self, branch: str) -> str:
        run_id: Optional[str] = self._gateway.latest_run_id(branch)
        logs = self._gateway.fetch_run_logs(run_id) if run_id else None
        if logs:
            return logs
        LOGGER.info("CI logs unavailable for %s; reproducing locally", branch)
        return self._validator.collect_failure_output() or ""

    def fix(self, ctx: RunContext, result: CIResult, branch: str) -> List[str]:
        """Apply one round of fixes for a failed CI result; returns the fixed paths."""
        task = ctx.task_description
        logs = result.logs or self._logs(branch)
        kind = classify_failure(logs)
        ctx.progress(f"   Failure looks like a {kind.value} problem")
        excerpt = logs[-LOG_EXCERPT_CHARS:]

        problems: Dict[str, List[str]] = {
            path: [entry.render() for entry in entries]
            for path, entries in parse_diagnostics(logs, self._vcs.root).items()
        }
        if not problems:
            generic = [f"CI {kind.value} failure: {result.error_message or 'see log excerpt'}", excerpt]
            problems = {path: generic for path in self._suggest_files(task, kind, logs)}
        if not problems:
            ctx.record_error(f"CI fix attempt found no files to change ({kind.value} failure)")
            return []

        fixed: List[str] = []
        for path, items in list(problems.items())[:MAX_FILES_PER_FIX]:
            change = self._applier.fix_file(path, items, task=task)
            if change is not None:
                fixed.append(change.path)
        if not fixed:
            ctx.record_error("CI fix attempt produced no file changes")
            return []
        if self._vcs.commit_paths(fixed, f"fix: resolve CI {kind.value} failure") is not None:
            self._vcs.push(self._config.remote, branch)
        return fixed

    def _suggest_files(self, task: str, kind: FailureKind, logs: str) -> Sequence[str]:
        tracked = self._vcs.list_tracked_paths()
        try:
            payload = self._llm.structured(
                render_ci_files_prompt(task, kind.value, logs, tracked),
                FileListPayload,
                system_prompt=SYSTEM_PROMPT_CODER,
                phase="ci-files",
            )
        except LLMResponseFormatError as error:
            LOGGER.warning("Could not get a file list for the CI fix: %s", error)
            return []
        files: List[str] = []
        for raw in payload.files:
            path = normalise_repo_path(raw)
            target = resolve_inside(self._vcs.root, path)
            if target is None or not target.is_file() or is_protected(path, self._config.protected_patterns):
                continue
            if path not in files:
                files.append(path)
        return files


def _suffix(result: CIResult) -> str:
    return f": {result.check_name}" if result.check_name else ""


__all__ = ["CIWatcher", "FailureKind", "classify_failure"]
