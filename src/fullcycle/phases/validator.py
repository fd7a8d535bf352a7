"""Local build and test gate with a bounded model-driven fix loop."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import CompilationError, TestFailure
from ..schema import PipelineConfig
from ..tools.commands import CommandResult, CommandRunner
from ..tools.protected import normalise_repo_path
from ..tools.vcs import GitCheckpoint, VersionControlDriver
from .applier import ChangeApplier

LOGGER = logging.getLogger(__name__)

MAX_PROBLEMS_PER_FILE = 20

_DIAGNOSTIC_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Kotlin: e: file:///src/Main.kt:12:5 Unresolved reference: foo
    re.compile(r"^e:\s+(?:file://)?(?P<path>[^\s:]+):(?P<line>\d+):(?:\d+)?\s*(?P<msg>.*)$"),
    # TypeScript: src/app.ts(12,5): error TS2304: Cannot find name 'x'.
    re.compile(r"^(?P<path>[\w./\\@-]+\.\w+)\((?P<line>\d+),\d+\):\s*(?P<msg>.+)$"),
    # gcc, clang, javac, go, ruff, mypy: path:line[:col]: message
    re.compile(r"^(?P<path>[\w./\\@-]+\.\w+):(?P<line>\d+)(?::\d+)?:\s*(?P<msg>.+)$"),
    # Python traceback frame
    re.compile(r'^\s*File "(?P<path>[^"]+)", line (?P<line>\d+)(?:, in (?P<msg>.+))?$'),
    # pytest short summary
    re.compile(r"^FAILED (?P<path>[^\s:]+)::(?P<test>\S+)(?: - (?P<msg>.*))?$"),
)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    path: str
    line: Optional[int]
    message: str

    def render(self) -> str:
        location = f"line {self.line}: " if self.line else ""
        return f"{location}{self.message}".strip()


def parse_diagnostics(output: str, root: Path) -> Dict[str, List[Diagnostic]]:
    """Group ``(file, line, message)`` diagnostics found in ``output`` by repository path.

    Paths that do not resolve to an existing file inside ``root`` (standard
    library frames, site-packages, generated files) are dropped.
    """
    resolved_root = Path(root).resolve()
    grouped: Dict[str, List[Diagnostic]] = {}
    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        for pattern in _DIAGNOSTIC_PATTERNS:
            match = pattern.match(line)
            if match is None:
                continue
            relative = _repo_relative(match.group("path"), resolved_root)
            if relative is None:
                break
            data = match.groupdict()
            message = (data.get("msg") or "").strip()
            if data.get("test"):
                message = f"test {data['test']} failed" + (f": {message}" if message else "")
            number = int(data["line"]) if data.get("line") else None
            entries = grouped.setdefault(relative, [])
            diagnostic = Diagnostic(relative, number, message or "error reported here")
            if diagnostic not in entries and len(entries) < MAX_PROBLEMS_PER_FILE:
                entries.append(diagnostic)
            break
    return grouped


def _repo_relative(raw: str, root: Path) -> Optional[str]:
    candidate = Path(raw.replace("\\", "/"))
    if not candidate.is_absolute():
        candidate = root / normalise_repo_path(raw)
    try:
        resolved = candidate.resolve()
        relative = resolved.relative_to(root)
    except (OSError, ValueError):
        return None
    if not resolved.is_file() or (relative.parts and relative.parts[0] == ".git"):
        return None
    return relative.as_posix()


@dataclass(slots=True)
class ValidationOutcome:
    """Result of the local gate; ``fixed_paths`` need to be committed with the change."""

    build_ok: bool = True
    tests_ok: bool = True
    skipped: bool = False
    fixed_paths: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class LocalValidator:
    """Runs the configured build and test commands and repairs what they report."""

    def __init__(
        self,
        runner: CommandRunner,
        vcs: VersionControlDriver,
        applier: ChangeApplier,
        config: PipelineConfig,
        *,
        progress: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._runner = runner
        self._vcs = vcs
        self._applier = applier
        self._config = config
        self._progress = progress

    @property
    def root(self) -> Path:
        return self._vcs.root

    def _report(self, message: str) -> None:
        LOGGER.info(message.strip())
        if self._progress is not None:
            self._progress(message)

    def _run(self, command: Optional[Sequence[str]]) -> Optional[CommandResult]:
        if not command:
            return None
        return self._runner.run(list(command), self.root)

    def build(self) -> Optional[CommandResult]:
        return self._run(self._config.build_command)

    def test(self) -> Optional[CommandResult]:
        if not self._config.run_local_tests:
            return None
        return self._run(self._config.test_command)

    def validate(self, checkpoint: GitCheckpoint, *, task: str = "") -> ValidationOutcome:
        """Build, then test, fixing failures within the configured budgets.

        A build that still fails restores ``checkpoint`` and raises
        :class:`CompilationError`. Failing tests only add a warning.
        """
        outcome = ValidationOutcome()
        if not self._config.build_command:
            self._report("   No build command configured; skipping local build")
            outcome.skipped = True
        else:
            passed, output = self._fix_loop(
                self.build, self._config.max_compilation_attempts, "build", task, outcome.fixed_paths
            )
            if not passed:
                outcome.build_ok = False
                self._report("   Build still failing; reverting working tree")
                self._vcs.restore_checkpoint(checkpoint)
                raise CompilationError(
                    f"Build failed after {self._config.max_compilation_attempts} fix attempts:\n{output[-2000:]}"
                )

        if self._config.run_local_tests and self._config.test_command:
            passed, _ = self._fix_loop(self.test, self._config.max_test_attempts, "tests", task, outcome.fixed_paths)
            if not passed:
                outcome.tests_ok = False
                failure = TestFailure(
                    f"Local tests still failing after {self._config.max_test_attempts} fix attempts; deferring to CI"
                )
                LOGGER.warning("%s", failure)
                outcome.warnings.append(str(failure))
        return outcome

    def _fix_loop(
        self,
        run: Callable[[], Optional[CommandResult]],
        max_attempts: int,
        label: str,
        task: str,
        fixed_paths: List[str],
    ) -> tuple[bool, str]:
        result = run()
        if result is None or result.ok:
            return True, ""
        for attempt in range(1, max_attempts + 1):
            diagnostics = parse_diagnostics(result.output, self.root)
            if not diagnostics:
                self._report(f"   {label} failed but reported no fixable locations")
                return False, result.output
            self._report(f"   {label} failed; fix attempt {attempt}/{max_attempts} for {len(diagnostics)} file(s)")
            for path, entries in diagnostics.items():
                change = self._applier.fix_file(path, [entry.render() for entry in entries], task=task)
                if change is not None and change.path not in fixed_paths:
                    fixed_paths.append(change.path)
            result = run()
            if result is None or result.ok:
                self._report(f"   {label} passing after {attempt} fix attempt(s)")
                return True, ""
        return False, result.output

    def collect_failure_output(self) -> Optional[str]:
        """Return the output of the first failing local command, if any."""
        for run in (self.build, self.test):
            result = run()
            if result is not None and not result.ok:
                return result.output
        return None


__all__ = ["Diagnostic", "LocalValidator", "ValidationOutcome", "parse_diagnostics"]
