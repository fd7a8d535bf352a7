"""Pull request and CI access over the ``gh`` command line client."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from ..errors import PullRequestError
from ..schema import CIResult, CIStatus, Mergeability, PullRequestRef, RepoRef
from .commands import CommandResult, CommandRunner, SubprocessRunner

LOGGER = logging.getLogger(__name__)

_PULL_URL_RE = re.compile(r"https://\S+/pull/(\d+)")

_FAILED_CONCLUSIONS = frozenset({"FAILURE", "TIMED_OUT", "ERROR", "ACTION_REQUIRED", "STARTUP_FAILURE"})
_PASSING_CONCLUSIONS = frozenset({"SUCCESS", "NEUTRAL", "SKIPPED"})
_RUNNING_STATES = frozenset({"IN_PROGRESS", "PENDING", "WAITING", "REQUESTED"})

MERGE_FLAGS = {"squash": "--squash", "merge": "--merge", "rebase": "--rebase"}


class PullRequestGateway:
    """Port to the code-hosting platform. Subclasses implement every method."""

    def find_open_pull_request(self, branch: str) -> Optional[PullRequestRef]:
        raise NotImplementedError

    def create_pull_request(self, *, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        raise NotImplementedError

    def get_mergeability(self, number: int) -> Mergeability:
        raise NotImplementedError

    def get_ci_status(self, number: int) -> CIResult:
        raise NotImplementedError

    def latest_run_id(self, branch: str) -> Optional[str]:
        raise NotImplementedError

    def fetch_run_logs(self, run_id: str) -> Optional[str]:
        raise NotImplementedError

    def merge(self, number: int, *, strategy: str = "squash") -> None:
        raise NotImplementedError

    def diff(self, number: int) -> str:
        raise NotImplementedError

    def comment(self, number: int, body: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release any held resources. The default has nothing to release."""


def _check_state(check: Mapping[str, Any]) -> tuple[str, str]:
    # CheckRun entries carry status/conclusion, StatusContext entries only state.
    status = str(check.get("status") or "").upper()
    conclusion = str(check.get("conclusion") or "").upper()
    state = str(check.get("state") or "").upper()
    if state and not status:
        if state in _RUNNING_STATES or state == "EXPECTED":
            return "IN_PROGRESS", ""
        return "COMPLETED", state
    return status, conclusion


def summarise_checks(checks: Iterable[Mapping[str, Any]], mergeable: str | None) -> CIResult:
    """Fold a ``statusCheckRollup`` array into one :class:`CIResult`."""
    entries = [check for check in checks if isinstance(check, Mapping)]
    if not entries:
        if (mergeable or "").upper() == "MERGEABLE":
            return CIResult(status=CIStatus.SUCCESS, checks_reported=False)
        return CIResult(status=CIStatus.PENDING)

    failed: List[str] = []
    cancelled: List[str] = []
    running = False
    all_completed = True
    for check in entries:
        name = str(check.get("name") or check.get("context") or "check")
        status, conclusion = _check_state(check)
        if status != "COMPLETED":
            all_completed = False
            # Queued checks keep the result PENDING unless something is already running.
            if status not in ("QUEUED", "WAITING", "REQUESTED", "PENDING", ""):
                running = True
            continue
        if conclusion in _FAILED_CONCLUSIONS:
            failed.append(name)
        elif conclusion == "CANCELLED":
            cancelled.append(name)
        elif conclusion not in _PASSING_CONCLUSIONS:
            failed.append(name)

    if failed:
        return CIResult(
            status=CIStatus.FAILED,
            check_name=failed[0],
            error_message=f"Failing checks: {', '.join(failed)}",
        )
    if cancelled and all_completed:
        return CIResult(
            status=CIStatus.CANCELLED,
            check_name=cancelled[0],
            error_message=f"Cancelled checks: {', '.join(cancelled)}",
        )
    if all_completed:
        return CIResult(status=CIStatus.SUCCESS)
    return CIResult(status=CIStatus.RUNNING if running else CIStatus.PENDING)


class GhCliGateway(PullRequestGateway):
    """Gateway implementation that shells out to ``gh`` for a fixed repository."""

    def __init__(
        self,
        root: Path | str,
        repo: RepoRef,
        runner: CommandRunner | None = None,
    ) -> None:
        self.root = Path(root)
        self.repo = repo
        self._runner = runner or SubprocessRunner(default_timeout=300.0)

    def _gh(self, *args: str, check: bool = True) -> CommandResult:
        argv = ["gh", *args, "--repo", self.repo.slug]
        result = self._runner.run(argv, self.root)
        if check and not result.ok:
            raise PullRequestError(f"gh {' '.join(args[:2])} failed: {result.output.strip() or result.exit_code}")
        return result

    @staticmethod
    def _json(result: CommandResult) -> Any:
        try:
            return json.loads(result.output or "null")
        except json.JSONDecodeError as error:
            raise PullRequestError(f"Unexpected gh output: {result.output.strip()[:200]}") from error

    def find_open_pull_request(self, branch: str) -> Optional[PullRequestRef]:
        result = self._gh(
            "pr", "list", "--head", branch, "--state", "open", "--json", "number,url", "--limit", "1", check=False
        )
        if not result.ok:
            LOGGER.debug("gh pr list failed: %s", result.output.strip())
            return None
        try:
            entries = self._json(result)
        except PullRequestError:
            return None
        if not isinstance(entries, list) or not entries:
            return None
        first = entries[0]
        return PullRequestRef(number=int(first["number"]), url=str(first.get("url") or ""))

    def create_pull_request(self, *, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        result = self._gh("pr", "create", "--head", branch, "--base", base, "--title", title, "--body", body)
        match = _PULL_URL_RE.search(result.output)
        if match is None:
            raise PullRequestError(f"Could not find a pull request URL in gh output: {result.output.strip()}")
        return PullRequestRef(number=int(match.group(1)), url=match.group(0))

    def _view(self, number: int, fields: str) -> Mapping[str, Any]:
        data = self._json(self._gh("pr", "view", str(number), "--json", fields))
        if not isinstance(data, Mapping):
            raise PullRequestError(f"Unexpected gh pr view payload for #{number}")
        return data

    def get_mergeability(self, number: int) -> Mergeability:
        data = self._view(number, "mergeable")
        value = str(data.get("mergeable") or "").upper()
        try:
            return Mergeability(value)
        except ValueError:
            return Mergeability.UNKNOWN

    def get_ci_status(self, number: int) -> CIResult:
        result = self._gh("pr", "view", str(number), "--json", "mergeable,statusCheckRollup", check=False)
        if not result.ok:
            LOGGER.warning("gh pr view #%s failed: %s", number, result.output.strip())
            return CIResult(status=CIStatus.PENDING, error_message=result.short_message())
        try:
            data = self._json(result)
        except PullRequestError as error:
            return CIResult(status=CIStatus.PENDING, error_message=str(error))
        if not isinstance(data, Mapping):
            return CIResult(status=CIStatus.PENDING)
        return summarise_checks(data.get("statusCheckRollup") or [], data.get("mergeable"))

    def latest_run_id(self, branch: str) -> Optional[str]:
        result = self._gh(
            "run", "list", "--branch", branch, "--limit", "1", "--json", "databaseId,status,conclusion", check=False
        )
        if not result.ok:
            return None
        try:
            runs = self._json(result)
        except PullRequestError:
            return None
        if not isinstance(runs, list) or not runs:
            return None
        run_id = runs[0].get("databaseId")
        return str(run_id) if run_id is not None else None

    def fetch_run_logs(self, run_id: str) -> Optional[str]:
        result = self._gh("run", "view", run_id, "--log-failed", check=False)
        if not result.ok or not result.output.strip():
            return None
        return result.output

    def merge(self, number: int, *, strategy: str = "squash") -> None:
        flag = MERGE_FLAGS.get(strategy)
        if flag is None:
            raise PullRequestError(f"Unknown merge strategy: {strategy}")
        self._gh("pr", "merge", str(number), flag)

    def diff(self, number: int) -> str:
        return self._gh("pr", "diff", str(number)).output

    def comment(self, number: int, body: str) -> None:
        self._gh("pr", "comment", str(number), "--body", body)


__all__ = ["GhCliGateway", "MERGE_FLAGS", "PullRequestGateway", "summarise_checks"]
