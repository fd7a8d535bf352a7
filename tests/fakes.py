"""Scripted stand-ins for the pipeline's external collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from fullcycle.models.llm_client import LLMClient
from fullcycle.phases.review import ReviewService
from fullcycle.schema import CIResult, CIStatus, Mergeability, PullRequestRef, SelfReviewResult
from fullcycle.tools.commands import CommandResult, CommandRunner
from fullcycle.tools.github import PullRequestGateway
from fullcycle.tools.vcs import VersionControlDriver

Responder = Callable[[Dict[str, Any]], Any]


class ScriptedLLM(LLMClient):
    """Returns queued responses in order; exceptions in the queue are raised.

    A callable in the queue is invoked with the payload, and ``default`` (text
    or callable) answers once the queue is empty.
    """

    def __init__(self, responses: Sequence[Any] = (), *, default: Any = None) -> None:
        super().__init__(model="scripted-model")
        self.responses: List[Any] = list(responses)
        self.default = default
        self.payloads: List[Dict[str, Any]] = []

    @property
    def phases(self) -> List[str]:
        return [payload.get("metadata", {}).get("phase", "") for payload in self.payloads]

    def prompt(self, index: int) -> str:
        return self.payloads[index]["input"][0]["content"][0]["text"]

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        item = self.responses.pop(0) if self.responses else self.default
        if item is None:
            raise AssertionError(f"Unexpected model call: {payload.get('metadata')}")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(payload)
        return str(item)


class FakeRunner(CommandRunner):
    """Command runner answering from a queue per executable name."""

    def __init__(self, results: Optional[Mapping[str, Sequence[tuple[int, str]]]] = None) -> None:
        self.queues: Dict[str, List[tuple[int, str]]] = {key: list(value) for key, value in (results or {}).items()}
        self.calls: List[tuple[str, ...]] = []

    def run(self, argv, cwd, *, env=None, timeout=None) -> CommandResult:  # type: ignore[override]
        command = tuple(str(part) for part in argv)
        self.calls.append(command)
        queue = self.queues.get(command[0], [])
        exit_code, output = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else (0, ""))
        return CommandResult(command, exit_code, output)


class RecordingVCS(VersionControlDriver):
    """Driver that records commits and pushes instead of running git."""

    def __init__(self, root: Path, tracked: Sequence[str] = ()) -> None:
        super().__init__(root, runner=FakeRunner())
        self.tracked = list(tracked)
        self.commits: List[tuple[tuple[str, ...], str]] = []
        self.pushes: List[tuple[str, str, bool, bool]] = []

    def list_tracked_paths(self) -> List[str]:
        return list(self.tracked)

    def commit_paths(self, paths, message):  # type: ignore[override]
        self.commits.append((tuple(paths), message))
        return f"sha{len(self.commits)}"

    def push(self, remote, branch, *, set_upstream=False, force=False):  # type: ignore[override]
        self.pushes.append((remote, branch, set_upstream, force))


@dataclass
class FakeGateway(PullRequestGateway):
    """In-memory hosting platform with scripted CI results."""

    ci_results: List[CIResult] = field(default_factory=list)
    mergeability: Mergeability = Mergeability.MERGEABLE
    existing: Optional[PullRequestRef] = None
    logs: Optional[str] = None
    created: List[Dict[str, str]] = field(default_factory=list)
    merged: List[tuple[int, str]] = field(default_factory=list)
    comments: List[tuple[int, str]] = field(default_factory=list)
    status_calls: int = 0
    closed: bool = False
    diff_text: str = "diff --git a/x b/x\n+change\n"

    def find_open_pull_request(self, branch: str) -> Optional[PullRequestRef]:
        return self.existing

    def create_pull_request(self, *, branch: str, base: str, title: str, body: str) -> PullRequestRef:
        self.created.append({"branch": branch, "base": base, "title": title, "body": body})
        return PullRequestRef(number=7, url="https://github.com/acme/widgets/pull/7")

    def get_mergeability(self, number: int) -> Mergeability:
        return self.mergeability

    def get_ci_status(self, number: int) -> CIResult:
        self.status_calls += 1
        if not self.ci_results:
            return CIResult(status=CIStatus.SUCCESS)
        return self.ci_results.pop(0) if len(self.ci_results) > 1 else self.ci_results[0]

    def latest_run_id(self, branch: str) -> Optional[str]:
        return "101" if self.logs else None

    def fetch_run_logs(self, run_id: str) -> Optional[str]:
        return self.logs

    def merge(self, number: int, *, strategy: str = "squash") -> None:
        self.merged.append((number, strategy))

    def diff(self, number: int) -> str:
        return self.diff_text

    def comment(self, number: int, body: str) -> None:
        self.comments.append((number, body))

    def close(self) -> None:
        self.closed = True


class ScriptedReviewService(ReviewService):
    def __init__(self, results: Sequence[Any]) -> None:
        self.results = list(results)
        self.calls = 0
        self.closed = False

    def review(self, pr_number: int, *, task: str) -> SelfReviewResult:
        self.calls += 1
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock advanced only by :meth:`sleep`."""

    def __init__(self) -> None:
        self.now = 1_000.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
