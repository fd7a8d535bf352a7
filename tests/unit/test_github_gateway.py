from __future__ import annotations

import json
from pathlib import Path

import pytest

from fakes import FakeRunner
from fullcycle.errors import PullRequestError
from fullcycle.schema import CIStatus, Mergeability, RepoRef
from fullcycle.tools.github import GhCliGateway, summarise_checks
from fullcycle.tools.vcs import parse_github_remote


def _check(name: str, status: str = "COMPLETED", conclusion: str = "SUCCESS") -> dict:
    return {"__typename": "CheckRun", "name": name, "status": status, "conclusion": conclusion}


def _gateway(tmp_path: Path, responses: list[tuple[int, str]]) -> tuple[GhCliGateway, FakeRunner]:
    runner = FakeRunner({"gh": responses})
    return GhCliGateway(tmp_path, RepoRef("acme", "widgets"), runner=runner), runner


def test_no_checks_means_success_only_when_mergeable() -> None:
    no_checks = summarise_checks([], "MERGEABLE")
    assert no_checks.status == CIStatus.SUCCESS and not no_checks.checks_reported
    assert summarise_checks([_check("lint")], "MERGEABLE").checks_reported
    assert summarise_checks([], "UNKNOWN").status == CIStatus.PENDING
    assert summarise_checks([], None).status == CIStatus.PENDING


def test_any_failing_conclusion_fails_the_rollup() -> None:
    result = summarise_checks(
        [_check("lint"), _check("build", conclusion="FAILURE"), _check("e2e", status="IN_PROGRESS", conclusion="")],
        "MERGEABLE",
    )
    assert result.status == CIStatus.FAILED
    assert result.check_name == "build"
    assert result.error_message == "Failing checks: build"


@pytest.mark.parametrize("conclusion", ["TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE", "SOMETHING_NEW"])
def test_unusual_conclusions_count_as_failures(conclusion: str) -> None:
    assert summarise_checks([_check("ci", conclusion=conclusion)], "MERGEABLE").status == CIStatus.FAILED


def test_rollup_states_for_running_queued_cancelled_and_passing() -> None:
    running = summarise_checks([_check("a"), _check("b", status="IN_PROGRESS", conclusion="")], None)
    queued = summarise_checks([_check("a", status="QUEUED", conclusion="")], None)
    cancelled = summarise_checks([_check("a"), _check("b", conclusion="CANCELLED")], None)
    passing = summarise_checks([_check("a"), _check("b", conclusion="SKIPPED"), _check("c", conclusion="NEUTRAL")], None)

    assert running.status == CIStatus.RUNNING
    assert queued.status == CIStatus.PENDING
    assert cancelled.status == CIStatus.CANCELLED and cancelled.check_name == "b"
    assert passing.status == CIStatus.SUCCESS


def test_status_contexts_use_state_field() -> None:
    contexts = [
        {"__typename": "StatusContext", "context": "ci/jenkins", "state": "PENDING"},
        {"__typename": "StatusContext", "context": "ci/travis", "state": "SUCCESS"},
    ]
    assert summarise_checks(contexts, None).status == CIStatus.RUNNING
    failing = summarise_checks([{"context": "ci/jenkins", "state": "ERROR"}], None)
    assert failing.status == CIStatus.FAILED and failing.check_name == "ci/jenkins"


def test_create_pull_request_parses_url_and_scopes_repo(tmp_path: Path) -> None:
    gateway, runner = _gateway(tmp_path, [(0, "Creating pull request...\nhttps://github.com/acme/widgets/pull/42\n")])

    ref = gateway.create_pull_request(branch="feature/ai-1-x", base="main", title="feat: x", body="body")

    assert (ref.number, ref.url) == (42, "https://github.com/acme/widgets/pull/42")
    assert runner.calls[0] == (
        "gh", "pr", "create", "--head", "feature/ai-1-x", "--base", "main",
        "--title", "feat: x", "--body", "body", "--repo", "acme/widgets",
    )


def test_create_pull_request_raises_on_gh_failure(tmp_path: Path) -> None:
    gateway, _ = _gateway(tmp_path, [(1, "GraphQL: No commits between main and feature")])
    with pytest.raises(PullRequestError, match="No commits"):
        gateway.create_pull_request(branch="b", base="main", title="t", body="")


def test_find_open_pull_request(tmp_path: Path) -> None:
    payload = json.dumps([{"number": 5, "url": "https://github.com/acme/widgets/pull/5"}])
    gateway, runner = _gateway(tmp_path, [(0, payload), (0, "[]"), (1, "auth required")])

    assert gateway.find_open_pull_request("b").number == 5
    assert gateway.find_open_pull_request("b") is None
    assert gateway.find_open_pull_request("b") is None
    assert runner.calls[0][:5] == ("gh", "pr", "list", "--head", "b")


def test_ci_status_reads_rollup_and_degrades_to_pending(tmp_path: Path) -> None:
    payload = json.dumps({"mergeable": "MERGEABLE", "statusCheckRollup": [_check("build", conclusion="FAILURE")]})
    gateway, _ = _gateway(tmp_path, [(0, payload), (0, "not json"), (1, "HTTP 502")])

    assert gateway.get_ci_status(3).status == CIStatus.FAILED
    assert gateway.get_ci_status(3).status == CIStatus.PENDING
    degraded = gateway.get_ci_status(3)
    assert degraded.status == CIStatus.PENDING and degraded.error_message == "HTTP 502"


def test_mergeability_and_merge_flags(tmp_path: Path) -> None:
    gateway, runner = _gateway(tmp_path, [(0, '{"mergeable": "CONFLICTING"}'), (0, '{"mergeable": ""}'), (0, "")])

    assert gateway.get_mergeability(3) == Mergeability.CONFLICTING
    assert gateway.get_mergeability(3) == Mergeability.UNKNOWN
    gateway.merge(3, strategy="rebase")
    assert runner.calls[-1] == ("gh", "pr", "merge", "3", "--rebase", "--repo", "acme/widgets")
    with pytest.raises(PullRequestError):
        gateway.merge(3, strategy="octopus")


def test_run_logs_lookup(tmp_path: Path) -> None:
    runs = json.dumps([{"databaseId": 9911, "status": "completed", "conclusion": "failure"}])
    gateway, runner = _gateway(tmp_path, [(0, runs), (0, "build\tStep\terror: boom\n")])

    assert gateway.latest_run_id("feature/ai-1-x") == "9911"
    assert gateway.fetch_run_logs("9911") == "build\tStep\terror: boom\n"
    assert runner.calls[1][:5] == ("gh", "run", "view", "9911", "--log-failed")


@pytest.mark.parametrize(
    ("url", "slug"),
    [
        ("git@github.com:acme/widgets.git", "acme/widgets"),
        ("https://github.com/acme/widgets", "acme/widgets"),
        ("https://github.com/acme/widgets.git/", "acme/widgets"),
        ("ssh://git@github.com/acme/my.repo.git", "acme/my.repo"),
    ],
)
def test_parse_github_remote(url: str, slug: str) -> None:
    ref = parse_github_remote(url)
    assert ref is not None and ref.slug == slug


def test_parse_github_remote_rejects_other_hosts() -> None:
    assert parse_github_remote("https://gitlab.com/acme/widgets.git") is None
