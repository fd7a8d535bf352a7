from __future__ import annotations

import json
from pathlib import Path

import pytest

from fakes import FakeGateway, RecordingVCS, ScriptedLLM, ScriptedReviewService
from fullcycle.errors import ReviewServiceError
from fullcycle.models import LLMTransportError
from fullcycle.phases.applier import ChangeApplier
from fullcycle.phases.base import PhaseLLM
from fullcycle.phases.review import (
    LLMReviewService,
    ReviewConvergence,
    SelfReviewLoop,
    issue_signature,
    overlap,
    signature_set,
)
from fullcycle.schema import (
    DEFAULT_PROTECTED_PATTERNS,
    ChangeType,
    ExecutionPlan,
    IssueSeverity,
    PipelineConfig,
    PlannedChange,
    ReviewIssue,
    SelfReviewResult,
)
from fullcycle.state import Analyzing, CreatingPR, PipelineStage, RunContext

WARN_A = ReviewIssue("src/a.py", IssueSeverity.WARNING, "Unchecked None return", line=3)
WARN_B = ReviewIssue("src/a.py", IssueSeverity.WARNING, "Missing input validation", line=9)
CRIT = ReviewIssue("src/a.py", IssueSeverity.CRITICAL, "Division by zero", line=4)
NIT = ReviewIssue("src/a.py", IssueSeverity.NITPICK, "Trailing whitespace", line=1)


def _rejected(*issues: ReviewIssue) -> SelfReviewResult:
    return SelfReviewResult(approved=False, issues=issues, overall_assessment="needs work")


def _plan(change_type: ChangeType = ChangeType.MODIFY) -> ExecutionPlan:
    return ExecutionPlan(
        task_description="Harden src/a.py",
        planned_changes=(PlannedChange("src/a.py", change_type),),
        estimated_files_count=1,
    )


def _context() -> RunContext:
    ctx = RunContext(task_description="Harden src/a.py")
    ctx.transition(Analyzing())
    ctx.transition(CreatingPR(branch="feature/ai-1-harden"))
    return ctx


def _loop(tmp_path: Path, service, fixes, **config) -> tuple[SelfReviewLoop, RecordingVCS, ScriptedLLM]:
    source = tmp_path / "src" / "a.py"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_text("def ratio(a, b):\n    return a / b\n", encoding="utf-8")
    settings = PipelineConfig(**config)
    client = ScriptedLLM(fixes)
    vcs = RecordingVCS(tmp_path)
    applier = ChangeApplier(PhaseLLM(client, settings), tmp_path, protected_patterns=DEFAULT_PROTECTED_PATTERNS)
    return SelfReviewLoop(service, applier, vcs, settings), vcs, client


def test_signature_uses_first_fifty_message_chars() -> None:
    issue = ReviewIssue("x.py", IssueSeverity.WARNING, "m" * 80, line=7)
    assert issue_signature(issue) == "x.py:7:" + "m" * 50
    assert issue_signature(ReviewIssue("x.py", IssueSeverity.WARNING, "short")) == "x.py::short"


def test_overlap_is_relative_to_larger_set() -> None:
    first = frozenset({"a", "b", "c", "d", "e"})
    assert overlap(first, frozenset({"a", "b", "c", "d"})) == 0.8
    assert overlap(first, frozenset({"a"})) == 0.2
    assert overlap(frozenset(), frozenset()) == 0.0


def test_tracker_detects_fatigue_and_ceiling() -> None:
    tracker = ReviewConvergence()
    clean = SelfReviewResult(approved=False, issues=(NIT,))
    assert tracker.observe(1, clean) is None
    assert tracker.observe(2, clean) is None
    assert "3 consecutive rounds" in (tracker.observe(3, clean) or "")

    ceiling = ReviewConvergence()
    assert ceiling.observe(4, _rejected(WARN_A)) is None
    assert "round 5" in (ceiling.observe(5, _rejected(WARN_B)) or "")
    assert ceiling.observe(6, _rejected(CRIT)) is None


def test_tracker_never_forces_approval_with_critical_findings() -> None:
    tracker = ReviewConvergence()
    tracker.observe(1, _rejected(CRIT, WARN_A))
    assert tracker.observe(2, _rejected(CRIT, WARN_A)) is None
    assert len(tracker.history) == 2


def test_repeated_warnings_are_force_approved_after_one_fix_round(tmp_path: Path) -> None:
    service = ScriptedReviewService([_rejected(WARN_A, WARN_B), _rejected(WARN_A, WARN_B)])
    fixed = "def ratio(a, b):\n    if b == 0:\n        return None\n    return a / b\n"
    loop, vcs, client = _loop(tmp_path, service, [fixed])
    ctx = _context()

    outcome = loop.run(ctx, _plan(), pr_number=7, branch="feature/ai-1-harden")

    assert outcome.approved and outcome.forced
    assert outcome.iterations == 2
    assert service.calls == 2
    assert client.phases == ["fix"]
    assert vcs.commits == [(("src/a.py",), "fix: address review comments (round 1)")]
    assert vcs.pushes == [("origin", "feature/ai-1-harden", False, False)]
    assert ctx.review_iterations == 2
    assert ctx.history[-3:] == [
        PipelineStage.REVIEWING,
        PipelineStage.FIXING_REVIEW_COMMENTS,
        PipelineStage.REVIEWING,
    ]


def test_stuck_reviews_keep_fixing_when_force_approval_is_disabled(tmp_path: Path) -> None:
    service = ScriptedReviewService([_rejected(WARN_A, WARN_B)])
    responses = [f"def ratio(a, b):\n    return a / b  # v{n}\n" for n in range(6)]
    loop, _, _ = _loop(tmp_path, service, responses, force_approve_stuck_reviews=False, max_review_iterations=3)
    ctx = _context()

    outcome = loop.run(ctx, _plan(), pr_number=7, branch="b")

    assert not outcome.approved
    assert outcome.reason == "iterations exhausted"
    assert service.calls == 3
    assert ctx.stage == PipelineStage.NEEDS_USER_INPUT
    assert ctx.errors == ["Review not approved after 3 rounds; continuing to CI"]


def test_non_blocking_findings_approve_immediately(tmp_path: Path) -> None:
    service = ScriptedReviewService([SelfReviewResult(approved=False, issues=(NIT,))])
    loop, vcs, client = _loop(tmp_path, service, [])

    outcome = loop.run(_context(), _plan(), pr_number=7, branch="b")

    assert outcome.approved and not outcome.forced
    assert outcome.iterations == 1
    assert vcs.commits == [] and client.payloads == []


def test_clean_round_after_fixes_approves_without_forcing(tmp_path: Path) -> None:
    service = ScriptedReviewService([_rejected(CRIT), SelfReviewResult(approved=True)])
    fixed = "def ratio(a, b):\n    return a / b if b else 0\n"
    loop, vcs, _ = _loop(tmp_path, service, [fixed])
    ctx = _context()

    outcome = loop.run(ctx, _plan(), pr_number=7, branch="b")

    assert outcome.approved and not outcome.forced
    assert outcome.iterations == 2
    assert len(vcs.commits) == 1
    assert list(ctx.review_signatures) == [signature_set([CRIT])]


def test_blank_fix_reply_counts_as_a_failed_round(tmp_path: Path) -> None:
    service = ScriptedReviewService([_rejected(CRIT), SelfReviewResult(approved=True)])
    loop, vcs, client = _loop(tmp_path, service, ["   "])
    ctx = _context()

    outcome = loop.run(ctx, _plan(), pr_number=7, branch="b")

    assert outcome.approved and outcome.iterations == 2
    assert client.phases == ["fix"]
    assert vcs.commits == [] and vcs.pushes == []
    assert "return a / b" in (tmp_path / "src" / "a.py").read_text(encoding="utf-8")


def test_review_service_failure_fails_open(tmp_path: Path) -> None:
    service = ScriptedReviewService([ReviewServiceError("model down")])
    loop, _, _ = _loop(tmp_path, service, [])
    ctx = _context()

    outcome = loop.run(ctx, _plan(), pr_number=7, branch="b")

    assert outcome.approved and outcome.forced
    assert ctx.errors and "model down" in ctx.errors[0]


def test_delete_only_plans_skip_review(tmp_path: Path) -> None:
    service = ScriptedReviewService([_rejected(CRIT)])
    loop, _, _ = _loop(tmp_path, service, [])

    outcome = loop.run(_context(), _plan(ChangeType.DELETE), pr_number=7, branch="b")

    assert outcome.approved
    assert service.calls == 0


def _review_llm(responses) -> tuple[PhaseLLM, ScriptedLLM]:
    client = ScriptedLLM(responses)
    return PhaseLLM(client, PipelineConfig()), client


def test_llm_review_service_parses_findings_and_comments() -> None:
    body = {
        "approved": False,
        "overallAssessment": "One real problem",
        "issues": [
            {"path": "src/a.py", "line": "4", "severity": "critical", "message": "Division by zero"},
            {"file": "src/a.py", "severity": "blocker", "description": "Odd naming"},
            {"file": "src/a.py", "severity": "NITPICK", "message": ""},
        ],
    }
    llm, client = _review_llm([json.dumps(body)])
    gateway = FakeGateway()

    result = LLMReviewService(llm, gateway).review(7, task="Harden src/a.py")

    assert [(i.severity, i.line) for i in result.issues] == [
        (IssueSeverity.CRITICAL, 4),
        (IssueSeverity.SUGGESTION, None),
    ]
    assert result.overall_assessment == "One real problem"
    assert gateway.comments[0][0] == 7
    assert "**CRITICAL** `src/a.py:4`" in gateway.comments[0][1]
    assert "diff --git" in client.prompt(0)


def test_llm_review_service_approves_empty_diff_and_wraps_model_errors() -> None:
    llm, client = _review_llm([LLMTransportError("offline")])
    empty = LLMReviewService(llm, FakeGateway(diff_text="  "))
    assert empty.review(7, task="t").approved
    assert client.payloads == []

    failing = LLMReviewService(llm, FakeGateway(), post_comments=False)
    with pytest.raises(ReviewServiceError, match="offline"):
        failing.review(7, task="t")


def test_signature_set_ignores_severity() -> None:
    relabelled = ReviewIssue(WARN_A.file, IssueSeverity.CRITICAL, WARN_A.message, line=WARN_A.line)
    assert signature_set([WARN_A]) == signature_set([relabelled])
