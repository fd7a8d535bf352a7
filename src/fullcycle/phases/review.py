"""Automated self-review of the pull request with loop-convergence detection.

The loop asks a review service for findings, fixes the blocking ones
(CRITICAL and WARNING), and stops as soon as the review approves or the
findings stop changing. Three heuristics force approval when further rounds
are unlikely to help:

* stuck: the blocking findings overlap at least 80% with one of the last
  three rounds and none of them is CRITICAL;
* fatigue: three consecutive rounds reported no blocking findings;
* ceiling: from round five on, no CRITICAL finding remains.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..errors import PullRequestError, ReviewServiceError
from ..models.llm_client import LLMClientError
from ..prompts import SYSTEM_PROMPT_REVIEWER, render_review_prompt
from ..schema import ExecutionPlan, IssueSeverity, PipelineConfig, ReviewIssue, SelfReviewResult
from ..state import FixingReviewComments, NeedsUserInput, Reviewing, RunContext
from ..tools.github import PullRequestGateway
from ..tools.vcs import VersionControlDriver
from .applier import ChangeApplier
from .base import PhaseLLM

LOGGER = logging.getLogger(__name__)

SIGNATURE_MESSAGE_CHARS = 50
STUCK_OVERLAP = 0.8
FATIGUE_ROUNDS = 3
CEILING_ITERATION = 5


def issue_signature(issue: ReviewIssue) -> str:
    line = issue.line if issue.line is not None else ""
    return f"{issue.file}:{line}:{issue.message[:SIGNATURE_MESSAGE_CHARS]}"


def signature_set(issues: Iterable[ReviewIssue]) -> frozenset[str]:
    return frozenset(issue_signature(issue) for issue in issues)


def overlap(first: frozenset[str], second: frozenset[str]) -> float:
    """Share of common signatures relative to the larger of the two sets."""
    largest = max(len(first), len(second))
    if largest == 0:
        return 0.0
    return len(first & second) / largest


class ReviewConvergence:
    """Decides when repeated review rounds should be cut short."""

    def __init__(self, history: Optional[Deque[frozenset[str]]] = None) -> None:
        self.history: Deque[frozenset[str]] = history if history is not None else deque(maxlen=3)
        self.clean_streak = 0

    def is_stuck(self, signatures: frozenset[str]) -> bool:
        return any(overlap(signatures, previous) >= STUCK_OVERLAP for previous in self.history)

    @property
    def fatigued(self) -> bool:
        return self.clean_streak >= FATIGUE_ROUNDS

    def observe(self, iteration: int, result: SelfReviewResult) -> Optional[str]:
        """Record one round and return the force-approve reason, if any applies.

        :class:`SelfReviewLoop` approves a round without blocking findings
        before consulting the tracker, so inside the loop that immediate
        approval already covers the fatigue rule.
        """
        blocking = result.blocking_issues
        signatures = signature_set(blocking)
        critical = result.critical_count
        self.clean_streak = 0 if blocking else self.clean_streak + 1

        reason: Optional[str] = None
        if blocking and critical == 0 and self.is_stuck(signatures):
            reason = "the same findings keep coming back"
        elif self.fatigued:
            reason = f"no blocking findings for {FATIGUE_ROUNDS} consecutive rounds"
        elif iteration >= CEILING_ITERATION and critical == 0:
            reason = f"round {iteration} reached with no critical findings"
        self.history.append(signatures)
        return reason


class ReviewService:
    """Produces review results for a pull request. Subclasses implement :meth:`review`."""

    def review(self, pr_number: int, *, task: str) -> SelfReviewResult:
        raise NotImplementedError("Subclasses must implement review().")

    def close(self) -> None:
        """Release held resources."""


class ReviewIssuePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file: str = Field(default="", validation_alias=AliasChoices("file", "path", "file_path", "filePath"))
    line: Optional[int] = None
    severity: IssueSeverity = IssueSeverity.SUGGESTION
    message: str = Field(default="", validation_alias=AliasChoices("message", "description", "comment"))
    suggested_fix: Optional[str] = Field(default=None, validation_alias=AliasChoices("suggested_fix", "suggestedFix"))

    @field_validator("severity", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        label = value.strip().upper()
        return label if label in IssueSeverity.__members__ else IssueSeverity.SUGGESTION.value

    @field_validator("line", mode="before")
    @classmethod
    def _line(cls, value: object) -> object:
        if isinstance(value, str):
            return int(value) if value.strip().isdigit() else None
        return value


class ReviewPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    approved: bool = False
    overall_assessment: str = Field(
        default="", validation_alias=AliasChoices("overall_assessment", "overallAssessment", "summary")
    )
    issues: List[ReviewIssuePayload] = Field(default_factory=list)

    def to_result(self) -> SelfReviewResult:
        issues = tuple(
            ReviewIssue(
                file=item.file,
                severity=item.severity,
                message=item.message,
                line=item.line,
                suggested_fix=item.suggested_fix,
            )
            for item in self.issues
            if item.message.strip()
        )
        return SelfReviewResult(approved=self.approved, issues=issues, overall_assessment=self.overall_assessment)


def render_review_comment(result: SelfReviewResult, iteration: int) -> str:
    lines = [f"### Automated review (round {iteration})", "", result.overall_assessment or "(no summary)"]
    if result.issues:
        lines.append("")
        for issue in result.issues:
            location = f"{issue.file}:{issue.line}" if issue.line else issue.file
            lines.append(f"- **{issue.severity.value}** `{location}`: {issue.message}")
    return "\n".join(lines)


class LLMReviewService(ReviewService):
    """Reviews the pull request diff with the language model and comments the outcome."""

    def __init__(self, llm: PhaseLLM, gateway: PullRequestGateway, *, post_comments: bool = True) -> None:
        self._llm = llm
        self._gateway = gateway
        self._post_comments = post_comments
        self._rounds = 0

    def review(self, pr_number: int, *, task: str) -> SelfReviewResult:
        self._rounds += 1
        try:
            diff = self._gateway.diff(pr_number)
        except PullRequestError as error:
            raise ReviewServiceError(f"Could not read the diff of #{pr_number}: {error}") from error
        if not diff.strip():
            return SelfReviewResult(approved=True, overall_assessment="Empty diff")
        try:
            payload = self._llm.structured(
                render_review_prompt(task, diff), ReviewPayload, system_prompt=SYSTEM_PROMPT_REVIEWER, phase="review"
            )
        except LLMClientError as error:
            raise ReviewServiceError(f"Review model failed: {error}") from error
        result = payload.to_result()
        if self._post_comments:
            try:
                self._gateway.comment(pr_number, render_review_comment(result, self._rounds))
            except PullRequestError as error:
                LOGGER.warning("Could not post review comment on #%s: %s", pr_number, error)
        return result


@dataclass(slots=True)
class ReviewOutcome:
    approved: bool
    forced: bool = False
    reason: str = ""
    iterations: int = 0


class SelfReviewLoop:
    """Runs review rounds until approval, convergence or the iteration budget."""

    def __init__(
        self,
        service: ReviewService,
        applier: ChangeApplier,
        vcs: VersionControlDriver,
        config: PipelineConfig,
    ) -> None:
        self._service = service
        self._applier = applier
        self._vcs = vcs
        self._config = config

    def run(self, ctx: RunContext, plan: ExecutionPlan, pr_number: int, branch: str) -> ReviewOutcome:
        if plan.only_deletes:
            ctx.progress("Skipping review: the change only deletes files")
            return ReviewOutcome(approved=True, reason="deletions only")

        limit = self._config.max_review_iterations
        tracker = ReviewConvergence(ctx.review_signatures)
        for iteration in range(1, limit + 1):
            ctx.review_iterations = iteration
            ctx.transition(Reviewing(iteration=iteration, max_iterations=limit))
            ctx.progress(f"Review round {iteration}/{limit}")
            try:
                result = self._service.review(pr_number, task=plan.task_description)
            except ReviewServiceError as error:
                ctx.record_error(f"Review unavailable, approving: {error}")
                return ReviewOutcome(approved=True, forced=True, reason="review unavailable", iterations=iteration)

            blocking = result.blocking_issues
            if result.approved or not blocking:
                ctx.progress(f"   Review approved ({len(result.issues)} non-blocking finding(s))")
                return ReviewOutcome(approved=True, iterations=iteration)

            reason = tracker.observe(iteration, result)
            if reason and self._config.force_approve_stuck_reviews:
                ctx.progress(f"   Force-approving review: {reason}")
                return ReviewOutcome(approved=True, forced=True, reason=reason, iterations=iteration)

            ctx.transition(FixingReviewComments(iteration=iteration, comments_count=len(blocking)))
            self._fix(ctx, plan.task_description, blocking, iteration, branch)

        question = f"Review did not converge after {limit} rounds. Merge anyway?"
        ctx.transition(NeedsUserInput(question=question, options=("continue to CI", "abort")))
        ctx.record_error(f"Review not approved after {limit} rounds; continuing to CI")
        return ReviewOutcome(approved=False, reason="iterations exhausted", iterations=limit)

    def _fix(self, ctx: RunContext, task: str, issues: List[ReviewIssue], iteration: int, branch: str) -> None:
        by_file: Dict[str, List[str]] = {}
        for issue in issues:
            text = f"[{issue.severity.value}] " + (f"line {issue.line}: " if issue.line else "") + issue.message
            if issue.suggested_fix:
                text += f" (suggested fix: {issue.suggested_fix})"
            by_file.setdefault(issue.file, []).append(text)

        fixed: List[str] = []
        for path, problems in by_file.items():
            ctx.progress(f"   Fixing {len(problems)} finding(s) in {path}")
            change = self._applier.fix_file(path, problems, task=task)
            if change is not None:
                fixed.append(change.path)
        if not fixed:
            ctx.progress("   No review fixes could be applied this round")
            return
        sha = self._vcs.commit_paths(fixed, f"fix: address review comments (round {iteration})")
        if sha is not None:
            self._vcs.push(self._config.remote, branch)


__all__ = [
    "LLMReviewService",
    "ReviewConvergence",
    "ReviewOutcome",
    "ReviewService",
    "SelfReviewLoop",
    "issue_signature",
    "overlap",
    "signature_set",
]
