"""Pipeline states, the legal transitions between them and the per-run context."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Deque, List, Optional, Union

from .errors import InvalidTransitionError
from .schema import ExecutionPlan, FileChange, PipelineReport, PullRequestRef

LOGGER = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Discriminator shared by every state variant, in pipeline order."""

    ANALYZING = "analyzing"
    PLAN_READY = "plan_ready"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MAKING_CHANGES = "making_changes"
    CREATING_BRANCH = "creating_branch"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PR = "creating_pr"
    REVIEWING = "reviewing"
    FIXING_REVIEW_COMMENTS = "fixing_review_comments"
    NEEDS_USER_INPUT = "needs_user_input"
    WAITING_FOR_CI = "waiting_for_ci"
    FIXING_CI_ERROR = "fixing_ci_error"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)

TERMINAL_STAGES = frozenset({PipelineStage.COMPLETED, PipelineStage.FAILED})

# The only backward edges: the review loop and the CI fix loop.
CYCLE_EDGES = frozenset(
    {
        (PipelineStage.REVIEWING, PipelineStage.REVIEWING),
        (PipelineStage.FIXING_REVIEW_COMMENTS, PipelineStage.REVIEWING),
        (PipelineStage.WAITING_FOR_CI, PipelineStage.WAITING_FOR_CI),
        (PipelineStage.FIXING_CI_ERROR, PipelineStage.WAITING_FOR_CI),
    }
)


@dataclass(frozen=True, slots=True)
class Analyzing:
    stage: ClassVar[PipelineStage] = PipelineStage.ANALYZING


@dataclass(frozen=True, slots=True)
class PlanReady:
    plan: ExecutionPlan
    stage: ClassVar[PipelineStage] = PipelineStage.PLAN_READY


@dataclass(frozen=True, slots=True)
class AwaitingConfirmation:
    stage: ClassVar[PipelineStage] = PipelineStage.AWAITING_CONFIRMATION


@dataclass(frozen=True, slots=True)
class MakingChanges:
    stage: ClassVar[PipelineStage] = PipelineStage.MAKING_CHANGES


@dataclass(frozen=True, slots=True)
class CreatingBranch:
    branch_name: str
    stage: ClassVar[PipelineStage] = PipelineStage.CREATING_BRANCH


@dataclass(frozen=True, slots=True)
class Committing:
    message: str
    stage: ClassVar[PipelineStage] = PipelineStage.COMMITTING


@dataclass(frozen=True, slots=True)
class Pushing:
    branch_name: str
    stage: ClassVar[PipelineStage] = PipelineStage.PUSHING


@dataclass(frozen=True, slots=True)
class CreatingPR:
    branch: str
    stage: ClassVar[PipelineStage] = PipelineStage.CREATING_PR


@dataclass(frozen=True, slots=True)
class Reviewing:
    iteration: int
    max_iterations: int
    stage: ClassVar[PipelineStage] = PipelineStage.REVIEWING


@dataclass(frozen=True, slots=True)
class FixingReviewComments:
    iteration: int
    comments_count: int
    stage: ClassVar[PipelineStage] = PipelineStage.FIXING_REVIEW_COMMENTS


@dataclass(frozen=True, slots=True)
class NeedsUserInput:
    question: str
    options: tuple[str, ...] = ()
    stage: ClassVar[PipelineStage] = PipelineStage.NEEDS_USER_INPUT


@dataclass(frozen=True, slots=True)
class WaitingForCI:
    pr_number: int
    stage: ClassVar[PipelineStage] = PipelineStage.WAITING_FOR_CI


@dataclass(frozen=True, slots=True)
class FixingCIError:
    error: str
    attempt: int
    stage: ClassVar[PipelineStage] = PipelineStage.FIXING_CI_ERROR


@dataclass(frozen=True, slots=True)
class ResolvingConflicts:
    conflict_files: tuple[str, ...] = ()
    stage: ClassVar[PipelineStage] = PipelineStage.RESOLVING_CONFLICTS


@dataclass(frozen=True, slots=True)
class Merging:
    stage: ClassVar[PipelineStage] = PipelineStage.MERGING


@dataclass(frozen=True, slots=True)
class Completed:
    report: PipelineReport
    stage: ClassVar[PipelineStage] = PipelineStage.COMPLETED


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    recoverable: bool = False
    stage: ClassVar[PipelineStage] = PipelineStage.FAILED


PipelineState = Union[
    Analyzing,
    PlanReady,
    AwaitingConfirmation,
    MakingChanges,
    CreatingBranch,
    Committing,
    Pushing,
    CreatingPR,
    Reviewing,
    FixingReviewComments,
    NeedsUserInput,
    WaitingForCI,
    FixingCIError,
    ResolvingConflicts,
    Merging,
    Completed,
    Failed,
]


def can_transition(current: Optional[PipelineStage], target: PipelineStage) -> bool:
    """Return ``True`` when moving from ``current`` to ``target`` is legal."""
    if current is None:
        return target in (PipelineStage.ANALYZING, PipelineStage.FAILED)
    if current in TERMINAL_STAGES:
        return False
    if target == PipelineStage.FAILED:
        return True
    if (current, target) in CYCLE_EDGES:
        return True
    return STAGE_ORDER.index(target) > STAGE_ORDER.index(current)


ProgressSink = Callable[[str], None]
StateSink = Callable[[PipelineState], None]


@dataclass(slots=True)
class RunContext:
    """Mutable bookkeeping for exactly one pipeline run."""

    task_description: str
    on_progress: Optional[ProgressSink] = None
    on_state_change: Optional[StateSink] = None
    clock: Callable[[], float] = time.monotonic
    started_at: float = 0.0
    state: Optional[PipelineState] = None
    history: List[PipelineStage] = field(default_factory=list)
    plan: Optional[ExecutionPlan] = None
    context_text: str = ""
    changed_files: List[FileChange] = field(default_factory=list)
    branch_name: Optional[str] = None
    pull_request: Optional[PullRequestRef] = None
    review_iterations: int = 0
    ci_runs: int = 0
    review_signatures: Deque[frozenset[str]] = field(default_factory=lambda: deque(maxlen=3))
    errors: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = self.clock()

    @property
    def stage(self) -> Optional[PipelineStage]:
        return self.state.stage if self.state is not None else None

    @property
    def elapsed(self) -> float:
        return max(self.clock() - self.started_at, 0.0)

    def transition(self, state: PipelineState) -> None:
        """Make ``state`` current, rejecting transitions the pipeline never takes.

        Errors raised by the state observer are logged and do not propagate.
        """
        if not can_transition(self.stage, state.stage):
            current = self.stage.value if self.stage else "<start>"
            raise InvalidTransitionError(f"Illegal transition {current} -> {state.stage.value}")
        self.state = state
        self.history.append(state.stage)
        LOGGER.debug("Pipeline state -> %s", state)
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception:
                LOGGER.exception("State observer raised")

    def progress(self, message: str) -> None:
        """Log ``message`` and forward it to the progress observer, which may not fail the run."""
        LOGGER.info(message.strip())
        if self.on_progress is not None:
            try:
                self.on_progress(message)
            except Exception:
                LOGGER.exception("Progress observer raised")

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        LOGGER.warning(message)


__all__ = [
    "Analyzing",
    "AwaitingConfirmation",
    "Committing",
    "Completed",
    "CreatingBranch",
    "CreatingPR",
    "Failed",
    "FixingCIError",
    "FixingReviewComments",
    "MakingChanges",
    "Merging",
    "NeedsUserInput",
    "PipelineStage",
    "PipelineState",
    "PlanReady",
    "Pushing",
    "ResolvingConflicts",
    "Reviewing",
    "RunContext",
    "STAGE_ORDER",
    "WaitingForCI",
    "can_transition",
]
