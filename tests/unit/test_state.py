from __future__ import annotations

import pytest

from fullcycle.errors import InvalidTransitionError
from fullcycle.schema import PipelineReport
from fullcycle.state import (
    Analyzing,
    Committing,
    Completed,
    CreatingBranch,
    Failed,
    FixingCIError,
    FixingReviewComments,
    MakingChanges,
    PipelineStage,
    Reviewing,
    RunContext,
    WaitingForCI,
    can_transition,
)


def test_run_starts_in_analyzing_or_failed() -> None:
    assert can_transition(None, PipelineStage.ANALYZING)
    assert can_transition(None, PipelineStage.FAILED)
    assert not can_transition(None, PipelineStage.MAKING_CHANGES)


def test_forward_progress_and_failure_are_always_allowed() -> None:
    assert can_transition(PipelineStage.ANALYZING, PipelineStage.MAKING_CHANGES)
    assert can_transition(PipelineStage.REVIEWING, PipelineStage.WAITING_FOR_CI)
    assert can_transition(PipelineStage.MERGING, PipelineStage.FAILED)
    assert not can_transition(PipelineStage.WAITING_FOR_CI, PipelineStage.REVIEWING)
    assert not can_transition(PipelineStage.COMMITTING, PipelineStage.CREATING_BRANCH)


def test_only_review_and_ci_loops_move_backwards() -> None:
    assert can_transition(PipelineStage.FIXING_REVIEW_COMMENTS, PipelineStage.REVIEWING)
    assert can_transition(PipelineStage.FIXING_CI_ERROR, PipelineStage.WAITING_FOR_CI)
    assert can_transition(PipelineStage.WAITING_FOR_CI, PipelineStage.WAITING_FOR_CI)
    assert not can_transition(PipelineStage.FIXING_CI_ERROR, PipelineStage.COMMITTING)


def test_terminal_states_never_transition() -> None:
    assert not can_transition(PipelineStage.COMPLETED, PipelineStage.FAILED)
    assert not can_transition(PipelineStage.FAILED, PipelineStage.ANALYZING)


def test_context_records_history_and_notifies_observer() -> None:
    seen = []
    ctx = RunContext(task_description="task", on_state_change=seen.append, clock=lambda: 5.0)

    ctx.transition(Analyzing())
    ctx.transition(MakingChanges())
    ctx.transition(CreatingBranch(branch_name="feature/ai-1-task"))
    ctx.transition(Committing(message="feat: task"))

    assert ctx.history == [
        PipelineStage.ANALYZING,
        PipelineStage.MAKING_CHANGES,
        PipelineStage.CREATING_BRANCH,
        PipelineStage.COMMITTING,
    ]
    assert [state.stage for state in seen] == ctx.history
    assert ctx.stage == PipelineStage.COMMITTING


def test_illegal_transition_raises_and_keeps_state() -> None:
    ctx = RunContext(task_description="task")
    ctx.transition(Analyzing())
    ctx.transition(WaitingForCI(pr_number=3))

    with pytest.raises(InvalidTransitionError, match="waiting_for_ci -> reviewing"):
        ctx.transition(Reviewing(iteration=1, max_iterations=3))

    assert ctx.stage == PipelineStage.WAITING_FOR_CI


def test_loops_alternate_between_fix_and_check_states() -> None:
    ctx = RunContext(task_description="task")
    ctx.transition(Analyzing())
    ctx.transition(Reviewing(iteration=1, max_iterations=3))
    ctx.transition(FixingReviewComments(iteration=1, comments_count=2))
    ctx.transition(Reviewing(iteration=2, max_iterations=3))
    ctx.transition(WaitingForCI(pr_number=3))
    ctx.transition(FixingCIError(error="boom", attempt=1))
    ctx.transition(WaitingForCI(pr_number=3))
    ctx.transition(Completed(report=PipelineReport(success=True)))

    with pytest.raises(InvalidTransitionError):
        ctx.transition(Failed(reason="late"))


def test_observer_failures_do_not_break_the_run() -> None:
    def explode(_):
        raise RuntimeError("observer bug")

    ctx = RunContext(task_description="task", on_state_change=explode, on_progress=explode)
    ctx.transition(Analyzing())
    ctx.progress("still running")

    assert ctx.stage == PipelineStage.ANALYZING


def test_elapsed_uses_the_injected_clock() -> None:
    ticks = iter([10.0, 12.5])
    ctx = RunContext(task_description="task", clock=lambda: next(ticks))
    assert ctx.elapsed == pytest.approx(2.5)
