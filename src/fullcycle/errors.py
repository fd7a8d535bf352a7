"""Exception hierarchy raised by the pipeline stages."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base error for every failure the orchestrator knows how to report."""


class PlanningError(PipelineError):
    """Raised when the planner cannot turn a model response into a plan."""


class NoChangesAppliedError(PipelineError):
    """Raised when a plan finished without producing a single file change."""


class CompilationError(PipelineError):
    """Raised when the local build still fails after the fix budget is spent."""


class TestFailure(PipelineError):
    """Raised when local tests still fail after the fix budget is spent."""

    __test__ = False


class GitError(PipelineError):
    """Raised when a git command fails or the repository cannot be used."""


class PushError(GitError):
    """Raised when pushing the working branch to the remote fails."""


class PullRequestError(PipelineError):
    """Raised when the hosting platform rejects a pull request operation."""


class ReviewServiceError(PipelineError):
    """Raised when the automated review could not be produced."""


class CIFailureError(PipelineError):
    """Raised when remote CI keeps failing after the retry budget is spent."""


class MergeConflictError(PipelineError):
    """Raised when a rebase onto the base branch cannot be resolved."""


class InvalidTransitionError(PipelineError):
    """Raised when the orchestrator attempts an illegal state transition."""


__all__ = [
    "CIFailureError",
    "CompilationError",
    "GitError",
    "InvalidTransitionError",
    "MergeConflictError",
    "NoChangesAppliedError",
    "PipelineError",
    "PlanningError",
    "PullRequestError",
    "PushError",
    "ReviewServiceError",
    "TestFailure",
]
