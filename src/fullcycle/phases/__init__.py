"""Pipeline phases, in the order the orchestrator runs them."""

from .applier import ApplyOutcome, ChangeApplier, is_truncated
from .base import PhaseLLM
from .ci import CIWatcher, FailureKind, classify_failure
from .conflicts import ConflictResolver
from .planner import TaskPlanner
from .review import LLMReviewService, ReviewConvergence, ReviewService, SelfReviewLoop
from .validator import LocalValidator, parse_diagnostics

__all__ = [
    "ApplyOutcome",
    "CIWatcher",
    "ChangeApplier",
    "ConflictResolver",
    "FailureKind",
    "LLMReviewService",
    "LocalValidator",
    "PhaseLLM",
    "ReviewConvergence",
    "ReviewService",
    "SelfReviewLoop",
    "TaskPlanner",
    "classify_failure",
    "is_truncated",
    "parse_diagnostics",
]
