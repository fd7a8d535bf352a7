"""Typed records exchanged between the pipeline stages."""

from __future__ import annotations

import shlex
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeType(str, Enum):
    """Kind of file-level change a plan entry asks for."""

    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"


class IssueSeverity(str, Enum):
    """Severity assigned to a review finding."""

    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    SUGGESTION = "SUGGESTION"
    NITPICK = "NITPICK"

    @property
    def blocking(self) -> bool:
        return self in (IssueSeverity.CRITICAL, IssueSeverity.WARNING)


class CIStatus(str, Enum):
    """Aggregated state of the remote checks attached to a pull request."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Mergeability(str, Enum):
    """Whether the hosting platform can merge the pull request as-is."""

    MERGEABLE = "MERGEABLE"
    CONFLICTING = "CONFLICTING"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class PlannedChange:
    """One file the plan intends to create, modify or delete."""

    file_path: str
    change_type: ChangeType
    description: str = ""


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    """Ordered set of intended file changes produced before any code is written."""

    task_description: str
    planned_changes: tuple[PlannedChange, ...] = ()
    estimated_files_count: int = 0
    summary: str = ""

    @property
    def only_deletes(self) -> bool:
        return bool(self.planned_changes) and all(
            change.change_type == ChangeType.DELETE for change in self.planned_changes
        )


@dataclass(frozen=True, slots=True)
class FileChange:
    """Result record for a file the applier actually touched."""

    path: str
    lines_added: int
    lines_removed: int
    is_new: bool = False


@dataclass(frozen=True, slots=True)
class ReviewIssue:
    """Single finding reported by the automated reviewer."""

    file: str
    severity: IssueSeverity
    message: str
    line: Optional[int] = None
    suggested_fix: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SelfReviewResult:
    """Outcome of one automated review pass over the pull request."""

    approved: bool
    issues: tuple[ReviewIssue, ...] = ()
    overall_assessment: str = ""

    @property
    def blocking_issues(self) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity.blocking]

    @property
    def critical_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == IssueSeverity.CRITICAL)


@dataclass(frozen=True, slots=True)
class CIResult:
    """Snapshot of remote CI for a pull request."""

    status: CIStatus
    check_name: Optional[str] = None
    logs: Optional[str] = None
    error_message: Optional[str] = None
    run_id: Optional[str] = None
    checks_reported: bool = True


@dataclass(frozen=True, slots=True)
class RepoRef:
    """Owner/name pair identifying a hosted repository."""

    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True, slots=True)
class PullRequestRef:
    """Number and web URL of an open pull request."""

    number: int
    url: str


@dataclass(slots=True)
class PipelineReport:
    """Final summary of one pipeline run."""

    success: bool
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    branch_name: Optional[str] = None
    changed_files: List[FileChange] = field(default_factory=list)
    review_iterations: int = 0
    ci_runs: int = 0
    total_duration: float = 0.0
    summary: str = ""
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_PROTECTED_PATTERNS: tuple[str, ...] = (
    ".env",
    ".env.*",
    "**/secrets/**",
    "**/credentials/**",
    "**/*.pem",
    "**/*.key",
)


class PipelineConfig(BaseModel):
    """Run-wide knobs, fixed once the run starts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_review_iterations: int = Field(default=10, ge=1)
    max_ci_retries: int = Field(default=5, ge=1)
    max_compilation_attempts: int = Field(default=3, ge=1)
    max_test_attempts: int = Field(default=2, ge=1)
    auto_merge: bool = True
    require_ci_pass: bool = True
    run_local_tests: bool = True
    protected_patterns: tuple[str, ...] = DEFAULT_PROTECTED_PATTERNS

    force_approve_stuck_reviews: bool = True
    auto_resolve_conflicts: bool = True

    remote: str = "origin"
    base_branch: str = "main"
    branch_prefix: str = "feature/ai-"
    merge_strategy: str = Field(default="squash", pattern="^(squash|merge|rebase)$")

    build_command: Optional[tuple[str, ...]] = None
    test_command: Optional[tuple[str, ...]] = None

    ci_poll_interval: float = Field(default=15.0, ge=0)
    ci_wait_timeout: float = Field(default=300.0, gt=0)

    rate_limit_delays: tuple[float, ...] = (30.0, 60.0)
    llm_temperature: float = Field(default=0.3, ge=0, le=2)
    llm_max_tokens: int = Field(default=4096, ge=1)
    model: Optional[str] = None

    context_top_k: int = Field(default=5, ge=1)
    context_min_similarity: float = Field(default=0.3, ge=0, le=1)

    artifacts_dir: Optional[str] = None

    @field_validator("build_command", "test_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            return tuple(shlex.split(stripped)) if stripped else None
        return value

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PipelineConfig":
        """Build the pipeline configuration from the YAML configuration mapping."""
        pipeline = dict(config.get("pipeline") or {})
        review = config.get("review") or {}
        git = config.get("git") or {}
        commands = config.get("commands") or {}
        ci = config.get("ci") or {}
        models = config.get("models") or {}
        context = config.get("context") or {}
        paths = config.get("paths") or {}

        sources: list[tuple[Mapping[str, Any], str, str]] = [
            (review, "force_approve_stuck", "force_approve_stuck_reviews"),
            (git, "remote", "remote"),
            (git, "base_branch", "base_branch"),
            (git, "branch_prefix", "branch_prefix"),
            (git, "merge_strategy", "merge_strategy"),
            (git, "auto_resolve_conflicts", "auto_resolve_conflicts"),
            (commands, "build", "build_command"),
            (commands, "test", "test_command"),
            (ci, "poll_interval", "ci_poll_interval"),
            (ci, "wait_timeout", "ci_wait_timeout"),
            (models, "default", "model"),
            (models, "temperature", "llm_temperature"),
            (models, "max_tokens", "llm_max_tokens"),
            (models, "rate_limit_delays", "rate_limit_delays"),
            (context, "top_k", "context_top_k"),
            (context, "min_similarity", "context_min_similarity"),
            (paths, "logs", "artifacts_dir"),
        ]
        for section, key, target in sources:
            value = section.get(key)
            if value is not None:
                pipeline[target] = value
        return cls(**pipeline)


__all__ = [
    "CIResult",
    "CIStatus",
    "ChangeType",
    "DEFAULT_PROTECTED_PATTERNS",
    "ExecutionPlan",
    "FileChange",
    "IssueSeverity",
    "Mergeability",
    "PipelineConfig",
    "PipelineReport",
    "PlannedChange",
    "PullRequestRef",
    "RepoRef",
    "ReviewIssue",
    "SelfReviewResult",
]
