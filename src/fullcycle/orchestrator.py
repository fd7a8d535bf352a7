"""Pipeline orchestration: from a task description to a merged pull request."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from .context import ContextProvider, gather_context
from .errors import CIFailureError, MergeConflictError, NoChangesAppliedError, PipelineError
from .models.llm_client import LLMClient, LLMClientError
from .phases.applier import ChangeApplier
from .phases.base import PhaseLLM
from .phases.ci import CIWatcher
from .phases.conflicts import ConflictResolver
from .phases.planner import TaskPlanner
from .phases.review import LLMReviewService, ReviewService, SelfReviewLoop
from .phases.validator import LocalValidator
from .report import render_plan, render_pull_request_body, summary_lines, write_report_json
from .schema import ExecutionPlan, PipelineConfig, PipelineReport, PullRequestRef
from .state import (
    TERMINAL_STAGES,
    Analyzing,
    AwaitingConfirmation,
    Committing,
    Completed,
    CreatingBranch,
    CreatingPR,
    Failed,
    MakingChanges,
    Merging,
    PlanReady,
    Pushing,
    RunContext,
    StateSink,
)
from .tools.commands import CommandRunner, SubprocessRunner
from .tools.github import PullRequestGateway
from .tools.vcs import VersionControlDriver
from .utils.slug import branch_name as make_branch_name
from .utils.slug import commit_message

LOGGER = logging.getLogger(__name__)

CANCELLED_SUMMARY = "Cancelled by user"
DEFAULT_BRANCHES = ("main", "master")
PR_TITLE_CHARS = 72

ConfirmPlan = Callable[[ExecutionPlan], bool]

_RECOVERABLE_ERRORS = (CIFailureError, MergeConflictError)


def _auto_confirm(plan: ExecutionPlan) -> bool:
    return True


def _describe(error: BaseException) -> str:
    message = str(error).strip()
    if isinstance(error, (PipelineError, LLMClientError)):
        return message or type(error).__name__
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class PipelineOrchestrator:
    """Drives one fixed pipeline per :meth:`run` call.

    The orchestrator owns the run's state and report. Every collaborator that
    touches the outside world (model, git, hosting platform, review, context)
    is injected so tests can substitute fakes.
    """

    def __init__(
        self,
        client: LLMClient,
        vcs: VersionControlDriver,
        gateway: PullRequestGateway,
        config: PipelineConfig | None = None,
        *,
        review_service: Optional[ReviewService] = None,
        context_provider: Optional[ContextProvider] = None,
        runner: Optional[CommandRunner] = None,
        on_progress: Optional[Callable[[str], None]] = None,
        on_state_change: Optional[StateSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.vcs = vcs
        self.gateway = gateway
        self.config = config or PipelineConfig()
        self.review_service = review_service
        self.context_provider = context_provider
        self.runner = runner or SubprocessRunner()
        self.on_progress = on_progress
        self.on_state_change = on_state_change
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

    # ------------------------------------------------------------------ public
    def plan(self, task: str) -> ExecutionPlan:
        """Produce the execution plan only, without touching the working tree."""
        llm = PhaseLLM(self.client, self.config, sleep=self._sleep, progress=self.on_progress)
        context = gather_context(
            self.context_provider,
            task,
            top_k=self.config.context_top_k,
            min_similarity=self.config.context_min_similarity,
        )
        planner = TaskPlanner(llm, self.vcs.root, protected_patterns=self.config.protected_patterns)
        return planner.plan(task, context=context, tracked_paths=self.vcs.list_tracked_paths())

    def run(self, task: str, confirm_plan: Optional[ConfirmPlan] = None) -> PipelineReport:
        """Run the pipeline for ``task``. Never raises; failures are reported."""
        ctx = RunContext(
            task_description=task,
            on_progress=self.on_progress,
            on_state_change=self.on_state_change,
            clock=self._clock,
        )
        review_service = self.review_service
        try:
            llm = PhaseLLM(self.client, self.config, sleep=self._sleep, progress=ctx.progress)
            if review_service is None:
                review_service = LLMReviewService(llm, self.gateway)
            report = self._execute(ctx, llm, review_service, confirm_plan or _auto_confirm)
        except Exception as error:
            reason = _describe(error)
            LOGGER.debug("Pipeline failed", exc_info=True)
            report = self._fail(ctx, reason, recoverable=isinstance(error, _RECOVERABLE_ERRORS))
        finally:
            self._cleanup(review_service)

        self._finish(ctx, report)
        return report

    # --------------------------------------------------------------- pipeline
    def _execute(
        self,
        ctx: RunContext,
        llm: PhaseLLM,
        review_service: ReviewService,
        confirm_plan: ConfirmPlan,
    ) -> PipelineReport:
        config = self.config
        ctx.transition(Analyzing())
        ctx.progress("Analyzing task")
        ctx.context_text = gather_context(
            self.context_provider,
            ctx.task_description,
            top_k=config.context_top_k,
            min_similarity=config.context_min_similarity,
        )
        planner = TaskPlanner(llm, self.vcs.root, protected_patterns=config.protected_patterns)
        plan = planner.plan(
            ctx.task_description,
            context=ctx.context_text,
            tracked_paths=self.vcs.list_tracked_paths(),
        )
        ctx.plan = plan
        ctx.transition(PlanReady(plan=plan))
        for line in render_plan(plan):
            ctx.progress(line)

        ctx.transition(AwaitingConfirmation())
        if not confirm_plan(plan):
            return self._fail(ctx, CANCELLED_SUMMARY, recoverable=True)

        ctx.transition(MakingChanges())
        checkpoint = self.vcs.create_checkpoint("before-changes")
        applier = ChangeApplier(
            llm, self.vcs.root, protected_patterns=config.protected_patterns, progress=ctx.progress
        )
        validator = LocalValidator(self.runner, self.vcs, applier, config, progress=ctx.progress)
        try:
            outcome = applier.apply_plan(plan, context=ctx.context_text)
            validation = validator.validate(checkpoint, task=ctx.task_description)
        except Exception:
            self.vcs.restore_checkpoint(checkpoint)
            raise
        ctx.changed_files.extend(outcome.changes)
        for warning in validation.warnings:
            ctx.record_error(warning)

        branch = self._prepare_branch(ctx)

        message = commit_message(ctx.task_description)
        ctx.transition(Committing(message=message))
        paths: List[str] = list(dict.fromkeys(outcome.paths + validation.fixed_paths))
        if self.vcs.commit_paths(paths, message) is None:
            raise NoChangesAppliedError("No changes applied: nothing to commit")

        ctx.transition(Pushing(branch_name=branch))
        ctx.progress(f"Pushing {branch} to {config.remote}")
        self.vcs.push(config.remote, branch, set_upstream=True)

        ctx.transition(CreatingPR(branch=branch))
        pull_request = self._open_pull_request(ctx, plan, branch)
        ctx.pull_request = pull_request

        SelfReviewLoop(review_service, applier, self.vcs, config).run(ctx, plan, pull_request.number, branch)

        if config.require_ci_pass:
            watcher = CIWatcher(
                self.gateway, self.vcs, applier, validator, llm, config, sleep=self._sleep, clock=self._clock
            )
            watcher.run(ctx, pull_request.number, branch)
        else:
            ctx.progress("Skipping CI wait")

        if config.auto_merge:
            ConflictResolver(self.gateway, self.vcs, config).resolve(ctx, pull_request.number, branch)
            ctx.transition(Merging())
            ctx.progress(f"Merging #{pull_request.number} ({config.merge_strategy})")
            self.gateway.merge(pull_request.number, strategy=config.merge_strategy)
            self._return_to_base(ctx, branch)
            summary = f"Merged pull request #{pull_request.number}"
        else:
            summary = f"Pull request #{pull_request.number} is open and ready to merge"

        report = self._report(ctx, success=True, summary=summary)
        ctx.transition(Completed(report=report))
        return report

    def _prepare_branch(self, ctx: RunContext) -> str:
        current = self.vcs.current_branch()
        base = self.config.base_branch
        if current is not None and current != base and current not in DEFAULT_BRANCHES:
            ctx.branch_name = current
            ctx.transition(CreatingBranch(branch_name=current))
            ctx.progress(f"Reusing current branch {current}")
            return current
        branch = make_branch_name(
            ctx.task_description, prefix=self.config.branch_prefix, clock=self._wall_clock
        )
        ctx.transition(CreatingBranch(branch_name=branch))
        ctx.progress(f"Creating branch {branch}")
        self.vcs.create_branch(branch)
        ctx.branch_name = branch
        return branch

    def _open_pull_request(self, ctx: RunContext, plan: ExecutionPlan, branch: str) -> PullRequestRef:
        existing = self.gateway.find_open_pull_request(branch)
        if existing is not None:
            ctx.progress(f"Reusing open pull request #{existing.number}")
            return existing
        title = commit_message(ctx.task_description, max_summary=PR_TITLE_CHARS)
        created = self.gateway.create_pull_request(
            branch=branch,
            base=self.config.base_branch,
            title=title,
            body=render_pull_request_body(plan),
        )
        ctx.progress(f"Opened pull request #{created.number}: {created.url}")
        return created

    def _return_to_base(self, ctx: RunContext, branch: str) -> None:
        steps = (
            (self.vcs.checkout, (self.config.base_branch,)),
            (self.vcs.pull, ()),
            (self.vcs.delete_branch, (branch,)),
        )
        for step, args in steps:
            try:
                step(*args)
            except PipelineError as error:
                LOGGER.warning("Post-merge cleanup step %s failed: %s", step.__name__, error)
                return

    # ---------------------------------------------------------------- results
    def _report(self, ctx: RunContext, *, success: bool, summary: str) -> PipelineReport:
        pull_request = ctx.pull_request
        return PipelineReport(
            success=success,
            pr_number=pull_request.number if pull_request else None,
            pr_url=pull_request.url if pull_request else None,
            branch_name=ctx.branch_name,
            changed_files=list(ctx.changed_files),
            review_iterations=ctx.review_iterations,
            ci_runs=ctx.ci_runs,
            total_duration=ctx.elapsed,
            summary=summary,
            errors=list(ctx.errors),
        )

    def _fail(self, ctx: RunContext, reason: str, *, recoverable: bool = False) -> PipelineReport:
        if reason != CANCELLED_SUMMARY:
            ctx.record_error(reason)
        if ctx.stage not in TERMINAL_STAGES:
            ctx.transition(Failed(reason=reason, recoverable=recoverable))
        return self._report(ctx, success=False, summary=reason)

    def _cleanup(self, review_service: Optional[ReviewService]) -> None:
        """Close the gateway and review service; a failing close is logged, never raised."""
        for resource in (self.gateway, review_service):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception:
                LOGGER.exception("Failed to close %s", type(resource).__name__)

    def _finish(self, ctx: RunContext, report: PipelineReport) -> None:
        for line in summary_lines(report):
            ctx.progress(line)
        if not self.config.artifacts_dir:
            return
        try:
            path = write_report_json(report, self.config.artifacts_dir, task=ctx.task_description)
        except OSError as error:
            LOGGER.warning("Could not persist run report: %s", error)
            return
        LOGGER.info("Run report written to %s", path)


__all__ = ["CANCELLED_SUMMARY", "PipelineOrchestrator"]
