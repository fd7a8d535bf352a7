"""Bring a conflicting pull request branch up to date with its base."""

from __future__ import annotations

import logging
from typing import List

from ..schema import Mergeability, PipelineConfig
from ..state import ResolvingConflicts, RunContext
from ..tools.github import PullRequestGateway
from ..tools.vcs import VersionControlDriver

LOGGER = logging.getLogger(__name__)


class ConflictResolver:
    """Rebases the working branch onto the base when the platform reports conflicts.

    Conflicting paths keep the pipeline's own version when
    ``auto_resolve_conflicts`` is enabled; otherwise the rebase is aborted and
    :class:`~fullcycle.errors.MergeConflictError` propagates.
    """

    def __init__(self, gateway: PullRequestGateway, vcs: VersionControlDriver, config: PipelineConfig) -> None:
        self._gateway = gateway
        self._vcs = vcs
        self._config = config

    def needs_resolution(self, pr_number: int) -> bool:
        return self._gateway.get_mergeability(pr_number) == Mergeability.CONFLICTING

    def resolve(self, ctx: RunContext, pr_number: int, branch: str) -> List[str]:
        """Rebase when needed and return the paths that had to be resolved."""
        if not self.needs_resolution(pr_number):
            return []

        remote = self._config.remote
        base = self._config.base_branch
        ctx.transition(ResolvingConflicts())
        ctx.progress(f"#{pr_number} conflicts with {base}; rebasing onto {remote}/{base}")
        self._vcs.fetch(remote, base)
        outcome = self._vcs.rebase(f"{remote}/{base}", keep_own_changes=self._config.auto_resolve_conflicts)
        if outcome.conflicted_files:
            ctx.progress(f"   Kept our version of: {', '.join(outcome.conflicted_files)}")
        self._vcs.push(remote, branch, force=True)
        return outcome.conflicted_files


__all__ = ["ConflictResolver"]
