"""Git driver for the pipeline.

Every git invocation goes through a :class:`CommandRunner`, so tests can run
against throwaway repositories or scripted fakes. Besides the
branch/commit/push basics the driver can snapshot the working tree and roll it
back, and rebase the working branch onto its base with an automatic
resolution strategy.
"""

from __future__ import annotations

import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..errors import GitError, MergeConflictError, PushError
from ..schema import RepoRef
from .commands import CommandResult, CommandRunner, SubprocessRunner

LOGGER = logging.getLogger(__name__)

_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]+([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")
_MAX_REBASE_STEPS = 50


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the working tree at a point in time.

    Rolling back restores tracked files to the recorded commit and removes
    only the untracked files that appeared after the checkpoint was taken.
    """

    label: str
    head: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float


@dataclass(slots=True)
class RebaseOutcome:
    """Result of rebasing the current branch onto another ref."""

    rebased: bool
    conflicted_files: List[str] = field(default_factory=list)
    output: str = ""


def parse_github_remote(url: str) -> Optional[RepoRef]:
    """Extract ``owner/name`` from an SSH or HTTPS GitHub remote URL."""
    match = _GITHUB_REMOTE_RE.search(url.strip())
    if not match:
        return None
    return RepoRef(owner=match.group(1), name=match.group(2))


class VersionControlDriver:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, runner: CommandRunner | None = None) -> None:
        self.root = Path(root).resolve()
        self._runner = runner or SubprocessRunner()

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> CommandResult:
        """Execute ``git`` with ``args`` relative to the repository root."""
        result = self._runner.run(["git", *args], self.root)
        if check and not result.ok:
            message = result.output.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def list_tracked_paths(self) -> List[str]:
        """Return every tracked path relative to the repository root."""
        result = self.git("ls-files", "-z")
        return sorted(entry for entry in result.output.split("\0") if entry.strip())

    def repository_ref(self, remote: str = "origin") -> RepoRef:
        """Return the GitHub owner/name behind ``remote``."""
        result = self.git("remote", "get-url", remote)
        ref = parse_github_remote(result.output)
        if ref is None:
            raise GitError(f"Remote {remote!r} is not a GitHub repository: {result.output.strip()}")
        return ref

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""
        result = self.git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if not result.ok:
            return None
        branch = result.output.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def create_branch(self, name: str) -> None:
        self.git("checkout", "-b", name)

    def checkout(self, ref: str) -> None:
        self.git("checkout", ref)

    def pull(self) -> None:
        self.git("pull", "--ff-only")

    def delete_branch(self, name: str) -> None:
        self.git("branch", "-D", name)

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, str]]:
        """Return porcelain status entries as ``(status, path)`` pairs."""
        result = self.git("status", "--porcelain", "--untracked-files=all")
        entries: List[tuple[str, str]] = []
        for line in result.output.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            entries.append((status.strip() or status, raw_path.strip().strip('"')))
        return entries

    def untracked_files(self) -> List[str]:
        return [path for status, path in self.status_entries() if status == "??"]

    def has_changes(self) -> bool:
        return bool(self.status_entries())

    # ------------------------------------------------------------- checkpoints
    def _current_head(self) -> str | None:
        result = self.git("rev-parse", "--verify", "HEAD", check=False)
        if not result.ok:
            return None
        return result.output.strip() or None

    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD`` and untracked files."""
        head = self._current_head()
        return GitCheckpoint(
            label=label or head or "working-tree",
            head=head,
            baseline_untracked=tuple(sorted(self.untracked_files())),
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore tracked paths and drop untracked files created since ``checkpoint``."""
        if checkpoint.head:
            self.git("reset", "--quiet", "HEAD", "--", ".", check=False)
            self.git("checkout", checkpoint.head, "--", ".")

        baseline = set(checkpoint.baseline_untracked)
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(Path(item).parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            else:
                target.unlink(missing_ok=True)

    # ------------------------------------------------------------- commits
    def stage(self, paths: Iterable[str]) -> None:
        """Stage ``paths``, including deletions."""
        unique = sorted({path for path in paths if path})
        if unique:
            self.git("add", "--all", "--", *unique)

    def commit(self, message: str) -> str | None:
        """Commit the index. Returns the new SHA or ``None`` when nothing was staged."""
        commit = self.git("commit", "-m", message, check=False)
        if not commit.ok:
            output = commit.output.strip()
            if "nothing to commit" in output.lower() or "no changes added" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        return self.git("rev-parse", "HEAD").output.strip()

    def commit_paths(self, paths: Sequence[str], message: str) -> str | None:
        """Stage only ``paths`` and commit them."""
        self.stage(paths)
        return self.commit(message)

    # -------------------------------------------------------------- remotes
    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
        force: bool = False,
    ) -> None:
        """Push ``branch`` to ``remote`` applying requested flags."""
        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force-with-lease")
        args.extend([remote, branch])
        result = self.git(*args, check=False)
        if not result.ok:
            raise PushError(f"git {' '.join(args)} failed: {result.output.strip() or 'unknown error'}")

    def fetch(self, remote: str, branch: str) -> None:
        self.git("fetch", remote, branch)

    # -------------------------------------------------------------- rebase
    def conflicted_files(self) -> List[str]:
        result = self.git("diff", "--name-only", "--diff-filter=U", check=False)
        return [line.strip() for line in result.output.splitlines() if line.strip()]

    def rebase(self, onto: str, *, keep_own_changes: bool) -> RebaseOutcome:
        """Rebase the current branch onto ``onto``.

        With ``keep_own_changes`` every conflicting path takes the version from
        the commit being replayed. During a rebase git calls that side
        ``--theirs``. Without it, or when a path cannot be resolved, the rebase
        is aborted and :class:`MergeConflictError` raised.
        """
        result = self.git("rebase", onto, check=False)
        if result.ok:
            return RebaseOutcome(rebased=True, output=result.output)

        resolved: List[str] = []
        for _ in range(_MAX_REBASE_STEPS):
            conflicts = self.conflicted_files()
            if not conflicts:
                if "CONFLICT" not in result.output and not self._rebase_in_progress():
                    raise GitError(f"git rebase {onto} failed: {result.output.strip()}")
                if not self._rebase_in_progress():
                    return RebaseOutcome(rebased=True, conflicted_files=resolved, output=result.output)
            if conflicts and not keep_own_changes:
                self.git("rebase", "--abort", check=False)
                raise MergeConflictError(f"Rebase onto {onto} conflicts in: {', '.join(conflicts)}")
            for path in conflicts:
                checkout = self.git("checkout", "--theirs", "--", path, check=False)
                if checkout.ok:
                    self.git("add", "--", path)
                else:
                    removal = self.git("rm", "--quiet", "--", path, check=False)
                    if not removal.ok:
                        self.git("rebase", "--abort", check=False)
                        raise MergeConflictError(f"Unable to resolve {path}: {checkout.output.strip()}")
                resolved.append(path)
            result = self.git("-c", "core.editor=true", "rebase", "--continue", check=False)
            if result.ok and not self._rebase_in_progress():
                return RebaseOutcome(rebased=True, conflicted_files=sorted(set(resolved)), output=result.output)
            if not result.ok and "nothing to commit" in result.output.lower():
                result = self.git("-c", "core.editor=true", "rebase", "--skip", check=False)
                if result.ok and not self._rebase_in_progress():
                    return RebaseOutcome(rebased=True, conflicted_files=sorted(set(resolved)), output=result.output)

        self.git("rebase", "--abort", check=False)
        raise MergeConflictError(f"Rebase onto {onto} did not converge after {_MAX_REBASE_STEPS} steps")

    def _rebase_in_progress(self) -> bool:
        git_dir = self.root / ".git"
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()


__all__ = ["GitCheckpoint", "RebaseOutcome", "VersionControlDriver", "parse_github_remote"]
