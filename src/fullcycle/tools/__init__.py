"""Tool integrations used by the pipeline: commands, git and the hosting platform."""

from .commands import CommandResult, CommandRunner, SubprocessRunner
from .github import GhCliGateway, PullRequestGateway
from .protected import is_protected, resolve_inside
from .vcs import GitCheckpoint, VersionControlDriver, parse_github_remote

__all__ = [
    "CommandResult",
    "CommandRunner",
    "GhCliGateway",
    "GitCheckpoint",
    "PullRequestGateway",
    "SubprocessRunner",
    "VersionControlDriver",
    "is_protected",
    "parse_github_remote",
    "resolve_inside",
]
