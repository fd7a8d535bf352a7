"""Matching of repository paths against protected-file patterns."""

from __future__ import annotations

import re
from fnmatch import fnmatchcase
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Iterable

REGEX_PREFIX = "re:"


def normalise_repo_path(path: str) -> str:
    """Return ``path`` as a forward-slash path without leading ``./``."""
    text = path.strip().replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text


@lru_cache(maxsize=None)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def is_protected(path: str, patterns: Iterable[str]) -> bool:
    """Return ``True`` when ``path`` matches any protected pattern.

    Patterns are globs by default; ``**/`` prefixes also match at the root and
    patterns without a slash are tried against the file name alone. A
    ``re:`` prefix switches the pattern to a regular expression searched in
    the full path.
    """
    posix = normalise_repo_path(path)
    if not posix:
        return False
    name = PurePosixPath(posix).name
    for pattern in patterns:
        if pattern.startswith(REGEX_PREFIX):
            if _compile(pattern[len(REGEX_PREFIX) :]).search(posix):
                return True
            continue
        candidates = [pattern]
        if pattern.startswith("**/"):
            candidates.append(pattern[3:])
        for candidate in candidates:
            if fnmatchcase(posix, candidate):
                return True
            if "/" not in candidate and fnmatchcase(name, candidate):
                return True
    return False


def resolve_inside(root: Path, path: str) -> Path | None:
    """Resolve ``path`` under ``root``; ``None`` when it escapes the repository."""
    relative = normalise_repo_path(path)
    if not relative or relative.startswith("/"):
        return None
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        return None
    parts = PurePosixPath(relative).parts
    if parts and parts[0] == ".git":
        return None
    return candidate


__all__ = ["is_protected", "normalise_repo_path", "resolve_inside"]
