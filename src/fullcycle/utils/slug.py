"""Utilities for generating branch names, commit messages and other slugs."""

from __future__ import annotations

import re
import time
from typing import Callable, Pattern

_LOWERCASE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)

MAX_BRANCH_WORD_LENGTH = 15
MAX_BRANCH_WORDS_CHARS = 30

# First match wins; anything unmatched is a feature.
_COMMIT_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("fix", ("fix", "bug", "repair", "broken", "error")),
    ("feat", ("add", "implement", "introduce", "support")),
    ("refactor", ("refactor", "restructure", "clean up", "cleanup", "rename")),
    ("docs", ("doc", "readme", "changelog")),
)


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase, git-ref-friendly slug."""
    source = (value or "").strip().lower()
    slug = _HYPHEN_COLLAPSE.sub("-", _LOWERCASE_PATTERN.sub("-", source)).strip("-.")
    if not slug:
        slug = fallback
    return slug[:max_length].rstrip("-.") or fallback


def branch_name(task: str, *, prefix: str = "feature/ai-", clock: Callable[[], float] = time.time) -> str:
    """Return ``<prefix><epoch>-<up to three short words of task>``."""
    words = [
        word
        for word in _WORD_RE.findall(task.lower())
        if len(word) <= MAX_BRANCH_WORD_LENGTH
    ][:3]
    suffix = slugify("-".join(words), fallback="task", max_length=MAX_BRANCH_WORDS_CHARS)
    return f"{prefix}{int(clock())}-{suffix}"


def commit_type(task: str) -> str:
    lowered = task.lower()
    for kind, needles in _COMMIT_TYPES:
        if any(needle in lowered for needle in needles):
            return kind
    return "feat"


def commit_message(task: str, *, max_summary: int = 50) -> str:
    """Conventional commit subject built from the task description."""
    summary = " ".join(task.split())[:max_summary].strip()
    return f"{commit_type(task)}: {summary}"


__all__ = ["branch_name", "commit_message", "commit_type", "slugify"]
