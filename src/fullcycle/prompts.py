"""Prompt templates shared across the pipeline phases."""

from __future__ import annotations

from typing import Iterable, Sequence

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

CODE_RESPONSE_INSTRUCTION = (
    "Return only the complete file content. Do not wrap it in markdown fences, "
    "do not add explanations before or after it, and never elide unchanged parts."
)

SYSTEM_PROMPT_PLANNER = (
    "You are a software architect who turns a task description into a concrete plan of file changes.\n"
    "1. Understand what has to be done.\n"
    "2. Decide which files must be created, modified or deleted.\n"
    "3. Prefer modifying existing files over creating new ones.\n"
    "Be specific in every change description."
)

SYSTEM_PROMPT_CODER = (
    "You are an experienced software engineer.\n"
    "Write clean, idiomatic code that follows the existing style of the project. "
    "Do not add superfluous comments. " + CODE_RESPONSE_INSTRUCTION
)

SYSTEM_PROMPT_REVIEWER = (
    "You are a meticulous code reviewer. Report real defects only: bugs, security problems, "
    "broken contracts and missing error handling rank CRITICAL or WARNING; style remarks are "
    "SUGGESTION or NITPICK."
)

CONTEXT_CHAR_LIMIT = 5_000
FILE_CHAR_LIMIT = 10_000
LOG_CHAR_LIMIT = 5_000
DIFF_CHAR_LIMIT = 20_000
MAX_LISTED_PATHS = 400


def _section(title: str, body: str) -> str:
    return f"## {title}\n{body.strip()}\n"


def render_context(context: str) -> str:
    if not context.strip():
        return ""
    return _section("Project context", context[:CONTEXT_CHAR_LIMIT])


def render_path_listing(paths: Sequence[str]) -> str:
    if not paths:
        return _section("Project files", "(empty repository)")
    shown = list(paths[:MAX_LISTED_PATHS])
    listing = "\n".join(f"- {path}" for path in shown)
    if len(paths) > len(shown):
        listing += f"\n- ... ({len(paths) - len(shown)} more)"
    return _section("Project files", listing)


def render_plan_prompt(task: str, context: str, paths: Sequence[str]) -> str:
    """Prompt asking the model for an execution plan."""
    parts = [
        _section("Task", task),
        render_context(context),
        render_path_listing(paths),
        _section(
            "Response schema",
            "{\n"
            '  "summary": "one sentence describing the change",\n'
            '  "planned_changes": [\n'
            '    {"file_path": "relative/path", "change_type": "CREATE|MODIFY|DELETE", "description": "what to do"}\n'
            "  ]\n"
            "}\n"
            "Use MODIFY for files listed above; use CREATE only for files that do not exist yet.",
        ),
        JSON_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(part for part in parts if part)


def render_create_prompt(task: str, path: str, description: str, context: str) -> str:
    parts = [
        f"Create the file {path}.\n",
        _section("Task", task),
        _section("What the file must contain", description or task),
        render_context(context),
        CODE_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(part for part in parts if part)


def render_modify_prompt(task: str, path: str, description: str, current: str, context: str) -> str:
    parts = [
        f"Modify the file {path}.\n",
        _section("Task", task),
        _section("What to change", description or task),
        _section("Current file content", f"```\n{current[:FILE_CHAR_LIMIT]}\n```"),
        render_context(context),
        CODE_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(part for part in parts if part)


def render_fix_prompt(path: str, current: str, problems: Iterable[str], *, task: str = "") -> str:
    """Prompt asking for a corrected full copy of ``path``."""
    listed = "\n".join(f"- {problem}" for problem in problems if problem.strip())
    parts = [
        f"Fix the problems reported for {path}.\n",
        _section("Task", task) if task.strip() else "",
        _section("Problems", listed or "- (unspecified)"),
        _section("Current file content", f"```\n{current[:FILE_CHAR_LIMIT]}\n```"),
        CODE_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(part for part in parts if part)


def render_review_prompt(task: str, diff: str) -> str:
    parts = [
        _section("Task the pull request implements", task),
        _section("Diff", diff[:DIFF_CHAR_LIMIT]),
        _section(
            "Response schema",
            "{\n"
            '  "approved": true|false,\n'
            '  "overall_assessment": "short summary",\n'
            '  "issues": [\n'
            '    {"file": "path", "line": 12, "severity": "CRITICAL|WARNING|SUGGESTION|NITPICK",\n'
            '     "message": "what is wrong", "suggested_fix": "optional"}\n'
            "  ]\n"
            "}",
        ),
        JSON_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(parts)


def render_ci_files_prompt(task: str, category: str, logs: str, paths: Sequence[str]) -> str:
    parts = [
        _section("CI failure", f"Category: {category}"),
        _section("Logs", logs[-LOG_CHAR_LIMIT:]),
        _section("Task", task),
        render_path_listing(paths),
        _section("Response schema", '{"files": ["relative/path", "..."]}'),
        JSON_RESPONSE_INSTRUCTION,
    ]
    return "\n".join(parts)


__all__ = [
    "CODE_RESPONSE_INSTRUCTION",
    "JSON_RESPONSE_INSTRUCTION",
    "SYSTEM_PROMPT_CODER",
    "SYSTEM_PROMPT_PLANNER",
    "SYSTEM_PROMPT_REVIEWER",
    "render_ci_files_prompt",
    "render_create_prompt",
    "render_fix_prompt",
    "render_modify_prompt",
    "render_plan_prompt",
    "render_review_prompt",
]
