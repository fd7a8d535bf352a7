"""Pure helpers that pull JSON objects and source code out of free-form model text.

Model output is the least predictable input the pipeline consumes, so every
parsing heuristic lives here, free of I/O, where it can be exercised against
fixtures of well-formed and malformed responses.
"""

from __future__ import annotations

import ast
import json
import re
from typing import Any, Optional

__all__ = [
    "ExtractionError",
    "clean_code_response",
    "count_lines",
    "extract_json_object",
    "normalise_json_string",
    "parse_json_object",
    "strip_code_fence",
]


class ExtractionError(ValueError):
    """Raised when no usable payload can be recovered from a model response."""


_FENCE_BLOCK_RE = re.compile(r"```[ \t]*([\w+#.-]*)[ \t]*\n(.*?)```", re.DOTALL)
_FENCE_LINE_RE = re.compile(r"^\s*```[\w+#.-]*\s*$")
_PREAMBLE_RE = re.compile(
    r"^\s*(?:here(?:'s| is| are)\b|below is\b|sure\b|certainly\b|of course\b|okay\b|"
    r"the (?:updated|complete|full|fixed|corrected|new)\b|"
    r"(?:updated|complete|full|fixed|corrected) (?:file|code|version)\b)",
    re.IGNORECASE,
)
_HEADING_RE = re.compile(r"^\s*#{1,6}\s+\S")
_TEXT_SUFFIXES = (".md", ".markdown", ".rst", ".txt", ".adoc")
_HASH_COMMENT_SUFFIXES = (".py", ".sh", ".rb", ".pl", ".yaml", ".yml", ".toml", ".cfg", ".ini", ".r")


def normalise_json_string(payload: str) -> str:
    """Normalise typographic characters models like to emit inside JSON."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def strip_code_fence(payload: str) -> str:
    """Remove a Markdown fence wrapping the whole payload, if present."""
    text = payload.strip()
    if not text.startswith("```"):
        return text
    match = _FENCE_BLOCK_RE.match(text)
    if match:
        return match.group(2).strip()
    first_newline = text.find("\n")
    if first_newline == -1:
        return ""
    body = text[first_newline + 1 :]
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


def _strip_trailing_commas(payload: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` object embedded in ``text``.

    Braces inside string literals are ignored so values such as code snippets
    do not confuse the scan. Returns ``None`` when no balanced object exists.
    """
    if not text:
        return None
    start: int | None = None
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if start is None:
            if char == "{":
                start = index
                depth = 1
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _load_candidate(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_strip_trailing_commas(candidate))
    except json.JSONDecodeError:
        pass
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    return _normalise_literal(literal)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse the JSON object carried by ``text`` or raise :class:`ExtractionError`."""
    if not text or not text.strip():
        raise ExtractionError("Model returned an empty response.")

    normalised = normalise_json_string(text)
    candidates: list[str] = [strip_code_fence(normalised)]
    embedded = extract_json_object(normalised)
    if embedded and embedded not in candidates:
        candidates.append(embedded)

    for candidate in candidates:
        data = _load_candidate(candidate)
        if isinstance(data, dict):
            return data

    raise ExtractionError(f"No JSON object found in response: {text.strip()[:200]}")


def _longest_fenced_block(text: str) -> Optional[str]:
    blocks = [match.group(2) for match in _FENCE_BLOCK_RE.finditer(text)]
    if not blocks:
        return None
    return max(blocks, key=len)


def clean_code_response(response: str, *, path: str | None = None) -> str:
    """Turn a model reply into raw file content.

    Cleanup runs in stages: take the largest fenced block when the reply
    contains one, drop dangling fence markers, then discard chatty preamble
    lines (and Markdown headings for non-prose files) before the first line of
    real content.
    """
    text = response.replace("\r\n", "\n")
    block = _longest_fenced_block(text)
    if block is not None:
        text = block

    lines = text.split("\n")
    while lines and _FENCE_LINE_RE.match(lines[0]):
        lines.pop(0)
    while lines and _FENCE_LINE_RE.match(lines[-1]):
        lines.pop()

    suffix = (path or "").lower()
    # Markdown headings are content in prose files and comments in hash-comment languages.
    keep_headings = suffix.endswith(_TEXT_SUFFIXES) or suffix.endswith(_HASH_COMMENT_SUFFIXES)
    while lines:
        head = lines[0]
        if not head.strip() or _FENCE_LINE_RE.match(head):
            lines.pop(0)
            continue
        if _PREAMBLE_RE.match(head) and head.rstrip().endswith((":", ".", "!")):
            lines.pop(0)
            continue
        if not keep_headings and _HEADING_RE.match(head):
            lines.pop(0)
            continue
        break

    while lines and (not lines[-1].strip() or _FENCE_LINE_RE.match(lines[-1])):
        lines.pop()
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def count_lines(content: str) -> int:
    """Count lines the way the anti-truncation guard compares file sizes."""
    return len(content.splitlines())
