from __future__ import annotations

from pathlib import Path

import pytest

from fullcycle.schema import DEFAULT_PROTECTED_PATTERNS
from fullcycle.tools.protected import is_protected, normalise_repo_path, resolve_inside


@pytest.mark.parametrize(
    "path",
    [
        ".env",
        "./.env",
        "services/api/.env",
        ".env.production",
        "app/secrets/token.txt",
        "secrets/token.txt",
        "deploy/credentials/aws.json",
        "certs/server.pem",
        "server.key",
    ],
)
def test_default_patterns_protect_secrets(path: str) -> None:
    assert is_protected(path, DEFAULT_PROTECTED_PATTERNS)


@pytest.mark.parametrize("path", ["src/app/calculator.py", "src/environment.py", "docs/keys.md", ""])
def test_default_patterns_leave_ordinary_files_alone(path: str) -> None:
    assert not is_protected(path, DEFAULT_PROTECTED_PATTERNS)


def test_regex_patterns_search_the_full_path() -> None:
    patterns = ["re:^build/", "re:\\.lock$"]
    assert is_protected("build/out.bin", patterns)
    assert is_protected("frontend/yarn.lock", patterns)
    assert not is_protected("src/build/helper.py", patterns)


def test_normalise_repo_path_uses_forward_slashes() -> None:
    assert normalise_repo_path(" ./src\\app\\main.py ") == "src/app/main.py"


def test_resolve_inside_rejects_paths_outside_the_repository(tmp_path: Path) -> None:
    assert resolve_inside(tmp_path, "./src/app.py") == (tmp_path / "src" / "app.py").resolve()
    assert resolve_inside(tmp_path, "../escape.txt") is None
    assert resolve_inside(tmp_path, "/etc/passwd") is None
    assert resolve_inside(tmp_path, ".git/config") is None
    assert resolve_inside(tmp_path, "") is None
