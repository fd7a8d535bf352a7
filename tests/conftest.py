from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
TESTS = Path(__file__).resolve().parent

for entry in (SRC, TESTS):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


@dataclass(slots=True)
class GitSandbox:
    """Working clone plus the bare repository it pushes to."""

    root: Path
    origin: Path

    def git(self, *args: str, cwd: Path | None = None) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd or self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout.strip()

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def commit_all(self, message: str) -> None:
        self.git("add", "-A")
        self.git("commit", "-m", message)


def _configure_identity(sandbox: GitSandbox, cwd: Path) -> None:
    sandbox.git("config", "user.email", "pipeline@example.com", cwd=cwd)
    sandbox.git("config", "user.name", "Pipeline Bot", cwd=cwd)
    sandbox.git("config", "commit.gpgsign", "false", cwd=cwd)


@pytest.fixture()
def git_sandbox(tmp_path: Path) -> GitSandbox:
    """Create a git repository on ``main`` with a bare ``origin`` already pushed to."""

    origin = tmp_path / "origin.git"
    root = tmp_path / "work"
    root.mkdir()
    sandbox = GitSandbox(root=root, origin=origin)

    subprocess.run(["git", "init", "--bare", str(origin)], check=True, capture_output=True, text=True)
    sandbox.git("init")
    sandbox.git("checkout", "-b", "main")
    _configure_identity(sandbox, root)

    sandbox.write(
        "src/app/calculator.py",
        textwrap.dedent(
            """
            def add(left, right):
                return left + right
            """
        ).lstrip(),
    )
    sandbox.write("README.md", "# Widgets\n\nA tiny fixture project.\n")
    sandbox.write(".env", "API_TOKEN=do-not-touch\n")
    sandbox.commit_all("Initial commit")
    sandbox.git("remote", "add", "origin", str(origin))
    sandbox.git("push", "-u", "origin", "main")
    return sandbox
