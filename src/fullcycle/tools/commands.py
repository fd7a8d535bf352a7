"""External command execution behind a narrow, fakeable port."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)

NOT_FOUND_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class CommandResult:
    """Exit status and combined stdout/stderr of one command."""

    argv: tuple[str, ...]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def short_message(self) -> str:
        text = self.output.strip()
        if not text:
            return f"exit code {self.exit_code}"
        return text.splitlines()[-1] if self.ok else text.splitlines()[0]


class CommandRunner:
    """Runs an argv in a working directory. Subclasses implement :meth:`run`."""

    def run(
        self,
        argv: Sequence[str],
        cwd: Path | str,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError("Subclasses must implement run().")


class SubprocessRunner(CommandRunner):
    """Default runner backed by :func:`subprocess.run`."""

    def __init__(self, *, default_timeout: Optional[float] = 1800.0) -> None:
        self._default_timeout = default_timeout

    def run(
        self,
        argv: Sequence[str],
        cwd: Path | str,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        command = tuple(str(part) for part in argv)
        if not command:
            raise ValueError("Cannot run an empty command.")
        if shutil.which(command[0]) is None and not Path(cwd, command[0]).exists():
            return CommandResult(command, NOT_FOUND_EXIT_CODE, f"Executable not available: {command[0]}")

        merged_env = os.environ.copy()
        if env:
            merged_env.update({str(key): str(value) for key, value in env.items()})

        LOGGER.debug("Running %s in %s", " ".join(command), cwd)
        try:
            process = subprocess.run(  # noqa: S603 - argv is built by the pipeline, never a shell string
                list(command),
                cwd=str(cwd),
                env=merged_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except subprocess.TimeoutExpired as error:
            partial = error.output.decode("utf-8", errors="replace") if error.output else ""
            return CommandResult(command, TIMEOUT_EXIT_CODE, f"{partial}\nCommand timed out: {' '.join(command)}")
        except OSError as error:
            return CommandResult(command, NOT_FOUND_EXIT_CODE, f"Failed to start {command[0]}: {error}")

        output = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        return CommandResult(command, process.returncode, output)


__all__ = ["CommandResult", "CommandRunner", "SubprocessRunner"]
