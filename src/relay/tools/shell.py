"""Shell command execution with combined output capture."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

__all__ = ["ShellExecutor", "ShellResult"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ShellResult:
    """Outcome of one shell command."""

    command: str
    exit_code: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def error(self) -> bool:
        return self.timed_out or self.exit_code != 0


class ShellExecutor:
    """Run commands through ``bash -c`` (or ``sh -c``) inside a working directory."""

    def __init__(self, *, default_timeout: float = 600.0) -> None:
        self._default_timeout = default_timeout
        self._shell = shutil.which("bash") or shutil.which("sh") or "/bin/sh"

    def run(self, command: str, cwd: Path, *, timeout: Optional[float] = None) -> ShellResult:
        LOGGER.debug("Running %s in %s", command, cwd)
        try:
            process = subprocess.Popen(  # noqa: S603 - commands come from the agent session
                [self._shell, "-c", command],
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as error:
            return ShellResult(command, None, f"Failed to start command: {error}")

        limit = timeout or self._default_timeout
        try:
            output, _ = process.communicate(timeout=limit)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                process.kill()
            try:
                output, _ = process.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                output = ""
            LOGGER.warning("Command timed out after %ss: %s", limit, command)
            return ShellResult(command, None, f"{output or ''}\nCommand timed out after {limit}s", timed_out=True)
        return ShellResult(command, process.returncode, output or "")
