"""HTTP smoke test: start a server command, poll it, then shut it down."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

__all__ = ["SmokeResult", "run_smoke_test"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SmokeResult:
    ok: bool
    checks: list[str] = field(default_factory=list)
    output: str = ""

    def summary(self) -> str:
        status = "passed" if self.ok else "failed"
        return f"Smoke test {status}:\n" + "\n".join(self.checks)


def run_smoke_test(
    command: str,
    workspace: Path,
    *,
    port: int,
    paths: Sequence[str] = ("/",),
    startup_timeout: float = 20.0,
    poll_interval: float = 0.5,
) -> SmokeResult:
    """Launch ``command`` and GET each path on ``port``; 5xx or no answer fails the test."""
    shell = shutil.which("bash") or shutil.which("sh") or "/bin/sh"
    process = subprocess.Popen(  # noqa: S603 - run command detected for this workspace
        [shell, "-c", command],
        cwd=workspace,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        encoding="utf-8",
        errors="replace",
        start_new_session=True,
    )
    result = SmokeResult(ok=False)
    try:
        deadline = time.monotonic() + startup_timeout
        base = f"http://127.0.0.1:{port}"
        while time.monotonic() < deadline:
            if process.poll() is not None:
                result.checks.append(f"server exited early with code {process.returncode}")
                break
            status = _probe(base + paths[0])
            if status is not None:
                break
            time.sleep(poll_interval)
        else:
            result.checks.append(f"server did not answer on port {port} within {startup_timeout:.0f}s")

        if not result.checks:
            failures = 0
            for path in paths:
                status = _probe(base + path)
                ok = status is not None and status < 500
                failures += 0 if ok else 1
                result.checks.append(f"GET {path} -> {status if status is not None else 'no response'}")
            result.ok = failures == 0
    finally:
        result.output = _stop(process)
    LOGGER.info("Smoke test for %r: %s", command, "ok" if result.ok else "failed")
    return result


def _stop(process: subprocess.Popen, *, grace: float = 5.0) -> str:
    """Signal the whole process group so servers forked by the shell exit too."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            output, _ = process.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            continue
        return output or ""
    LOGGER.warning("Smoke test process group %d did not exit after SIGKILL", process.pid)
    return ""


def _probe(url: str) -> int | None:
    try:
        with urllib.request.urlopen(url, timeout=2) as response:  # noqa: S310 - local URL
            return getattr(response, "status", 200)
    except urllib.error.HTTPError as error:
        return error.code
    except (urllib.error.URLError, OSError):
        return None
