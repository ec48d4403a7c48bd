from __future__ import annotations

import json
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relay.models.llm_client import LLMClient  # noqa: E402
from relay.tools.shell import ShellResult  # noqa: E402


class ScriptedShell:
    """Stand-in for ``ShellExecutor`` that answers from per-command queues.

    The last scripted answer for a command repeats; unscripted commands succeed
    with empty output.
    """

    def __init__(self) -> None:
        self.commands: List[str] = []
        self._answers: Dict[str, List[tuple[int, str]]] = defaultdict(list)

    def script(self, command: str, *answers: tuple[int, str]) -> None:
        self._answers[command].extend(answers)

    def run(self, command: str, cwd: Path, *, timeout: Optional[float] = None) -> ShellResult:
        self.commands.append(command)
        queue = self._answers.get(command)
        if not queue:
            return ShellResult(command, 0, "")
        exit_code, output = queue.pop(0) if len(queue) > 1 else queue[0]
        return ShellResult(command, exit_code, output)


class ScriptedClient(LLMClient):
    """LLM client replaying canned answers per phase (read from the request metadata)."""

    def __init__(self, answers: Dict[str, List[Any]]) -> None:
        super().__init__("scripted-model", max_attempts=3, retry_delay=0.0)
        self._answers = {phase: list(items) for phase, items in answers.items()}
        self.payloads: List[Dict[str, Any]] = []

    def calls_for(self, phase: str) -> List[Dict[str, Any]]:
        return [payload for payload in self.payloads if payload.get("metadata", {}).get("phase") == phase]

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        phase = payload.get("metadata", {}).get("phase", "")
        queue = self._answers.get(phase)
        if not queue:
            raise AssertionError(f"No scripted answer left for phase {phase!r}")
        answer = queue.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer if isinstance(answer, str) else json.dumps(answer)


class FakeTransport:
    """Records provider requests and replays canned response bodies."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> str:
        self.requests.append({"url": url, "headers": dict(headers), "payload": payload, "timeout": timeout})
        if not self._responses:
            raise AssertionError("FakeTransport ran out of responses")
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


@pytest.fixture()
def scripted_shell() -> ScriptedShell:
    return ScriptedShell()


@pytest.fixture()
def scripted_client() -> Callable[[Dict[str, List[Any]]], ScriptedClient]:
    return ScriptedClient


@pytest.fixture()
def fake_transport() -> Callable[..., FakeTransport]:
    return FakeTransport


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
