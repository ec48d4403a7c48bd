from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

import pytest

from relay.commands import (
    CommandWithFallbacks,
    ErrorType,
    FailureAnalysis,
    FailureAnalyzer,
    FallbackPlan,
    FallbackResolver,
    classify_error_type,
    detect_failure_keywords,
    heuristic_fallback_plans,
)
from relay.errors import KeysExhaustedError, ProtocolError
from relay.events import KeysExhausted, Progress
from relay.tools.bridge import ToolExecutionBridge
from relay.tools.builtin import default_registry
from relay.tools.project import ProjectMarkers

MISSING_FLASK = "Traceback (most recent call last):\n  File \"app.py\", line 1\nModuleNotFoundError: No module named 'flask'"


def _resolver(workspace: Path, shell, analyzer: FailureAnalyzer | None = None) -> FallbackResolver:
    bridge = ToolExecutionBridge(default_registry(workspace, executor=shell), timeout=5.0)
    return FallbackResolver(bridge, workspace, analyzer=analyzer)


def test_classify_error_types() -> None:
    assert classify_error_type(MISSING_FLASK, "", "python3 app.py") is ErrorType.DEPENDENCY_MISSING
    assert classify_error_type("Error: Cannot find module 'express'", "", "node server.js") is ErrorType.DEPENDENCY_MISSING
    assert classify_error_type("bash: yarn: command not found", "", "yarn build") is ErrorType.COMMAND_NOT_FOUND
    assert classify_error_type("sh: 1: python: not found", "", "python app.py") is ErrorType.COMMAND_NOT_FOUND
    assert classify_error_type("SyntaxError: invalid syntax", "", "python3 app.py") is ErrorType.CODE_ERROR
    assert classify_error_type("bash: ./run.sh: Permission denied", "", "./run.sh") is ErrorType.PERMISSION_ERROR
    assert classify_error_type("curl: (7) Connection refused", "", "curl localhost:3000") is ErrorType.NETWORK_ERROR
    assert classify_error_type("npm ERR! code EJSONPARSE", "", "npm install") is ErrorType.DEPENDENCY_MISSING
    assert classify_error_type("exit status 3", "", "make all") is ErrorType.UNKNOWN


def test_failure_keywords_match_at_word_starts() -> None:
    assert detect_failure_keywords("added 12 packages in 2s") == []
    assert "npm err" in detect_failure_keywords("npm ERR! missing script: start")
    assert detect_failure_keywords("terrorism report") == []
    assert "permission denied" in detect_failure_keywords("open: Permission denied")


def test_heuristic_plans_prefer_manifest_installs(workspace: Path) -> None:
    markers = ProjectMarkers(has_requirements=True, has_venv=True)

    plans = heuristic_fallback_plans("python3 app.py", MISSING_FLASK, ErrorType.DEPENDENCY_MISSING, markers)

    assert [plan.command for plan in plans] == [
        "pip install -r requirements.txt",
        "pip install flask",
        "source venv/bin/activate && python3 app.py",
    ]
    assert plans[0].should_retry_original is True
    assert plans[-1].should_retry_original is False


def test_heuristic_plans_for_missing_python_binary() -> None:
    plans = heuristic_fallback_plans("python app.py", "python: command not found", ErrorType.COMMAND_NOT_FOUND, ProjectMarkers())

    assert [plan.command for plan in plans] == ["python3 app.py"]


def test_analyzer_orders_model_plans_first_except_for_dependencies() -> None:
    def runner(command, output, error_type, markers):
        return FailureAnalysis(
            reason="model says so",
            fallback_plans=[FallbackPlan("node --trace-uncaught server.js"), FallbackPlan(command), FallbackPlan("  ")],
        )

    analyzer = FailureAnalyzer(runner, max_plans=3)
    code = analyzer.analyze("node server.js", "TypeError: x is undefined", ErrorType.CODE_ERROR, ProjectMarkers(has_package_json=True))
    dependency = analyzer.analyze(
        "node server.js", "Error: Cannot find module 'express'", ErrorType.DEPENDENCY_MISSING, ProjectMarkers(has_package_json=True)
    )

    assert code.reason == "model says so"
    assert [plan.command for plan in code.fallback_plans] == ["node --trace-uncaught server.js"]
    assert [plan.command for plan in dependency.fallback_plans] == ["npm install", "node --trace-uncaught server.js"]


def test_analyzer_falls_back_to_heuristics_on_model_errors() -> None:
    def failing(*args):
        raise ProtocolError("garbled")

    def exhausted(*args):
        raise KeysExhaustedError("no keys")

    markers = ProjectMarkers(has_requirements=True)
    analysis = FailureAnalyzer(failing).analyze("python3 app.py", MISSING_FLASK, ErrorType.DEPENDENCY_MISSING, markers)

    assert analysis.reason == "dependency missing detected"
    assert [plan.command for plan in analysis.fallback_plans] == ["pip install -r requirements.txt", "pip install flask"]
    with pytest.raises(KeysExhaustedError):
        FailureAnalyzer(exhausted).analyze("python3 app.py", MISSING_FLASK, ErrorType.DEPENDENCY_MISSING, markers)


def test_passing_check_runs_no_fallbacks(workspace: Path, scripted_shell) -> None:
    scripted_shell.script("npm --version", (0, "10.2.0"))
    scripted_shell.script("npm install", (0, "added 5 packages"))
    resolver = _resolver(workspace, scripted_shell)
    spec = CommandWithFallbacks("npm install", "Install", fallbacks=["apt-get install -y nodejs"], check_command="npm --version")

    assert resolver.run(spec) is True
    assert scripted_shell.commands == ["npm --version", "npm install"]


def test_failing_check_walks_fallbacks_until_available(workspace: Path, scripted_shell) -> None:
    scripted_shell.script("python3 --version", (127, "bash: python3: command not found"), (0, "Python 3.12.1"))
    scripted_shell.script("apt-get install -y python3", (0, "Setting up python3"))
    scripted_shell.script("python3 app.py", (0, "ok"))
    resolver = _resolver(workspace, scripted_shell)
    spec = CommandWithFallbacks(
        "python3 app.py",
        check_command="python3 --version",
        fallbacks=["apt-get install -y python3", "brew install python"],
    )

    assert resolver.run(spec) is True
    assert scripted_shell.commands == [
        "python3 --version",
        "apt-get install -y python3",
        "python3 --version",
        "python3 app.py",
    ]


def test_install_check_failure_skips_fallbacks(workspace: Path, scripted_shell) -> None:
    scripted_shell.script("npm --version", (127, "npm: command not found"))
    scripted_shell.script("node --version", (127, "node: command not found"))
    scripted_shell.script("npm install", (127, "bash: npm: command not found"))
    resolver = _resolver(workspace, scripted_shell)
    spec = CommandWithFallbacks(
        "npm install", check_command="npm --version", fallbacks=["corepack enable"], install_check="node --version"
    )

    assert resolver.run(spec) is False
    assert "corepack enable" not in scripted_shell.commands


def test_dependency_install_runs_before_retrying_the_command(workspace: Path, scripted_shell, caplog) -> None:
    (workspace / "requirements.txt").write_text("flask\n", encoding="utf-8")
    scripted_shell.script("python3 app.py", (1, MISSING_FLASK), (0, "Serving Flask app"))
    scripted_shell.script("pip install -r requirements.txt", (0, "Successfully installed flask-3.0.0"))
    resolver = _resolver(workspace, scripted_shell)
    events = []

    with caplog.at_level(logging.INFO, logger="relay.telemetry"):
        ok = resolver.run("python3 app.py", on_event=events.append)

    assert ok is True
    assert scripted_shell.commands == ["python3 app.py", "pip install -r requirements.txt", "python3 app.py"]
    assert any(isinstance(event, Progress) and "dependency_missing" in event.message for event in events)
    telemetry = [json.loads(record.getMessage()) for record in caplog.records if record.name == "relay.telemetry"]
    assert [entry["event"] for entry in telemetry] == ["command_failed", "fallback_plan", "command_succeeded"]
    assert telemetry[0]["error_type"] == "dependency_missing"


def test_execute_returns_outcome_and_gives_up(workspace: Path, scripted_shell) -> None:
    scripted_shell.script("make all", (2, "exit status 3"))
    resolver = _resolver(workspace, scripted_shell)

    runner = resolver.execute("make all")
    events = []
    while True:
        try:
            events.append(next(runner))
        except StopIteration as stop:
            outcome = stop.value
            break

    assert outcome.success is False
    assert outcome.error_type is ErrorType.UNKNOWN
    assert events[-1] == Progress("Giving up on make all")


def test_failure_keywords_fail_a_zero_exit(workspace: Path, scripted_shell) -> None:
    scripted_shell.script("npm test", (0, "Tests: 1 failed, 3 passed\nTest failed: adds numbers"))
    resolver = _resolver(workspace, scripted_shell)

    outcome = resolver.run_once("npm test")

    assert outcome.success is False
    assert "failed" in outcome.failure_keywords


def test_cancel_stops_before_fallback_plans(workspace: Path, scripted_shell) -> None:
    (workspace / "requirements.txt").write_text("flask\n", encoding="utf-8")
    scripted_shell.script("python3 app.py", (1, MISSING_FLASK))
    resolver = _resolver(workspace, scripted_shell)
    cancel = threading.Event()
    cancel.set()

    assert resolver.run("python3 app.py", cancel=cancel) is False
    assert scripted_shell.commands == ["python3 app.py"]


def test_venv_retry_is_last_resort(workspace: Path, scripted_shell) -> None:
    (workspace / "venv").mkdir()
    scripted_shell.script("python3 app.py", (1, "exit status 3"))
    scripted_shell.script("source venv/bin/activate && python3 app.py", (0, "running"))
    resolver = _resolver(workspace, scripted_shell, FailureAnalyzer(max_plans=0))

    assert resolver.run("python3 app.py") is True
    assert scripted_shell.commands[-1] == "source venv/bin/activate && python3 app.py"


def test_pytest_missing_module_installs_before_retrying(workspace: Path, scripted_shell) -> None:
    scripted_shell.script(
        "pytest",
        (2, "ImportError while importing test module\nModuleNotFoundError: No module named 'requests'"),
        (0, "3 passed"),
    )
    resolver = _resolver(workspace, scripted_shell)

    assert resolver.run("pytest") is True
    assert scripted_shell.commands == ["pytest", "pip install requests", "pytest"]


def test_run_reports_exhausted_keys_during_analysis(workspace: Path, scripted_shell) -> None:
    def exhausted(command: str, output: str, error_type: ErrorType, markers: ProjectMarkers) -> FailureAnalysis:
        raise KeysExhaustedError("no keys")

    scripted_shell.script("pytest", (1, "1 failed"))
    resolver = _resolver(workspace, scripted_shell, FailureAnalyzer(exhausted))
    events: list = []

    assert resolver.run("pytest", on_event=events.append) is False
    assert events[-1] == KeysExhausted("no keys")
    assert scripted_shell.commands == ["pytest"]
