from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from relay.commands import ErrorType
from relay.errors import PhaseFailure, TransportError
from relay.phases import PhaseName
from relay.phases.base import PhaseContext
from relay.phases.commands import CommandKind, CommandsRequest, DetectedCommand, detect_static_commands, merge_commands
from relay.phases.commands import run as run_commands
from relay.phases.failure_analysis import analysis_runner
from relay.phases.file_list import FileListRequest, normalize_paths
from relay.phases.file_list import run as run_file_list
from relay.phases.metadata import (
    FileImport,
    FileMetadata,
    MetadataRequest,
    MetadataResponse,
    check_coherence,
    count_mismatch,
)
from relay.phases.metadata import run as run_metadata
from relay.phases.repair import RepairRequest
from relay.phases.repair import run as run_repair
from relay.router import PhaseRouter
from relay.tools.project import ProjectMarkers, detect_markers


def _context(tmp_path: Path, workspace: Path) -> PhaseContext:
    return PhaseContext(data_root=tmp_path / "data", workspace=workspace)


def _meta(path: str, **extra) -> dict:
    return {"file_path": path, "description": f"{path} module", **extra}


def test_file_list_phase_logs_every_attempt(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client({"file_list": ["not json", '{"files": ["./app.py", "/etc/passwd", "../x.py", "app.py", "lib/"]}']})
    context = _context(tmp_path, workspace)

    response = run_file_list(FileListRequest("build a flask app"), client=client, context=context)

    assert response.files == ["app.py"]
    phase_logs = list((context.logs_root / "phases").glob("phase__file_list__*.json"))
    assert len(phase_logs) == 1
    entry = json.loads(phase_logs[0].read_text(encoding="utf-8"))
    assert entry["phase"] == "file_list"
    assert [attempt["error"] is None for attempt in entry["attempts"]] == [False, True]
    assert entry["request"]["user_request"] == "build a flask app"
    inputs = sorted(path.name for path in context.llm_inputs_root.iterdir())
    assert sum(name.startswith("input__file_list__attempt-") for name in inputs) == 2
    assert sum(name.startswith("output__file_list__attempt-") for name in inputs) == 2


def test_unparseable_answers_become_phase_failure(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client({"file_list": ["nope", "nope", "nope"]})
    context = _context(tmp_path, workspace)

    with pytest.raises(PhaseFailure) as excinfo:
        run_file_list(FileListRequest("anything"), client=client, context=context)

    assert excinfo.value.phase == "file_list"
    assert str(excinfo.value).startswith("file_list phase failed: ")
    entry = json.loads(next((context.logs_root / "phases").glob("*.json")).read_text(encoding="utf-8"))
    assert "error" in entry


def test_transport_errors_pass_through_phases(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client({"file_list": [TransportError("HTTP 503: unavailable", status=503)]})

    with pytest.raises(TransportError):
        run_file_list(FileListRequest("anything"), client=client, context=_context(tmp_path, workspace))


def test_normalize_paths() -> None:
    assert normalize_paths([" `src/app.py` ", "src\\util.py", "./src/app.py", "", "a/../b.py", "docs/"]) == [
        "src/app.py",
        "src/util.py",
    ]


def test_metadata_mismatch_retries_with_strict_prompt(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client(
        {
            "metadata": [
                {"files": [_meta("app.py")]},
                {"files": [_meta("app.py"), _meta("util.py", exports=["helper"])]},
            ]
        }
    )

    response = run_metadata(
        MetadataRequest("build it", ["app.py", "util.py"]), client=client, context=_context(tmp_path, workspace)
    )

    assert [item.file_path for item in response.files] == ["app.py", "util.py"]
    calls = client.calls_for("metadata")
    assert len(calls) == 2
    assert "## Correction" not in calls[0]["input"][-1]["text"]
    assert "## Correction" in calls[1]["input"][-1]["text"]


def test_metadata_second_mismatch_fails_the_phase(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client({"metadata": [{"files": [_meta("app.py")]}, {"files": [_meta("other.py")]}]})

    with pytest.raises(PhaseFailure) as excinfo:
        run_metadata(MetadataRequest("build it", ["app.py", "util.py"]), client=client, context=_context(tmp_path, workspace))

    assert excinfo.value.phase == "metadata"
    assert "missing: app.py, util.py" in str(excinfo.value)
    assert len(client.calls_for("metadata")) == 2


def test_metadata_coherence_is_advisory(caplog) -> None:
    files = [
        FileMetadata("app.py", exports=["main"], imports=[FileImport("util", ["helper", "missing"])], relationships=["db.py"]),
        FileMetadata("util.py", exports=["helper"]),
    ]

    with caplog.at_level(logging.WARNING):
        warnings = check_coherence(files)

    assert warnings == [
        "app.py: relationship 'db.py' is not a generated file",
        "app.py: imports 'missing' from util.py, which does not export it",
    ]
    assert "Metadata coherence" in caplog.text


def test_count_mismatch_reports_missing_and_extra() -> None:
    response = MetadataResponse([FileMetadata("a.py"), FileMetadata("c.py")])

    assert count_mismatch(["a.py", "c.py"], response) == ""
    assert count_mismatch(["a.py", "b.py"], response) == "expected 2 entries, got 2; missing: b.py; unexpected: c.py"


def test_static_command_detection(workspace: Path) -> None:
    (workspace / "requirements.txt").write_text("flask\n", encoding="utf-8")
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (workspace / "tests").mkdir()
    (workspace / "run.sh").write_text("python3 app.py\n", encoding="utf-8")

    commands = detect_static_commands(workspace, detect_markers(workspace))

    assert [(item.command, item.kind) for item in commands] == [
        ("pip install -r requirements.txt", CommandKind.INSTALL),
        ("python3 -m pytest -q", CommandKind.TEST),
        ("python3 app.py", CommandKind.RUN),
        ("bash run.sh", CommandKind.RUN),
    ]
    pytest_spec = commands[1].to_fallback_spec()
    assert pytest_spec.check_command == "python3 --version"
    assert pytest_spec.fallbacks == ["python3 -m venv venv", "python3 -m ensurepip --upgrade"]


def test_node_scripts_are_detected(workspace: Path) -> None:
    (workspace / "package.json").write_text(
        json.dumps({"scripts": {"test": 'echo "Error: no test specified" && exit 1', "start": "node index.js", "build": "tsc"}}),
        encoding="utf-8",
    )

    commands = detect_static_commands(workspace, detect_markers(workspace))

    assert [item.command for item in commands] == ["npm install", "npm run build", "npm start"]
    assert commands[0].install_check == "node --version"


def test_merge_prefers_first_source_and_orders_by_kind() -> None:
    model = [DetectedCommand("python3  app.py", CommandKind.RUN, "from model"), DetectedCommand("pytest", CommandKind.TEST)]
    static = [DetectedCommand("python3 app.py", CommandKind.RUN, "static"), DetectedCommand("pip install flask", CommandKind.INSTALL)]

    merged = merge_commands(model, static)

    assert [item.command for item in merged] == ["pip install flask", "pytest", "python3  app.py"]
    assert merged[-1].description == "from model"


def test_commands_phase_falls_back_to_static_detection(tmp_path: Path, workspace: Path, scripted_client) -> None:
    (workspace / "requirements.txt").write_text("flask\n", encoding="utf-8")
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    client = scripted_client({"commands": ["???", "???", "???"]})

    response = run_commands(CommandsRequest("run it"), client=client, context=_context(tmp_path, workspace))

    assert [item.command for item in response.commands] == ["pip install -r requirements.txt", "python3 app.py"]

    empty = tmp_path / "empty"
    empty.mkdir()
    failing = scripted_client({"commands": ["???", "???", "???"]})
    with pytest.raises(PhaseFailure):
        run_commands(CommandsRequest("run it"), client=failing, context=_context(tmp_path, empty))


def test_commands_phase_merges_model_and_static(tmp_path: Path, workspace: Path, scripted_client) -> None:
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (workspace / "test_app.py").write_text("def test_ok():\n    assert True\n", encoding="utf-8")
    client = scripted_client(
        {"commands": [{"commands": [{"command": "python3 -m pytest -q", "kind": "test", "description": "model tests"}]}]}
    )

    response = run_commands(CommandsRequest("test it"), client=client, context=_context(tmp_path, workspace))

    assert [(item.command, item.description) for item in response.commands] == [
        ("python3 -m pytest -q", "model tests"),
        ("python3 app.py", "Start the application"),
    ]


def test_repair_patches_are_sorted_by_confidence(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client(
        {
            "repair": [
                {
                    "patches": [
                        {"file_path": "a.py", "old_string": "x", "new_string": "y", "confidence": 0.2},
                        {"file_path": " ", "old_string": "", "new_string": "z", "confidence": 1.0},
                        {"file_path": "b.py", "old_string": "p", "new_string": "q", "confidence": "0.9"},
                    ]
                }
            ]
        }
    )

    response = run_repair(
        RepairRequest("fix", ["AssertionError: 1 != 2"], previous_attempts=["patched a.py"]),
        client=client,
        context=_context(tmp_path, workspace),
    )

    assert [patch.file_path for patch in response.patches] == ["b.py", "a.py"]
    prompt = client.calls_for("repair")[0]["input"][-1]["text"]
    assert "## Earlier Repair Attempts" in prompt
    assert "AssertionError: 1 != 2" in prompt


def test_failure_analysis_runner_binds_the_phase(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client(
        {
            "failure_analysis": [
                {
                    "reason": "flask is not installed",
                    "fallback_plans": [{"command": "pip install flask", "should_retry_original": True}],
                }
            ]
        }
    )
    runner = analysis_runner(client, _context(tmp_path, workspace))

    analysis = runner("python3 app.py", "No module named 'flask'", ErrorType.DEPENDENCY_MISSING, ProjectMarkers())

    assert analysis.reason == "flask is not installed"
    assert analysis.fallback_plans[0].command == "pip install flask"
    assert analysis.fallback_plans[0].should_retry_original is True
    prompt = client.calls_for("failure_analysis")[0]["input"][-1]["text"]
    assert "dependency_missing" in prompt


def test_router_coerces_dict_payloads(tmp_path: Path, workspace: Path, scripted_client) -> None:
    client = scripted_client({"file_list": ['{"files": ["main.py"]}'], "codegen": ["```python\nprint('hi')\n```"]})
    router = PhaseRouter(client=client, context=_context(tmp_path, workspace))

    files = router.dispatch("file_list", {"user_request": "hello world script"})
    content = router.dispatch(
        PhaseName.CODEGEN, {"user_request": "hello world script", "file": {"file_path": "main.py"}}
    )

    assert files.files == ["main.py"]
    assert content == "print('hi')\n"
    assert set(router.available_phases()) == set(PhaseName)
    with pytest.raises(KeyError):
        router.dispatch("deploy", {})
    with pytest.raises(ValueError):
        router.dispatch("file_list", {"files": 3})
