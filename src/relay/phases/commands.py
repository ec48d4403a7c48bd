"""Command phase: find the install, build, test, and run commands of a project.

Candidates come from the model and from static project markers; the static
list also serves as the fallback when the model call fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..commands import CommandWithFallbacks
from ..errors import PhaseFailure
from ..models.llm_client import LLMClient
from ..tools.project import ProjectMarkers, detect_markers
from .base import PhaseContext, invoke_phase

LOGGER = logging.getLogger(__name__)


class CommandKind(str, Enum):
    INSTALL = "install"
    BUILD = "build"
    TEST = "test"
    RUN = "run"


_KIND_ORDER = {CommandKind.INSTALL: 0, CommandKind.BUILD: 1, CommandKind.TEST: 2, CommandKind.RUN: 3}

_PYTHON_CHECK_COMMAND = "python3 --version"
_PYTHON_FALLBACKS = ("python3 -m venv venv", "python3 -m ensurepip --upgrade")


@dataclass(slots=True)
class DetectedCommand:
    command: str
    kind: CommandKind = CommandKind.RUN
    description: str = ""
    check_command: Optional[str] = None
    fallbacks: list[str] = field(default_factory=list)
    install_check: Optional[str] = None

    def to_fallback_spec(self) -> CommandWithFallbacks:
        return CommandWithFallbacks(
            primary_command=self.command,
            description=self.description or f"{self.kind.value} step",
            fallbacks=list(self.fallbacks),
            check_command=self.check_command,
            install_check=self.install_check,
        )


@dataclass(slots=True)
class CommandsRequest:
    """Input payload for the command phase."""

    user_request: str
    project_structure: str = ""
    markers: str = ""


@dataclass(slots=True)
class CommandsResponse:
    commands: list[DetectedCommand] = field(default_factory=list)


def render_prompt(request: CommandsRequest) -> str:
    return "\n".join(
        [
            "## Request",
            request.user_request.strip(),
            "",
            "## Project Markers",
            request.markers or "(none)",
            "",
            "## Project Structure",
            request.project_structure or "(empty)",
            "",
            "## Task",
            "List the shell commands needed to install dependencies, build, test, and run this project. "
            "For each give command, kind (install|build|test|run), description, and optionally a "
            "check_command that verifies the required tool is available plus fallbacks that make it available.",
        ]
    )


def detect_static_commands(workspace: Path, markers: ProjectMarkers) -> list[DetectedCommand]:
    """Candidates derived from manifests and well-known script names."""
    commands: list[DetectedCommand] = []
    if markers.is_node:
        commands.append(
            DetectedCommand(
                "npm install",
                CommandKind.INSTALL,
                "Install Node dependencies",
                check_command="npm --version",
                install_check="node --version",
            )
        )
        scripts = markers.package_json.get("scripts") if isinstance(markers.package_json, dict) else None
        scripts = scripts if isinstance(scripts, dict) else {}
        if "build" in scripts:
            commands.append(DetectedCommand("npm run build", CommandKind.BUILD, "Build the project"))
        test_script = str(scripts.get("test") or "")
        if test_script and "no test specified" not in test_script:
            commands.append(DetectedCommand("npm test", CommandKind.TEST, "Run the test suite"))
        if "start" in scripts:
            commands.append(DetectedCommand("npm start", CommandKind.RUN, "Start the application"))
    if markers.is_python or _has_python_sources(workspace):
        if markers.has_requirements:
            commands.append(
                DetectedCommand(
                    "pip install -r requirements.txt",
                    CommandKind.INSTALL,
                    "Install Python requirements",
                    check_command="pip --version",
                    fallbacks=["python3 -m ensurepip --upgrade", "python3 -m venv venv"],
                )
            )
        elif markers.has_pyproject:
            commands.append(DetectedCommand("pip install -e .", CommandKind.INSTALL, "Install the project"))
        if _has_python_tests(workspace):
            commands.append(
                DetectedCommand(
                    "python3 -m pytest -q",
                    CommandKind.TEST,
                    "Run the test suite",
                    check_command=_PYTHON_CHECK_COMMAND,
                    fallbacks=list(_PYTHON_FALLBACKS),
                )
            )
        for entry in ("main.py", "app.py", "manage.py"):
            if (workspace / entry).is_file():
                run_command = f"python3 {entry} runserver" if entry == "manage.py" else f"python3 {entry}"
                commands.append(DetectedCommand(run_command, CommandKind.RUN, "Start the application"))
                break
    if markers.is_jvm:
        if (workspace / "gradlew").is_file():
            commands.append(DetectedCommand("./gradlew build", CommandKind.BUILD, "Gradle build"))
        elif (workspace / "pom.xml").is_file():
            commands.append(DetectedCommand("mvn -q package", CommandKind.BUILD, "Maven package"))
        else:
            commands.append(DetectedCommand("gradle build", CommandKind.BUILD, "Gradle build"))
    for script, kind in (("build.sh", CommandKind.BUILD), ("test.sh", CommandKind.TEST), ("run.sh", CommandKind.RUN)):
        if (workspace / script).is_file():
            commands.append(DetectedCommand(f"bash {script}", kind, f"Run {script}"))
    return commands


def merge_commands(*sources: list[DetectedCommand]) -> list[DetectedCommand]:
    """Deduplicate by command text (first source wins) and order install, build, test, run."""
    seen: set[str] = set()
    merged: list[DetectedCommand] = []
    for source in sources:
        for item in source:
            key = " ".join(item.command.split())
            if not key or key in seen:
                continue
            seen.add(key)
            merged.append(item)
    merged.sort(key=lambda item: _KIND_ORDER[item.kind])
    return merged


def run(
    request: CommandsRequest,
    *,
    client: LLMClient,
    context: PhaseContext,
    markers: Optional[ProjectMarkers] = None,
) -> CommandsResponse:
    """Execute the command phase; static detection fills in when the model call fails."""
    static = detect_static_commands(context.workspace, markers or detect_markers(context.workspace))
    try:
        response = invoke_phase(
            "commands",
            request,
            CommandsResponse,
            prompt=render_prompt(request),
            client=client,
            context=context,
        )
    except PhaseFailure as error:
        if not static:
            raise
        LOGGER.warning("Command detection fell back to static markers: %s", error)
        return CommandsResponse(commands=merge_commands(static))
    return CommandsResponse(commands=merge_commands(response.commands, static))


def _has_python_sources(workspace: Path) -> bool:
    return workspace.is_dir() and any(workspace.glob("*.py"))


def _has_python_tests(workspace: Path) -> bool:
    if not workspace.is_dir():
        return False
    if (workspace / "tests").is_dir():
        return True
    return any(workspace.glob("test_*.py")) or any(workspace.glob("*_test.py"))
