"""Command execution with ordered fallbacks, failure classification, and AI-assisted recovery."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generator, Optional

from .errors import KeysExhaustedError, RelayError
from .events import Event, KeysExhausted, Progress
from .tools.bridge import ToolExecutionBridge
from .tools.builtin import SHELL_TOOL
from .tools.project import ProjectMarkers, detect_markers

__all__ = [
    "AnalysisRunner",
    "CommandOutcome",
    "CommandWithFallbacks",
    "ErrorType",
    "FAILURE_KEYWORDS",
    "FailureAnalysis",
    "FailureAnalyzer",
    "FallbackPlan",
    "FallbackResolver",
    "classify_error_type",
    "detect_failure_keywords",
    "heuristic_fallback_plans",
]

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("relay.telemetry")

VENV_ACTIVATION = "source venv/bin/activate && "
_OUTPUT_LIMIT = 4000

FAILURE_KEYWORDS = (
    "error", "failed", "failure", "fatal", "exception", "crash", "abort",
    "cannot", "can't", "unable", "not found", "not available",
    "command not found", "permission denied", "access denied", "forbidden",
    "syntax error", "parse error", "module not found", "package not found",
    "failed to", "null pointer", "nullpointerexception",
    "timed out", "connection refused", "connection reset",
    "eaddrinuse", "eacces", "enoent",
    "segmentation fault", "segfault", "stack overflow", "out of memory",
    "no such file", "no such directory",
    "traceback", "uncaught exception", "unhandled exception",
    "npm err", "syntaxerror", "indentationerror", "typeerror", "referenceerror",
    "nameerror", "attributeerror", "importerror", "modulenotfounderror",
    "is not defined", "is not a function", "unexpected token",
    "test failed", "tests failed", "assertion failed", "assertionerror",
)


def detect_failure_keywords(output: str) -> list[str]:
    """Return the failure keywords found in ``output`` (matched at word starts)."""
    if not output:
        return []
    lowered = output.lower()
    return [keyword for keyword in FAILURE_KEYWORDS if re.search(r"(?<![\w])" + re.escape(keyword), lowered)]


class ErrorType(str, Enum):
    COMMAND_NOT_FOUND = "command_not_found"
    CODE_ERROR = "code_error"
    DEPENDENCY_MISSING = "dependency_missing"
    PERMISSION_ERROR = "permission_error"
    NETWORK_ERROR = "network_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN = "unknown"


_TOOLCHAIN = ("node", "npm", "npx", "python", "python3", "pip", "pip3", "go", "cargo", "java", "mvn", "gradle", "gcc", "make")
_DEPENDENCY_MARKERS = (
    "modulenotfounderror", "no module named", "cannot find module", "module not found",
    "package not found", "missing dependency", "cannot resolve", "npm err", "yarn error", "pip error",
)
_CODE_MARKERS = (
    "syntax error", "syntaxerror", "parse error", "parseerror", "type error", "typeerror",
    "reference error", "referenceerror", "name error", "nameerror", "attribute error",
    "attributeerror", "import error", "importerror", "cannot import", "failed to import",
    "undefined", "is not defined", "traceback", "stack trace", "uncaught exception",
    "unhandled exception", "runtime error", "runtimeerror", "null pointer", "nullpointer",
    "cannot read property", "cannot access",
)
_PERMISSION_MARKERS = (
    "permission denied", "permissionerror", "access denied", "forbidden", "eacces",
    "read-only", "cannot write", "cannot read",
)
_NETWORK_MARKERS = (
    "connection refused", "connection reset", "timeout", "timed out", "network error",
    "dns", "econnrefused", "econnreset",
)
_CONFIG_MARKERS = (
    "invalid", "wrong", "incorrect", "configuration", "config error", "ejsonparse", "json parse",
)


def classify_error_type(output: str, error: str, command: str) -> ErrorType:
    """Classify a failed command; categories are checked in declaration order."""
    combined = f"{output} {error} {command}".lower()
    if "command not found" in combined or (
        "not found" in combined
        and any(re.search(rf"\b{re.escape(tool)}\b", combined) for tool in _TOOLCHAIN)
        and not any(marker in combined for marker in _DEPENDENCY_MARKERS)
    ):
        return ErrorType.COMMAND_NOT_FOUND
    if any(marker in combined for marker in _DEPENDENCY_MARKERS):
        return ErrorType.DEPENDENCY_MISSING
    if any(marker in combined for marker in _CODE_MARKERS):
        return ErrorType.CODE_ERROR
    if "dependency" in combined or ("package.json" in combined and "not found" in combined):
        return ErrorType.DEPENDENCY_MISSING
    if any(marker in combined for marker in _PERMISSION_MARKERS):
        return ErrorType.PERMISSION_ERROR
    if any(marker in combined for marker in _NETWORK_MARKERS):
        return ErrorType.NETWORK_ERROR
    if any(marker in combined for marker in _CONFIG_MARKERS) or (
        "package.json" in combined and ("parse" in combined or "json" in combined or "syntax" in combined)
    ):
        return ErrorType.CONFIGURATION_ERROR
    return ErrorType.UNKNOWN


@dataclass(slots=True)
class CommandWithFallbacks:
    """A command plus the ordered remedies tried when its availability check fails."""

    primary_command: str
    description: str = ""
    fallbacks: list[str] = field(default_factory=list)
    check_command: Optional[str] = None
    install_check: Optional[str] = None


@dataclass(slots=True)
class FallbackPlan:
    command: str
    description: str = ""
    should_retry_original: bool = False


@dataclass(slots=True)
class FailureAnalysis:
    reason: str = ""
    fallback_plans: list[FallbackPlan] = field(default_factory=list)


@dataclass(slots=True)
class CommandOutcome:
    """Result of one shell command as seen by the resolver."""

    command: str
    success: bool
    output: str = ""
    failure_keywords: list[str] = field(default_factory=list)
    error_type: Optional[ErrorType] = None


_MODULE_NAME_RE = re.compile(r"no module named ['\"]?([\w.\-]+)['\"]?", re.IGNORECASE)
_NODE_MODULE_RE = re.compile(r"cannot find module ['\"]([^'\"]+)['\"]", re.IGNORECASE)


def _is_python_command(command: str) -> bool:
    return bool(re.search(r"\b(python3?|pip3?|pytest|uvicorn|flask|django-admin|manage\.py)\b", command))


def heuristic_fallback_plans(
    command: str, output: str, error_type: ErrorType, markers: ProjectMarkers
) -> list[FallbackPlan]:
    """Rule-based remedies used alongside (or instead of) model-proposed plans."""
    plans: list[FallbackPlan] = []
    if error_type is ErrorType.DEPENDENCY_MISSING:
        if _is_python_command(command) or _MODULE_NAME_RE.search(output):
            if markers.has_requirements:
                plans.append(FallbackPlan("pip install -r requirements.txt", "Install Python requirements", True))
            elif markers.has_pyproject:
                plans.append(FallbackPlan("pip install -e .", "Install the project in editable mode", True))
            match = _MODULE_NAME_RE.search(output)
            if match:
                module = match.group(1).split(".")[0]
                plans.append(FallbackPlan(f"pip install {module}", f"Install missing module {module}", True))
        if markers.has_package_json or _NODE_MODULE_RE.search(output):
            plans.append(FallbackPlan("npm install", "Install Node dependencies", True))
    elif error_type is ErrorType.COMMAND_NOT_FOUND:
        if re.search(r"^\s*python\b", command):
            plans.append(FallbackPlan(re.sub(r"^\s*python\b", "python3", command), "Use python3", False))
        elif re.search(r"^\s*pip\b", command):
            plans.append(FallbackPlan(re.sub(r"^\s*pip\b", "pip3", command), "Use pip3", False))
    if markers.has_venv and _is_python_command(command) and VENV_ACTIVATION not in command:
        plans.append(FallbackPlan(VENV_ACTIVATION + command, "Run inside the virtual environment", False))
    return plans


AnalysisRunner = Callable[[str, str, ErrorType, ProjectMarkers], FailureAnalysis]


class FailureAnalyzer:
    """Combine model-proposed and heuristic fallback plans for a failed command."""

    def __init__(self, runner: Optional[AnalysisRunner] = None, *, max_plans: int = 2) -> None:
        self._runner = runner
        self._max_plans = max_plans

    def analyze(self, command: str, output: str, error_type: ErrorType, markers: ProjectMarkers) -> FailureAnalysis:
        heuristic = heuristic_fallback_plans(command, output, error_type, markers)
        proposed: list[FallbackPlan] = []
        reason = f"{error_type.value.replace('_', ' ')} detected"
        if self._runner is not None:
            try:
                analysis = self._runner(command, output, error_type, markers)
            except KeysExhaustedError:
                raise
            except RelayError as error:
                LOGGER.warning("Failure analysis unavailable, using heuristics: %s", error)
            else:
                proposed = [plan for plan in analysis.fallback_plans if plan.command.strip()]
                reason = analysis.reason or reason

        ordered = heuristic + proposed if error_type is ErrorType.DEPENDENCY_MISSING else proposed + heuristic
        plans: list[FallbackPlan] = []
        seen: set[str] = set()
        for plan in ordered:
            key = plan.command.strip()
            if key in seen or key == command.strip():
                continue
            seen.add(key)
            plans.append(plan)
            if len(plans) >= self._max_plans:
                break
        return FailureAnalysis(reason=reason, fallback_plans=plans)


class FallbackResolver:
    """Run commands through the shell tool, recovering from failures where possible."""

    def __init__(
        self,
        bridge: ToolExecutionBridge,
        workspace: Path,
        *,
        analyzer: Optional[FailureAnalyzer] = None,
    ) -> None:
        self._bridge = bridge
        self._workspace = workspace
        self._analyzer = analyzer or FailureAnalyzer()

    def run_once(self, command: str) -> CommandOutcome:
        result = self._bridge.execute(SHELL_TOOL, {"command": command})
        output = result.return_display if result.ok else (result.return_display or result.llm_content)
        keywords = detect_failure_keywords(output)
        success = result.ok and not keywords
        return CommandOutcome(command=command, success=success, output=output, failure_keywords=keywords)

    def run(
        self,
        spec: CommandWithFallbacks | str,
        *,
        on_event: Optional[Callable[[Event], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """Execute ``spec`` and report success; progress goes to ``on_event``.

        Key exhaustion during failure analysis ends the run with a
        :class:`KeysExhausted` event and a ``False`` result.
        """
        runner = self.execute(spec, cancel=cancel)
        while True:
            try:
                event = next(runner)
            except StopIteration as stop:
                return bool(stop.value and stop.value.success)
            except KeysExhaustedError as error:
                LOGGER.warning("Command run stopped: %s", error)
                if on_event is not None:
                    on_event(KeysExhausted(str(error)))
                return False
            if on_event is not None:
                on_event(event)

    def execute(
        self, spec: CommandWithFallbacks | str, *, cancel: Optional[threading.Event] = None
    ) -> Generator[Event, None, CommandOutcome]:
        """Generator form: yields progress events and returns the final :class:`CommandOutcome`."""
        if isinstance(spec, str):
            spec = CommandWithFallbacks(primary_command=spec, description=spec)
        label = spec.description or spec.primary_command
        prefix = ""

        if spec.check_command:
            check = self.run_once(spec.check_command)
            if check.success:
                yield Progress(f"{spec.check_command}: available")
            else:
                yield Progress(f"{spec.check_command}: not available, trying fallbacks")
                prefix = yield from self._walk_fallbacks(spec, cancel)

        yield Progress(f"Running {label}: {spec.primary_command}")
        outcome = self.run_once(prefix + spec.primary_command)
        if outcome.success:
            yield Progress(f"Succeeded: {spec.primary_command}")
            _emit_command_event("command_succeeded", command=spec.primary_command, stage="primary")
            return outcome

        outcome.error_type = classify_error_type(outcome.output, "", spec.primary_command)
        yield Progress(f"Failed ({outcome.error_type.value}): {spec.primary_command}")
        _emit_command_event(
            "command_failed",
            command=spec.primary_command,
            error_type=outcome.error_type.value,
            keywords=outcome.failure_keywords,
        )

        markers = detect_markers(self._workspace)
        yield Progress("Analyzing failure")
        analysis = self._analyzer.analyze(spec.primary_command, outcome.output[-_OUTPUT_LIMIT:], outcome.error_type, markers)
        if analysis.reason:
            yield Progress(f"Analysis: {analysis.reason}")

        for plan in analysis.fallback_plans:
            if cancel is not None and cancel.is_set():
                yield Progress("Cancelled before the next fallback plan")
                return outcome
            yield Progress(f"Fallback plan: {plan.description or plan.command}")
            plan_outcome = self.run_once(prefix + plan.command)
            _emit_command_event("fallback_plan", command=plan.command, success=plan_outcome.success)
            if plan.should_retry_original:
                yield Progress(f"Retrying {spec.primary_command}")
                retry = self.run_once(prefix + spec.primary_command)
                if retry.success:
                    yield Progress(f"Succeeded after fallback: {spec.primary_command}")
                    _emit_command_event("command_succeeded", command=spec.primary_command, stage="retry")
                    return retry
                retry.error_type = classify_error_type(retry.output, "", spec.primary_command)
                outcome = retry
            elif plan_outcome.success and spec.primary_command in plan.command:
                yield Progress(f"Succeeded with alternative: {plan.command}")
                return plan_outcome

        if (
            not prefix
            and _is_python_command(spec.primary_command)
            and VENV_ACTIVATION not in spec.primary_command
            and (self._workspace / "venv").is_dir()
            and not (cancel is not None and cancel.is_set())
        ):
            yield Progress("Retrying inside the virtual environment")
            retry = self.run_once(VENV_ACTIVATION + spec.primary_command)
            if retry.success:
                _emit_command_event("command_succeeded", command=spec.primary_command, stage="venv")
                return retry
            outcome = retry

        yield Progress(f"Giving up on {spec.primary_command}")
        return outcome

    def _walk_fallbacks(
        self, spec: CommandWithFallbacks, cancel: Optional[threading.Event]
    ) -> Generator[Event, None, str]:
        """Try fallbacks in order until the availability check passes; return the command prefix."""
        prefix = ""
        if spec.install_check:
            installer = self.run_once(spec.install_check)
            if not installer.success:
                yield Progress(f"Installer check failed ({spec.install_check}); skipping fallbacks")
                return prefix
        for fallback in spec.fallbacks:
            if cancel is not None and cancel.is_set():
                break
            yield Progress(f"Fallback: {fallback}")
            result = self.run_once(prefix + fallback)
            _emit_command_event("availability_fallback", command=fallback, success=result.success)
            if _is_environment_setup(fallback) and (self._workspace / "venv").is_dir():
                prefix = VENV_ACTIVATION
            recheck = self.run_once(prefix + (spec.check_command or ""))
            if recheck.success:
                yield Progress(f"{spec.check_command}: available after {fallback}")
                return prefix
        yield Progress(f"{spec.check_command}: still unavailable after fallbacks")
        return prefix


def _is_environment_setup(command: str) -> bool:
    lowered = command.lower()
    return any(marker in lowered for marker in ("venv", "virtualenv", "activate"))


def _emit_command_event(event: str, **fields: Any) -> None:
    """Log structured telemetry for command execution."""
    payload: dict[str, Any] = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    payload.update(fields)
    try:
        message = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        message = json.dumps({key: str(value) for key, value in payload.items()}, separators=(",", ":"))
    TELEMETRY_LOGGER.info(message)
