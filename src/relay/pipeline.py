"""Multi-phase generation pipeline used when streaming is disabled.

The pipeline picks a :class:`PhaseStrategy` from the detected intent, reports
progress through ``write_todos`` and :class:`Progress` events, writes files one
at a time through the tool bridge, runs project commands through the fallback
resolver, and finishes with a bounded validation and repair loop. Like the turn
controller, :meth:`GenerationPipeline.run` yields exactly one terminal event.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generator, Iterator, Optional

from .commands import FailureAnalyzer, FallbackResolver
from .errors import KeysExhaustedError, PhaseFailure, RelayError
from .events import Done, ErrorEvent, Event, KeysExhausted, Progress, TodosUpdated, ToolCallStarted, ToolResultEvent
from .intent import IntentType, detect_intent, enhance_user_intent
from .models.messages import FinishReason, Todo, TodoStatus, ToolResult, synthesize_call_id
from .phases import PhaseName
from .phases.codegen import CodegenRequest, build_excerpt
from .phases.commands import CommandKind, CommandsRequest, DetectedCommand
from .phases.failure_analysis import analysis_runner
from .phases.file_list import FileListRequest
from .phases.metadata import FileMetadata, MetadataRequest
from .phases.repair import RepairRequest
from .router import PhaseRouter
from .tools.bridge import ToolExecutionBridge
from .tools.builtin import WRITE_TODOS_TOOL
from .tools.lint import lint_file
from .tools.project import ProjectMarkers, detect_markers, extract_project_structure, workspace_has_files
from .tools.smoke import run_smoke_test

__all__ = ["GenerationPipeline", "PhaseStrategy", "PipelineSettings", "STRATEGIES", "ValidationReport"]

LOGGER = logging.getLogger(__name__)

_MAX_RELATED_EXCERPTS = 4
_DEFAULT_PORTS = {"express": 3000, "fastify": 3000, "koa": 3000, "next": 3000, "@nestjs/core": 3000, "flask": 5000}


class PipelineCancelled(RelayError):
    """Raised internally when the caller's cancel signal is observed."""


@dataclass(slots=True)
class PipelineSettings:
    max_repair_attempts: int = 5
    metadata_retries: int = 1
    max_ai_fallback_plans: int = 2
    smoke_tests: bool = True
    smoke_test_port: Optional[int] = None
    smoke_startup_timeout: float = 20.0


@dataclass(slots=True, frozen=True)
class PhaseStrategy:
    """Ordered steps the pipeline runs for one intent."""

    intent: IntentType
    steps: tuple[str, ...]


STEP_LABELS = {
    "inspect": "Inspect the existing project",
    "file_list": "Plan the project files",
    "metadata": "Describe file interfaces",
    "codegen": "Generate code",
    "commands": "Detect and run project commands",
    "validation": "Validate and repair",
}

STRATEGIES = {
    IntentType.CREATE_NEW: PhaseStrategy(
        IntentType.CREATE_NEW, ("file_list", "metadata", "codegen", "commands", "validation")
    ),
    IntentType.DEBUG_UPGRADE: PhaseStrategy(
        IntentType.DEBUG_UPGRADE, ("inspect", "file_list", "codegen", "commands", "validation")
    ),
    IntentType.TEST_ONLY: PhaseStrategy(IntentType.TEST_ONLY, ("commands", "validation")),
}


@dataclass(slots=True)
class ValidationReport:
    passed: bool
    attempts: int
    failures: int = 0
    outstanding: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _RunState:
    request: str
    strategy: PhaseStrategy
    todos: list[Todo]
    files: list[str] = field(default_factory=list)
    metadata: list[FileMetadata] = field(default_factory=list)
    generated: dict[str, str] = field(default_factory=dict)
    commands: list[DetectedCommand] = field(default_factory=list)
    markers: ProjectMarkers = field(default_factory=ProjectMarkers)
    structure: str = ""
    report: Optional[ValidationReport] = None


class GenerationPipeline:
    """Sequential file-list, metadata, codegen, command, and validation phases."""

    def __init__(
        self,
        router: PhaseRouter,
        bridge: ToolExecutionBridge,
        *,
        settings: Optional[PipelineSettings] = None,
        resolver: Optional[FallbackResolver] = None,
    ) -> None:
        self._router = router
        self._bridge = bridge
        self._settings = settings or PipelineSettings()
        self._workspace = router.context.workspace
        self._resolver = resolver or FallbackResolver(
            bridge,
            self._workspace,
            analyzer=FailureAnalyzer(
                analysis_runner(router.client, router.context), max_plans=self._settings.max_ai_fallback_plans
            ),
        )

    @property
    def workspace(self) -> Path:
        return self._workspace

    def run(
        self,
        user_message: str,
        *,
        intent: Optional[IntentType] = None,
        memory_summary: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[Event]:
        """Run the strategy for ``intent`` (detected when omitted) and yield events."""
        if intent is None:
            intent = detect_intent(user_message, memory_summary, workspace_has_files(self._workspace))
        strategy = STRATEGIES[intent]
        state = _RunState(
            request=enhance_user_intent(user_message, intent, memory_summary),
            strategy=strategy,
            todos=[Todo(STEP_LABELS[step]) for step in strategy.steps],
        )
        yield Progress(f"Intent: {intent.value}")
        LOGGER.info("Pipeline starting with strategy %s", intent.value)

        try:
            for index, step in enumerate(strategy.steps):
                self._check_cancel(cancel)
                yield from self._mark(state, index, TodoStatus.IN_PROGRESS)
                yield from self._run_step(step, state, cancel)
                yield from self._mark(state, index, TodoStatus.COMPLETED)
        except PipelineCancelled:
            yield ErrorEvent("Request cancelled.")
            return
        except KeysExhaustedError as error:
            yield KeysExhausted(str(error))
            return
        except PhaseFailure as error:
            LOGGER.warning("Pipeline stopped: %s", error)
            yield ErrorEvent(str(error), phase=error.phase)
            return
        except RelayError as error:
            LOGGER.warning("Pipeline stopped: %s", error)
            yield ErrorEvent(str(error))
            return

        yield Done(FinishReason.STOP, self._summary(state))

    def _run_step(self, step: str, state: _RunState, cancel: Optional[threading.Event]) -> Generator[Event, None, None]:
        if step == "inspect":
            yield from self._inspect(state)
        elif step == "file_list":
            yield from self._file_list(state)
        elif step == "metadata":
            yield from self._metadata(state)
        elif step == "codegen":
            yield from self._codegen(state, cancel)
        elif step == "commands":
            yield from self._commands(state, cancel)
        elif step == "validation":
            state.report = yield from self._validate(state, cancel)
        else:
            raise ValueError(f"Unknown pipeline step: {step}")

    def _inspect(self, state: _RunState) -> Generator[Event, None, None]:
        state.structure = extract_project_structure(self._workspace)
        state.markers = detect_markers(self._workspace)
        if not state.structure:
            yield Progress("Workspace is empty; nothing to inspect")
            return
        source_files = state.structure.count("\n=== ")
        yield Progress(f"Extracted project structure ({source_files} source file(s))")

    def _file_list(self, state: _RunState) -> Generator[Event, None, None]:
        existing = state.strategy.intent is IntentType.DEBUG_UPGRADE
        request = FileListRequest(
            user_request=state.request,
            project_structure=state.structure if existing else "",
            existing=existing,
        )
        response = self._router.dispatch(PhaseName.FILE_LIST, request)
        if not response.files:
            raise PhaseFailure(PhaseName.FILE_LIST.value, "model returned no files")
        state.files = response.files
        if "metadata" not in state.strategy.steps:
            state.metadata = [
                FileMetadata(file_path=path, description="Modify to satisfy the request") for path in state.files
            ]
        yield Progress(f"Planned {len(state.files)} file(s): {', '.join(state.files)}")

    def _metadata(self, state: _RunState) -> Generator[Event, None, None]:
        request = MetadataRequest(
            user_request=state.request,
            files=list(state.files),
            mismatch_retries=self._settings.metadata_retries,
        )
        response = self._router.dispatch(PhaseName.METADATA, request)
        by_path = {item.file_path: item for item in response.files}
        state.metadata = [by_path[path] for path in state.files]
        yield Progress(f"Described {len(state.metadata)} file(s)")

    def _codegen(self, state: _RunState, cancel: Optional[threading.Event]) -> Generator[Event, None, None]:
        for meta in state.metadata:
            self._check_cancel(cancel)
            yield Progress(f"Generating {meta.file_path}")
            target = self._workspace / meta.file_path
            existing = _read_text(target) if target.is_file() else ""
            request = CodegenRequest(
                user_request=state.request,
                file=meta,
                all_files=list(state.files),
                related_excerpts=self._related_excerpts(meta, state.generated),
                existing_content=existing,
            )
            content = self._router.dispatch(PhaseName.CODEGEN, request)
            yield from self._write(meta.file_path, content)

            findings = [finding.render() for finding in lint_file(target, display_path=meta.file_path)]
            if findings:
                yield Progress(f"Lint found {len(findings)} issue(s) in {meta.file_path}; requesting a fix")
                request.lint_findings = findings
                request.previous_content = content
                content = self._router.dispatch(PhaseName.CODEGEN, request)
                yield from self._write(meta.file_path, content)
                remaining = lint_file(target, display_path=meta.file_path)
                if remaining:
                    LOGGER.warning("Lint issues remain in %s after one fix attempt", meta.file_path)
                    yield Progress(f"{len(remaining)} lint issue(s) remain in {meta.file_path}")
            state.generated[meta.file_path] = content

    def _commands(self, state: _RunState, cancel: Optional[threading.Event]) -> Generator[Event, None, None]:
        state.markers = detect_markers(self._workspace)
        request = CommandsRequest(
            user_request=state.request,
            project_structure=extract_project_structure(self._workspace),
            markers=state.markers.describe(),
        )
        response = self._router.dispatch(PhaseName.COMMANDS, request)
        state.commands = response.commands
        yield Progress(f"Detected {len(state.commands)} command(s)")
        for command in state.commands:
            if command.kind is not CommandKind.INSTALL:
                continue
            self._check_cancel(cancel)
            outcome = yield from self._resolver.execute(command.to_fallback_spec(), cancel=cancel)
            if not outcome.success:
                yield Progress(f"Install step failed: {command.command}")

    def _validate(self, state: _RunState, cancel: Optional[threading.Event]) -> Generator[Event, None, ValidationReport]:
        checks = [item for item in state.commands if item.kind in (CommandKind.BUILD, CommandKind.TEST)]
        server = next((item for item in state.commands if item.kind is CommandKind.RUN), None)
        smoke_port = self._smoke_port(state.markers) if server is not None else None
        if not checks and smoke_port is None:
            yield Progress("No test, build, or smoke commands detected; skipping validation")
            return ValidationReport(passed=True, attempts=0)

        report = ValidationReport(passed=False, attempts=0)
        history: list[str] = []
        for attempt in range(1, self._settings.max_repair_attempts + 1):
            self._check_cancel(cancel)
            report.attempts = attempt
            yield Progress(f"Validation attempt {attempt}/{self._settings.max_repair_attempts}")
            failures: list[str] = []
            for check in checks:
                outcome = yield from self._resolver.execute(check.to_fallback_spec(), cancel=cancel)
                if not outcome.success:
                    failures.append(f"$ {check.command}\n{outcome.output}")
            if server is not None and smoke_port is not None:
                yield Progress(f"Smoke testing {server.command} on port {smoke_port}")
                smoke = run_smoke_test(
                    server.command,
                    self._workspace,
                    port=smoke_port,
                    startup_timeout=self._settings.smoke_startup_timeout,
                )
                if not smoke.ok:
                    failures.append(f"{smoke.summary()}\n{smoke.output}")

            if not failures:
                report.passed = True
                report.outstanding = []
                yield Progress(f"Validation passed on attempt {attempt}")
                return report

            report.failures += len(failures)
            report.outstanding = failures
            if attempt >= self._settings.max_repair_attempts:
                break
            self._check_cancel(cancel)
            repair = self._router.dispatch(
                PhaseName.REPAIR,
                RepairRequest(
                    user_request=state.request,
                    failures=failures,
                    project_structure=extract_project_structure(self._workspace),
                    attempt=attempt,
                    previous_attempts=list(history),
                ),
            )
            applied = 0
            for patch in repair.patches:
                result = yield from self._call_tool(
                    "edit",
                    {"file_path": patch.file_path, "old_string": patch.old_string, "new_string": patch.new_string},
                )
                applied += 1 if result.ok else 0
            history.append(f"attempt {attempt}: {applied}/{len(repair.patches)} patch(es) applied")
            yield Progress(f"Applied {applied} of {len(repair.patches)} repair patch(es)")

        yield Progress(f"Validation still failing after {report.attempts} attempt(s)")
        return report

    def _write(self, path: str, content: str) -> Generator[Event, None, None]:
        result = yield from self._call_tool("write_file", {"file_path": path, "content": content})
        if not result.ok:
            raise PhaseFailure(PhaseName.CODEGEN.value, f"could not write {path}: {result.llm_content}")

    def _call_tool(self, name: str, args: dict[str, Any]) -> Generator[Event, None, ToolResult]:
        call_id = synthesize_call_id(name)
        yield ToolCallStarted(name, args, call_id)
        result = self._bridge.execute(name, args)
        yield ToolResultEvent(name, result, call_id)
        return result

    def _mark(self, state: _RunState, index: int, status: TodoStatus) -> Generator[Event, None, None]:
        state.todos[index].status = status
        payload = {"todos": [{"description": todo.description, "status": todo.status.value} for todo in state.todos]}
        result = yield from self._call_tool(WRITE_TODOS_TOOL, payload)
        if not result.ok:
            LOGGER.warning("write_todos failed: %s", result.llm_content)
        yield TodosUpdated(tuple(Todo(todo.description, todo.status) for todo in state.todos))

    def _related_excerpts(self, meta: FileMetadata, generated: dict[str, str]) -> list[str]:
        wanted = list(meta.relationships) + [entry.source for entry in meta.imports]
        related = [path for path in wanted if path in generated]
        if not related:
            related = list(generated)[-_MAX_RELATED_EXCERPTS:]
        excerpts: list[str] = []
        for path in dict.fromkeys(related):
            excerpts.append(build_excerpt(path, generated[path]))
            if len(excerpts) >= _MAX_RELATED_EXCERPTS:
                break
        return excerpts

    def _smoke_port(self, markers: ProjectMarkers) -> Optional[int]:
        if not self._settings.smoke_tests or markers.web_framework is None or markers.is_jvm:
            return None
        if self._settings.smoke_test_port is not None:
            return self._settings.smoke_test_port
        return _DEFAULT_PORTS.get(markers.web_framework, 8000)

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled("Request cancelled.")

    @staticmethod
    def _summary(state: _RunState) -> str:
        parts = [f"Strategy {state.strategy.intent.value}"]
        if state.generated:
            parts.append(f"wrote {len(state.generated)} file(s)")
        if state.commands:
            parts.append(f"detected {len(state.commands)} command(s)")
        report = state.report
        if report is not None:
            if report.passed:
                parts.append(f"validation passed after {report.attempts} attempt(s)")
            else:
                parts.append(
                    f"validation still failing after {report.attempts} attempt(s) "
                    f"({len(report.outstanding)} outstanding failure(s))"
                )
        return "; ".join(parts) + "."


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
