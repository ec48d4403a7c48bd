"""Routing logic that maps phase requests to their concrete implementations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from .commands import FailureAnalysis
from .models.llm_client import LLMClient
from .phases import PhaseName
from .phases.base import PhaseContext
from .phases.codegen import CodegenRequest, run as run_codegen
from .phases.commands import CommandsRequest, CommandsResponse, run as run_commands
from .phases.failure_analysis import FailureAnalysisRequest, run as run_failure_analysis
from .phases.file_list import FileListRequest, FileListResponse, run as run_file_list
from .phases.metadata import MetadataRequest, MetadataResponse, run as run_metadata
from .phases.repair import RepairRequest, RepairResponse, run as run_repair

PhaseRunner = Callable[..., Any]


@dataclass(slots=True)
class PhaseEntry:
    """Metadata describing how to execute a single phase."""

    request_model: type[Any]
    response_model: type[Any]
    runner: PhaseRunner


class PhaseRouter:
    """Dispatch table mapping phase names to their concrete handlers."""

    def __init__(self, *, client: LLMClient, context: PhaseContext) -> None:
        self._client = client
        self._context = context
        self._registry: Dict[PhaseName, PhaseEntry] = {
            PhaseName.FILE_LIST: PhaseEntry(FileListRequest, FileListResponse, run_file_list),
            PhaseName.METADATA: PhaseEntry(MetadataRequest, MetadataResponse, run_metadata),
            PhaseName.CODEGEN: PhaseEntry(CodegenRequest, str, run_codegen),
            PhaseName.COMMANDS: PhaseEntry(CommandsRequest, CommandsResponse, run_commands),
            PhaseName.REPAIR: PhaseEntry(RepairRequest, RepairResponse, run_repair),
            PhaseName.FAILURE_ANALYSIS: PhaseEntry(FailureAnalysisRequest, FailureAnalysis, run_failure_analysis),
        }

    @property
    def client(self) -> LLMClient:
        return self._client

    @property
    def context(self) -> PhaseContext:
        return self._context

    def dispatch(self, phase: PhaseName | str, payload: Any) -> Any:
        """Coerce the payload into the expected request type and execute the phase."""
        phase_name = self._normalize_phase(phase)
        entry = self._registry[phase_name]
        request = self._coerce_payload(payload, entry.request_model)
        return entry.runner(request, client=self._client, context=self._context)

    def available_phases(self) -> Iterable[PhaseName]:
        """Return the phases currently registered with the router."""
        return self._registry.keys()

    @staticmethod
    def _normalize_phase(phase: PhaseName | str) -> PhaseName:
        """Resolve ``phase`` into a concrete ``PhaseName`` enum member."""
        if isinstance(phase, PhaseName):
            return phase
        try:
            return PhaseName(phase)
        except ValueError as error:
            valid = ", ".join(item.value for item in PhaseName)
            raise KeyError(f"Unknown phase '{phase}'. Expected one of: {valid}") from error

    @staticmethod
    def _coerce_payload(payload: Any, request_type: type[Any]) -> Any:
        """Validate or convert ``payload`` into the ``request_type`` instance."""
        if isinstance(payload, request_type):
            return payload

        adapter = TypeAdapter(request_type)
        try:
            return adapter.validate_python(payload)
        except ValidationError as error:
            raise ValueError(f"Payload for {request_type.__name__} did not validate: {error}") from error
