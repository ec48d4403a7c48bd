"""Failure-analysis phase: ask the model why a command failed and how to recover."""

from __future__ import annotations

from dataclasses import dataclass

from ..commands import AnalysisRunner, ErrorType, FailureAnalysis
from ..models.llm_client import LLMClient
from ..tools.project import ProjectMarkers
from .base import PhaseContext, invoke_phase


@dataclass(slots=True)
class FailureAnalysisRequest:
    """Input payload for the failure-analysis phase."""

    command: str
    output: str
    error_type: str = ErrorType.UNKNOWN.value
    markers: str = ""


def render_prompt(request: FailureAnalysisRequest) -> str:
    return "\n".join(
        [
            "## Failed Command",
            request.command,
            "",
            f"## Classification\n{request.error_type}",
            "",
            "## Output (tail)",
            request.output or "(no output)",
            "",
            "## Project Markers",
            request.markers or "(none)",
            "",
            "## Task",
            "Explain the failure in one sentence (reason) and propose up to two fallback_plans, each "
            "{command, description, should_retry_original}. Set should_retry_original when the plan "
            "prepares the environment and the original command should then be run again.",
        ]
    )


def run(request: FailureAnalysisRequest, *, client: LLMClient, context: PhaseContext) -> FailureAnalysis:
    """Execute the failure-analysis phase via the shared LLM client."""
    return invoke_phase(
        "failure_analysis",
        request,
        FailureAnalysis,
        prompt=render_prompt(request),
        client=client,
        context=context,
    )


def analysis_runner(client: LLMClient, context: PhaseContext) -> AnalysisRunner:
    """Bind this phase into the callable shape :class:`FailureAnalyzer` expects."""

    def _run(command: str, output: str, error_type: ErrorType, markers: ProjectMarkers) -> FailureAnalysis:
        request = FailureAnalysisRequest(command, output, error_type.value, markers.describe())
        return run(request, client=client, context=context)

    return _run
