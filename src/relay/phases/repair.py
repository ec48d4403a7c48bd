"""Repair phase: turn validation failures into exact-match edit patches."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..models.llm_client import LLMClient
from .base import PhaseContext, invoke_phase

_FAILURE_CHARS = 3_000


@dataclass(slots=True)
class RepairPatch:
    file_path: str
    old_string: str
    new_string: str
    confidence: float = 0.5


@dataclass(slots=True)
class RepairRequest:
    """Input payload for the repair phase."""

    user_request: str
    failures: list[str]
    project_structure: str = ""
    attempt: int = 1
    previous_attempts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RepairResponse:
    patches: list[RepairPatch] = field(default_factory=list)


def render_prompt(request: RepairRequest) -> str:
    lines = [
        "## Request",
        request.user_request.strip(),
        "",
        f"## Validation Failures (attempt {request.attempt})",
    ]
    for failure in request.failures:
        lines.append(failure[-_FAILURE_CHARS:])
        lines.append("")
    lines.extend(["## Project Structure", request.project_structure or "(empty)"])
    if request.previous_attempts:
        lines.extend(["", "## Earlier Repair Attempts", *[f"- {item}" for item in request.previous_attempts]])
    lines.extend(
        [
            "",
            "## Task",
            "Return patches as {file_path, old_string, new_string, confidence}. old_string must match the "
            "current file content exactly once; use an empty old_string only to create a missing file. "
            "confidence is between 0 and 1.",
        ]
    )
    return "\n".join(lines)


def run(request: RepairRequest, *, client: LLMClient, context: PhaseContext) -> RepairResponse:
    """Execute the repair phase; patches are ordered by descending confidence."""
    response = invoke_phase(
        "repair",
        request,
        RepairResponse,
        prompt=render_prompt(request),
        client=client,
        context=context,
    )
    response.patches = sorted(
        (patch for patch in response.patches if patch.file_path.strip()),
        key=lambda patch: patch.confidence,
        reverse=True,
    )
    return response
