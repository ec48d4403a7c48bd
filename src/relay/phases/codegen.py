"""Code-generation phase: produce one complete file per call."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..models.llm_client import LLMClient, strip_code_fence
from ..tools.project import summarize_source
from .base import PhaseContext, invoke_phase_text
from .metadata import FileMetadata

_PREVIEW_CHARS = 600
_EXISTING_CHARS = 12_000


@dataclass(slots=True)
class CodegenRequest:
    """Input payload for generating a single file."""

    user_request: str
    file: FileMetadata
    all_files: list[str] = field(default_factory=list)
    related_excerpts: list[str] = field(default_factory=list)
    existing_content: str = ""
    lint_findings: list[str] = field(default_factory=list)
    previous_content: str = ""


def build_excerpt(path: str, content: str) -> str:
    """Key symbols plus a truncated preview of an already generated file."""
    summary = summarize_source(path, content).render()
    preview = content[:_PREVIEW_CHARS]
    if len(content) > _PREVIEW_CHARS:
        preview += "\n... (truncated)"
    return f"{summary}\nPreview:\n{preview}"


def render_prompt(request: CodegenRequest) -> str:
    meta = request.file
    lines = [
        "## Request",
        request.user_request.strip(),
        "",
        f"## Target File: {meta.file_path}",
    ]
    if meta.description:
        lines.append(f"Description: {meta.description}")
    if meta.exports:
        lines.append(f"Must export: {', '.join(meta.exports)}")
    for entry in meta.imports:
        names = ", ".join(entry.names) if entry.names else "(module)"
        lines.append(f"Imports from {entry.source}: {names}")
    if meta.relationships:
        lines.append(f"Related files: {', '.join(meta.relationships)}")
    if request.all_files:
        lines.extend(["", "## Project Files", *[f"- {path}" for path in request.all_files]])
    if request.related_excerpts:
        lines.extend(["", "## Already Generated Files", *request.related_excerpts])
    if request.existing_content:
        lines.extend(["", "## Current Content", request.existing_content[:_EXISTING_CHARS]])
    if request.lint_findings:
        lines.extend(
            [
                "",
                "## Lint Findings To Fix",
                *[f"- {finding}" for finding in request.lint_findings],
                "",
                "## Previous Attempt",
                request.previous_content[:_EXISTING_CHARS],
            ]
        )
    lines.extend(["", f"Write the complete content of {meta.file_path}."])
    return "\n".join(lines)


def run(request: CodegenRequest, *, client: LLMClient, context: PhaseContext) -> str:
    """Generate the file content with any wrapping code fence removed."""
    text = invoke_phase_text(
        "codegen",
        request,
        prompt=render_prompt(request),
        client=client,
        context=context,
    )
    content = strip_code_fence(text)
    if content and not content.endswith("\n"):
        content += "\n"
    return content
