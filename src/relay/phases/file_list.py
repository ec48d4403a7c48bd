"""File-list phase: decide which files the project needs (paths only)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath

from ..models.llm_client import LLMClient
from .base import PhaseContext, invoke_phase


@dataclass(slots=True)
class FileListRequest:
    """Input payload for the file-list phase."""

    user_request: str
    project_structure: str = ""
    existing: bool = False


@dataclass(slots=True)
class FileListResponse:
    files: list[str] = field(default_factory=list)


def render_prompt(request: FileListRequest) -> str:
    lines = ["## Request", request.user_request.strip(), ""]
    if request.existing:
        lines.extend(
            [
                "## Existing Project",
                request.project_structure.strip() or "(structure unavailable)",
                "",
                "## Task",
                "List the relative paths of the files that must be created or modified to satisfy the request.",
            ]
        )
    else:
        lines.extend(
            [
                "## Task",
                "List the relative paths of every file the new project needs, including manifests "
                "(package.json, requirements.txt) and tests. Do not include file contents.",
            ]
        )
    lines.append('Respond with {"files": ["path", ...]}.')
    return "\n".join(lines)


def normalize_paths(paths: list[str]) -> list[str]:
    """Drop duplicates, absolute paths, and paths escaping the workspace."""
    result: list[str] = []
    for raw in paths:
        candidate = raw.strip().strip("`").replace("\\", "/")
        while candidate.startswith("./"):
            candidate = candidate[2:]
        if not candidate or candidate.endswith("/"):
            continue
        path = PurePosixPath(candidate)
        if path.is_absolute() or ".." in path.parts:
            continue
        normalized = path.as_posix()
        if normalized not in result:
            result.append(normalized)
    return result


def run(request: FileListRequest, *, client: LLMClient, context: PhaseContext) -> FileListResponse:
    """Execute the file-list phase via the shared LLM client."""
    response = invoke_phase(
        "file_list",
        request,
        FileListResponse,
        prompt=render_prompt(request),
        client=client,
        context=context,
    )
    response.files = normalize_paths(response.files)
    return response
