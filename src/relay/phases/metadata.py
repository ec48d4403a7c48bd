"""Metadata phase: per-file exports, imports, and relationships.

The answer must describe exactly the files chosen by the file-list phase. A
mismatch earns one retry with a stricter prompt; a second mismatch fails the
phase. Coherence problems (dangling relationships, imports without a matching
export) are only logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from ..errors import PhaseFailure
from ..models.llm_client import LLMClient
from .base import PhaseContext, invoke_phase

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FileImport:
    source: str
    names: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FileMetadata:
    file_path: str
    description: str = ""
    exports: list[str] = field(default_factory=list)
    imports: list[FileImport] = field(default_factory=list)
    relationships: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MetadataRequest:
    """Input payload for the metadata phase."""

    user_request: str
    files: list[str]
    mismatch_retries: int = 1


@dataclass(slots=True)
class MetadataResponse:
    files: list[FileMetadata] = field(default_factory=list)


def render_prompt(request: MetadataRequest, *, strict: bool = False) -> str:
    listing = "\n".join(f"- {path}" for path in request.files)
    lines = [
        "## Request",
        request.user_request.strip(),
        "",
        "## Files",
        listing,
        "",
        "## Task",
        "For every file above return its file_path, a one-sentence description, the symbols it exports, "
        "its imports as {source, names} (source is a file path from the list or an external package), "
        "and relationships (paths of other listed files it depends on).",
    ]
    if strict:
        lines.extend(
            [
                "",
                "## Correction",
                f"Your previous answer did not cover the file list. Return exactly {len(request.files)} entries, "
                "one per listed path, using the paths verbatim. Do not add or omit files.",
            ]
        )
    return "\n".join(lines)


def count_mismatch(expected: list[str], response: MetadataResponse) -> str:
    """Describe how ``response`` deviates from ``expected``; empty when it matches."""
    described = [item.file_path for item in response.files]
    missing = [path for path in expected if path not in described]
    extra = [path for path in described if path not in expected]
    if len(described) == len(expected) and not missing:
        return ""
    problems = [f"expected {len(expected)} entries, got {len(described)}"]
    if missing:
        problems.append(f"missing: {', '.join(missing)}")
    if extra:
        problems.append(f"unexpected: {', '.join(extra)}")
    return "; ".join(problems)


def check_coherence(metadata: list[FileMetadata]) -> list[str]:
    """Return (and log) cross-file consistency warnings."""
    known = {item.file_path: item for item in metadata}
    stems = {_module_key(path): path for path in known}
    warnings: list[str] = []
    for item in metadata:
        for related in item.relationships:
            if related not in known:
                warnings.append(f"{item.file_path}: relationship '{related}' is not a generated file")
        for entry in item.imports:
            target = known.get(entry.source) or known.get(stems.get(_module_key(entry.source), ""))
            if target is None:
                continue
            for name in entry.names:
                if name not in target.exports:
                    warnings.append(f"{item.file_path}: imports '{name}' from {target.file_path}, which does not export it")
    for warning in warnings:
        LOGGER.warning("Metadata coherence: %s", warning)
    return warnings


def _module_key(path: str) -> str:
    cleaned = path.strip().lstrip("./").replace("\\", "/")
    pure = PurePosixPath(cleaned)
    return pure.with_suffix("").as_posix().replace("/", ".") if pure.suffix else cleaned.replace("/", ".")


def run(request: MetadataRequest, *, client: LLMClient, context: PhaseContext) -> MetadataResponse:
    """Execute the metadata phase, retrying once with a stronger prompt on a count mismatch."""
    strict = False
    for attempt in range(request.mismatch_retries + 1):
        response = invoke_phase(
            "metadata",
            request,
            MetadataResponse,
            prompt=render_prompt(request, strict=strict),
            client=client,
            context=context,
        )
        mismatch = count_mismatch(request.files, response)
        if not mismatch:
            check_coherence(response.files)
            return response
        LOGGER.warning("Metadata attempt %d mismatched the file list: %s", attempt + 1, mismatch)
        strict = True
    raise PhaseFailure("metadata", f"file metadata does not match the file list ({mismatch})")
