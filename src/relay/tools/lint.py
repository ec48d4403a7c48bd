"""Per-language syntax checks run after each generated file is written."""

from __future__ import annotations

import ast
import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

__all__ = ["LintFinding", "format_findings", "lint_file"]


@dataclass(slots=True, frozen=True)
class LintFinding:
    path: str
    line: Optional[int]
    message: str

    def render(self) -> str:
        location = f"{self.path}:{self.line}" if self.line else self.path
        return f"{location} :: {self.message}"


def lint_file(path: Path, *, display_path: Optional[str] = None) -> list[LintFinding]:
    """Return syntax findings for ``path``; unsupported extensions yield nothing."""
    label = display_path or path.name
    if not path.is_file():
        return [LintFinding(label, None, "file does not exist")]
    suffix = path.suffix.lower()
    try:
        source = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as error:
        return [LintFinding(label, None, f"not valid UTF-8: {error}")]

    if suffix == ".py":
        try:
            ast.parse(source, filename=label)
        except SyntaxError as error:
            return [LintFinding(label, error.lineno, error.msg)]
        return []
    if suffix == ".json":
        try:
            json.loads(source)
        except json.JSONDecodeError as error:
            return [LintFinding(label, error.lineno, error.msg)]
        return []
    if suffix in {".yaml", ".yml"}:
        try:
            yaml.safe_load(source)
        except yaml.YAMLError as error:
            mark = getattr(error, "problem_mark", None)
            line = mark.line + 1 if mark is not None else None
            return [LintFinding(label, line, str(getattr(error, "problem", None) or error))]
        return []
    if suffix in {".js", ".mjs", ".cjs"}:
        return _node_check(path, label)
    return []


def _node_check(path: Path, label: str) -> list[LintFinding]:
    node = shutil.which("node")
    if node is None:
        return []
    process = subprocess.run(  # noqa: S603 - fixed executable
        [node, "--check", str(path)],
        check=False,
        capture_output=True,
        text=True,
    )
    if process.returncode == 0:
        return []
    line: Optional[int] = None
    first = (process.stderr or "").strip().splitlines()
    for candidate in first:
        if candidate.startswith(str(path)) and ":" in candidate:
            tail = candidate.rsplit(":", 1)[-1]
            if tail.isdigit():
                line = int(tail)
                break
    message = next((item for item in first if "Error" in item), first[0] if first else "node --check failed")
    return [LintFinding(label, line, message.strip())]


def format_findings(findings: list[LintFinding]) -> str:
    return "\n".join(finding.render() for finding in findings)
