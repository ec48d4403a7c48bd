"""Workspace inspection: project markers, tree rendering, and code-structure extraction."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

__all__ = [
    "ProjectMarkers",
    "SourceSummary",
    "build_project_tree",
    "detect_markers",
    "extract_project_structure",
    "find_source_files",
    "summarize_source",
    "workspace_has_files",
]

SKIPPED_DIRS = {"node_modules", ".git", "venv", ".venv", "__pycache__", "build", "dist"}
SOURCE_EXTENSIONS = {
    ".kt", ".java", ".js", ".ts", ".jsx", ".tsx", ".py", ".go", ".rs", ".cpp", ".c", ".h",
    ".html", ".css", ".xml", ".json", ".yaml", ".yml", ".md",
}
MAX_STRUCTURE_FILES = 50
_WEB_FRAMEWORKS = ("express", "fastify", "koa", "flask", "fastapi", "django", "@nestjs/core", "next")

_IMPORT_PATTERNS = {
    "jvm": re.compile(r"^import\s+([^;\n]+);?", re.MULTILINE),
    "js": re.compile(r"^import\s+.*?from\s+['\"]([^'\"]+)['\"]|require\(\s*['\"]([^'\"]+)['\"]\s*\)", re.MULTILINE),
    "py": re.compile(r"^import\s+([^\n]+)|^from\s+(\S+)\s+import", re.MULTILINE),
}
_CLASS_PATTERNS = {
    "jvm": re.compile(r"(?:class|interface|enum)\s+(\w+)"),
    "js": re.compile(r"(?:class|interface|enum|type)\s+(\w+)"),
    "py": re.compile(r"^\s*class\s+(\w+)"),
}
_FUNCTION_PATTERNS = {
    "jvm": re.compile(r"\bfun\s+(\w+)\s*\(|(?:public|private|protected|static)\s+[\w<>\[\]]+\s+(\w+)\s*\("),
    "js": re.compile(r"(?:function|const|let|var)\s+(\w+)\s*(?:=\s*(?:async\s*)?\(|\()|(\w+)\s*:\s*function"),
    "py": re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\("),
}
_EXPORT_PATTERNS = {
    "js": re.compile(r"export\s+(?:default\s+)?(?:async\s+)?(?:function|class|const|let|var)?\s*(\w+)|module\.exports\.(\w+)"),
}
_FAMILIES = {
    ".kt": "jvm", ".java": "jvm",
    ".js": "js", ".ts": "js", ".jsx": "js", ".tsx": "js", ".mjs": "js",
    ".py": "py",
}


@dataclass(slots=True)
class ProjectMarkers:
    """Facts about the workspace that steer command detection and failure analysis."""

    has_package_json: bool = False
    has_requirements: bool = False
    has_pyproject: bool = False
    has_venv: bool = False
    is_jvm: bool = False
    web_framework: Optional[str] = None
    package_json: dict = field(default_factory=dict)

    @property
    def is_node(self) -> bool:
        return self.has_package_json

    @property
    def is_python(self) -> bool:
        return self.has_requirements or self.has_pyproject

    def describe(self) -> str:
        lines = [
            f"package.json: {'yes' if self.has_package_json else 'no'}",
            f"requirements.txt: {'yes' if self.has_requirements else 'no'}",
            f"pyproject.toml: {'yes' if self.has_pyproject else 'no'}",
            f"venv: {'yes' if self.has_venv else 'no'}",
        ]
        if self.is_jvm:
            lines.append("jvm build: yes")
        if self.web_framework:
            lines.append(f"web framework: {self.web_framework}")
        return "\n".join(lines)


def detect_markers(workspace: Path) -> ProjectMarkers:
    markers = ProjectMarkers(
        has_package_json=(workspace / "package.json").is_file(),
        has_requirements=(workspace / "requirements.txt").is_file(),
        has_pyproject=(workspace / "pyproject.toml").is_file(),
        has_venv=(workspace / "venv").is_dir() or (workspace / ".venv").is_dir(),
        is_jvm=any((workspace / name).exists() for name in ("build.gradle", "build.gradle.kts", "pom.xml")),
    )
    manifest_text = ""
    if markers.has_package_json:
        try:
            markers.package_json = json.loads((workspace / "package.json").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            markers.package_json = {}
        dependencies = {}
        for key in ("dependencies", "devDependencies"):
            section = markers.package_json.get(key)
            if isinstance(section, dict):
                dependencies.update(section)
        manifest_text = " ".join(dependencies)
    if markers.has_requirements:
        manifest_text += " " + _safe_read(workspace / "requirements.txt").lower()
    if markers.has_pyproject:
        manifest_text += " " + _safe_read(workspace / "pyproject.toml").lower()
    tokens = set(re.split(r"[\s=<>~!,\[\]\"']+", manifest_text))
    for framework in _WEB_FRAMEWORKS:
        if framework in tokens:
            markers.web_framework = framework
            break
    return markers


def workspace_has_files(workspace: Path) -> bool:
    """True when the workspace holds at least one non-hidden top-level file."""
    if not workspace.is_dir():
        return False
    return any(entry.is_file() and not entry.name.startswith(".") for entry in workspace.iterdir())


def build_project_tree(root: Path, *, max_depth: int = 3, _prefix: str = "", _depth: int = 0) -> str:
    if _depth >= max_depth or not root.is_dir():
        return ""
    entries = sorted(
        (entry for entry in root.iterdir() if not entry.name.startswith(".")),
        key=lambda entry: (not entry.is_dir(), entry.name),
    )
    lines: list[str] = []
    for index, entry in enumerate(entries):
        last = index == len(entries) - 1
        lines.append(f"{_prefix}{'└── ' if last else '├── '}{entry.name}\n")
        if entry.is_dir() and entry.name not in SKIPPED_DIRS:
            lines.append(
                build_project_tree(
                    entry, max_depth=max_depth, _prefix=_prefix + ("    " if last else "│   "), _depth=_depth + 1
                )
            )
    return "".join(lines)


def find_source_files(root: Path) -> Iterator[Path]:
    if not root.is_dir():
        return
    for entry in sorted(root.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            if entry.name not in SKIPPED_DIRS:
                yield from find_source_files(entry)
        elif entry.suffix.lower() in SOURCE_EXTENSIONS:
            yield entry


@dataclass(slots=True)
class SourceSummary:
    """Imports, exports, classes, and functions found in one file (line numbers are 1-based)."""

    path: str
    imports: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    classes: list[tuple[str, int]] = field(default_factory=list)
    functions: list[tuple[str, int]] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"=== {self.path} ==="]
        if self.imports:
            lines.append(f"Imports: {', '.join(self.imports)}")
        if self.exports:
            lines.append(f"Exports: {', '.join(self.exports)}")
        lines.extend(f"Class: {name} (line {line})" for name, line in self.classes)
        lines.extend(f"Function: {name} (line {line})" for name, line in self.functions)
        return "\n".join(lines)


def summarize_source(path: str, content: str) -> SourceSummary:
    summary = SourceSummary(path=path)
    family = _FAMILIES.get(Path(path).suffix.lower())
    if family is None:
        return summary
    for match in _IMPORT_PATTERNS[family].finditer(content):
        value = next((group for group in match.groups() if group), "")
        if value:
            summary.imports.append(value.strip())
    for number, line in enumerate(content.splitlines(), start=1):
        class_match = _CLASS_PATTERNS[family].search(line)
        if class_match:
            summary.classes.append((class_match.group(1), number))
            continue
        function_match = _FUNCTION_PATTERNS[family].search(line)
        if function_match:
            name = next((group for group in function_match.groups() if group), "")
            if name:
                summary.functions.append((name, number))
    if family == "js":
        for match in _EXPORT_PATTERNS["js"].finditer(content):
            name = next((group for group in match.groups() if group), "")
            if name and name not in summary.exports:
                summary.exports.append(name)
    elif family == "py":
        summary.exports = [name for name, _ in summary.classes + summary.functions if not name.startswith("_")]
    return summary


def extract_project_structure(workspace: Path, *, max_files: int = MAX_STRUCTURE_FILES) -> str:
    """Render the tree plus per-file code structure for at most ``max_files`` files."""
    if not workspace.is_dir():
        return ""
    sections = [f"**Project Tree:**\n{build_project_tree(workspace)}", "**Files with Code Structure:**"]
    for index, path in enumerate(find_source_files(workspace)):
        if index >= max_files:
            break
        content = _safe_read(path)
        sections.append(summarize_source(path.relative_to(workspace).as_posix(), content).render())
    return "\n\n".join(sections)


def _safe_read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
