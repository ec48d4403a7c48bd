"""Tool integrations exposed to the model and the pipeline."""

from .bridge import ToolExecutionBridge
from .builtin import SHELL_TOOL, WRITE_TODOS_TOOL, TodoBoard, default_registry
from .lint import LintFinding, lint_file
from .project import ProjectMarkers, detect_markers, extract_project_structure, workspace_has_files
from .registry import Tool, ToolInvocation, ToolParams, ToolRegistry
from .shell import ShellExecutor, ShellResult
from .smoke import SmokeResult, run_smoke_test

__all__ = [
    "LintFinding",
    "ProjectMarkers",
    "SHELL_TOOL",
    "ShellExecutor",
    "ShellResult",
    "SmokeResult",
    "TodoBoard",
    "Tool",
    "ToolExecutionBridge",
    "ToolInvocation",
    "ToolParams",
    "ToolRegistry",
    "WRITE_TODOS_TOOL",
    "default_registry",
    "detect_markers",
    "extract_project_structure",
    "lint_file",
    "run_smoke_test",
    "workspace_has_files",
]
