"""Built-in tools: shell, file access, exact-match edits, and the todo list."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional

from ..models.messages import Todo, TodoStatus, ToolError, ToolErrorKind, ToolResult
from .registry import Tool, ToolParams, ToolRegistry
from .shell import ShellExecutor

__all__ = [
    "EditTool",
    "ListDirectoryTool",
    "ReadFileTool",
    "SHELL_TOOL",
    "ShellTool",
    "TodoBoard",
    "WRITE_TODOS_TOOL",
    "WriteFileTool",
    "WriteTodosTool",
    "default_registry",
    "resolve_in_workspace",
]

SHELL_TOOL = "shell"
WRITE_TODOS_TOOL = "write_todos"
_MAX_READ_CHARS = 200_000


def resolve_in_workspace(workspace: Path, candidate: str) -> Path:
    """Resolve ``candidate`` against ``workspace`` and refuse paths that escape it."""
    root = workspace.resolve()
    path = Path(candidate)
    resolved = (path if path.is_absolute() else root / path).resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError(f"Path {candidate!r} is outside the workspace {root}")
    return resolved


class ShellParams(ToolParams):
    command: str
    dir_path: Optional[str] = None
    description: Optional[str] = None


class ShellTool(Tool):
    name = SHELL_TOOL
    description = "Execute a shell command in the workspace and return its combined stdout/stderr."
    params_model = ShellParams

    def __init__(self, workspace: Path, executor: Optional[ShellExecutor] = None) -> None:
        self._workspace = workspace
        self._executor = executor or ShellExecutor()

    def run(self, params: ShellParams) -> ToolResult:
        cwd = resolve_in_workspace(self._workspace, params.dir_path) if params.dir_path else self._workspace
        result = self._executor.run(params.command, cwd)
        exit_label = "timeout" if result.timed_out else str(result.exit_code)
        llm_content = f"Command: {params.command}\nDirectory: {cwd}\nExit Code: {exit_label}\nOutput:\n{result.output}"
        error = None
        if result.error:
            error = ToolError(f"Command exited with {exit_label}", ToolErrorKind.EXECUTION_FAILED)
        return ToolResult(llm_content=llm_content, return_display=result.output, error=error)


class ReadFileParams(ToolParams):
    file_path: str
    offset: Optional[int] = None
    limit: Optional[int] = None


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a text file from the workspace, optionally a line window (offset is 0-based)."
    params_model = ReadFileParams

    def __init__(self, workspace: Path) -> None:
        self._workspace = workspace

    def run(self, params: ReadFileParams) -> ToolResult:
        path = resolve_in_workspace(self._workspace, params.file_path)
        if not path.is_file():
            return ToolResult.failure(f"File not found: {params.file_path}", ToolErrorKind.EXECUTION_FAILED)
        text = path.read_text(encoding="utf-8", errors="replace")
        if params.offset is not None or params.limit is not None:
            lines = text.splitlines()
            start = max(0, params.offset or 0)
            end = start + params.limit if params.limit else len(lines)
            text = "\n".join(lines[start:end])
        if len(text) > _MAX_READ_CHARS:
            text = text[:_MAX_READ_CHARS] + "\n... [truncated]"
        return ToolResult(llm_content=text, return_display=f"Read {params.file_path}")


class WriteFileParams(ToolParams):
    file_path: str
    content: str


class WriteFileTool(Tool):
    name = "write_file"
    description = "Create or overwrite a file in the workspace with the given content."
    params_model = WriteFileParams

    def __init__(self, workspace: Path) -> None:
        self._workspace = workspace

    def run(self, params: WriteFileParams) -> ToolResult:
        path = resolve_in_workspace(self._workspace, params.file_path)
        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(params.content, encoding="utf-8")
        verb = "Overwrote" if existed else "Created"
        return ToolResult(
            llm_content=f"{verb} {params.file_path} ({len(params.content)} chars).",
            return_display=f"{verb} {params.file_path}",
        )


class EditParams(ToolParams):
    file_path: str
    old_string: str
    new_string: str


class EditTool(Tool):
    """Replace exactly one occurrence of ``old_string``; an empty one creates a new file."""

    name = "edit"
    description = (
        "Replace exactly one occurrence of old_string with new_string in a file. "
        "Use an empty old_string to create a new file."
    )
    params_model = EditParams

    def __init__(self, workspace: Path) -> None:
        self._workspace = workspace

    def run(self, params: EditParams) -> ToolResult:
        path = resolve_in_workspace(self._workspace, params.file_path)
        if not params.old_string:
            if path.exists():
                return ToolResult.failure(
                    f"{params.file_path} already exists; old_string must not be empty.", ToolErrorKind.EXECUTION_FAILED
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(params.new_string, encoding="utf-8")
            return ToolResult(llm_content=f"Created {params.file_path}.", return_display=f"Created {params.file_path}")
        if not path.is_file():
            return ToolResult.failure(f"File not found: {params.file_path}", ToolErrorKind.EXECUTION_FAILED)

        content = path.read_text(encoding="utf-8")
        occurrences = content.count(params.old_string)
        if occurrences == 0:
            return ToolResult.failure(f"old_string not found in {params.file_path}", ToolErrorKind.EXECUTION_FAILED)
        if occurrences > 1:
            return ToolResult.failure(
                f"old_string matches {occurrences} locations in {params.file_path}; add more context",
                ToolErrorKind.EXECUTION_FAILED,
            )
        path.write_text(content.replace(params.old_string, params.new_string, 1), encoding="utf-8")
        return ToolResult(llm_content=f"Edited {params.file_path}.", return_display=f"Edited {params.file_path}")


class ListDirectoryParams(ToolParams):
    dir_path: str = "."


class ListDirectoryTool(Tool):
    name = "list_directory"
    description = "List the entries of a workspace directory; directories end with '/'."
    params_model = ListDirectoryParams

    def __init__(self, workspace: Path) -> None:
        self._workspace = workspace

    def run(self, params: ListDirectoryParams) -> ToolResult:
        path = resolve_in_workspace(self._workspace, params.dir_path)
        if not path.is_dir():
            return ToolResult.failure(f"Not a directory: {params.dir_path}", ToolErrorKind.EXECUTION_FAILED)
        entries = sorted(path.iterdir(), key=lambda item: (not item.is_dir(), item.name))
        lines = [f"{item.name}/" if item.is_dir() else item.name for item in entries]
        return ToolResult(llm_content="\n".join(lines) or "(empty)", return_display=f"{len(lines)} entries")


class TodoBoard:
    """Shared todo list; replaced wholesale by ``write_todos``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._todos: List[Todo] = []
        self._listeners: List[Callable[[tuple[Todo, ...]], None]] = []

    def replace(self, todos: List[Todo]) -> tuple[Todo, ...]:
        with self._lock:
            self._todos = [Todo(item.description, item.status) for item in todos]
            snapshot = self._snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    def snapshot(self) -> tuple[Todo, ...]:
        with self._lock:
            return self._snapshot()

    def subscribe(self, listener: Callable[[tuple[Todo, ...]], None]) -> None:
        self._listeners.append(listener)

    def _snapshot(self) -> tuple[Todo, ...]:
        return tuple(Todo(item.description, item.status) for item in self._todos)


class TodoItem(ToolParams):
    description: str
    status: TodoStatus = TodoStatus.PENDING


class WriteTodosParams(ToolParams):
    todos: List[TodoItem]


class WriteTodosTool(Tool):
    name = WRITE_TODOS_TOOL
    description = (
        "Replace the task list. Each todo has a description and a status of pending, "
        "in_progress, completed, or cancelled; keep at most one in_progress."
    )
    params_model = WriteTodosParams

    def __init__(self, board: TodoBoard) -> None:
        self._board = board

    def run(self, params: WriteTodosParams) -> ToolResult:
        snapshot = self._board.replace([Todo(item.description, item.status) for item in params.todos])
        lines = [f"{index}. [{todo.status.value}] {todo.description}" for index, todo in enumerate(snapshot, start=1)]
        return ToolResult(llm_content="Todo list updated:\n" + "\n".join(lines), return_display=f"{len(snapshot)} todos")


def default_registry(
    workspace: Path,
    *,
    executor: Optional[ShellExecutor] = None,
    board: Optional[TodoBoard] = None,
) -> ToolRegistry:
    """Registry with every built-in tool bound to ``workspace``."""
    return ToolRegistry(
        [
            ShellTool(workspace, executor),
            ReadFileTool(workspace),
            WriteFileTool(workspace),
            EditTool(workspace),
            ListDirectoryTool(workspace),
            WriteTodosTool(board or TodoBoard()),
        ]
    )
