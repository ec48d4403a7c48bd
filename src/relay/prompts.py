"""Prompt templates shared by the turn loop and the pipeline phases."""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Sequence

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON value that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

CODE_RESPONSE_INSTRUCTION = (
    "Return only the complete file content. Do not wrap it in markdown fences and do not add commentary."
)


def render_system_context(workspace: Path) -> str:
    """Describe the host the agent is running on."""
    return (
        "# System Information\n"
        f"- OS: {platform.system()} {platform.release()}\n"
        f"- Python: {platform.python_version()}\n"
        f"- Shell: {os.environ.get('SHELL', '/bin/sh')}\n"
        f"- Workspace: {workspace.as_posix()}\n"
    )


def render_system_prompt(workspace: Path, *, memory_summary: str = "", has_todos: bool = True) -> str:
    """System prompt for the interactive turn loop."""
    sections = [
        "You are an interactive CLI agent specializing in software engineering tasks. "
        "Help users safely and efficiently, adhering strictly to the following instructions "
        "and using your available tools.",
        render_system_context(workspace),
    ]
    if memory_summary:
        sections.append(memory_summary)
    sections.append(
        "# Core Mandates\n"
        "- **Conventions:** Adhere to existing project conventions. Analyze surrounding code, tests, and configuration first.\n"
        "- **Libraries/Frameworks:** Never assume a library is available; verify its usage in the project first.\n"
        "- **Style & Structure:** Mimic the style, typing, and architecture of existing code.\n"
        "- **Proactiveness:** Fulfil the request thoroughly, including tests where they add confidence."
    )
    workflow = (
        "# Primary Workflow\n"
        "1. **Understand:** Inspect the workspace with the file and shell tools.\n"
        "2. **Plan:** Build a grounded plan."
    )
    if has_todos:
        workflow += " For multi-step tasks, track subtasks with the `write_todos` tool and keep one item in_progress at a time."
    workflow += (
        "\n3. **Implement:** Use the tools to act on the plan.\n"
        "4. **Verify:** Run the project's tests, build, and lint commands.\n"
        "5. **Finalize:** Stop only when every task is complete."
    )
    sections.append(workflow)
    sections.append(
        "# Task Completion\n"
        "- Creating a todo list is planning, not completion; continue executing the todos.\n"
        "- Only finish when the request is fully implemented."
    )
    return "\n\n".join(sections)


def render_phase_brief(phase: str) -> str:
    """Return the canonical phase brief used across pipeline prompts."""
    return (
        "## Phase Brief\n"
        f"You are executing the `{phase}` phase of a code generation pipeline. Review the provided context "
        "and answer exactly in the requested format."
    )


def render_bullets(title: str, items: Sequence[str]) -> str:
    body = "\n".join(f"- {item.strip()}" for item in items if item.strip())
    return f"## {title}\n{body}" if body else ""


__all__ = [
    "CODE_RESPONSE_INSTRUCTION",
    "JSON_RESPONSE_INSTRUCTION",
    "render_bullets",
    "render_phase_brief",
    "render_system_context",
    "render_system_prompt",
]
