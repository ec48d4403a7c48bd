"""Events produced by the turn loop, the pipeline, and the command resolver.

Producers are generators that yield events in program order; callers drain a
single iterator. Exactly one terminal event ends each request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Union

from .models.messages import FinishReason, Todo, ToolResult

__all__ = [
    "Done",
    "ErrorEvent",
    "Event",
    "KeysExhausted",
    "Progress",
    "TERMINAL_EVENTS",
    "TextChunk",
    "TodosUpdated",
    "ToolCallStarted",
    "ToolResultEvent",
    "is_terminal",
]


@dataclass(slots=True, frozen=True)
class TextChunk:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallStarted:
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(slots=True, frozen=True)
class ToolResultEvent:
    name: str
    result: ToolResult
    call_id: str = ""


@dataclass(slots=True, frozen=True)
class Progress:
    """Human-readable status line from the pipeline or the command resolver."""

    message: str


@dataclass(slots=True, frozen=True)
class TodosUpdated:
    todos: Tuple[Todo, ...]


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str
    phase: Optional[str] = None


@dataclass(slots=True, frozen=True)
class KeysExhausted:
    message: str


@dataclass(slots=True, frozen=True)
class Done:
    finish: FinishReason = FinishReason.STOP
    summary: str = ""


Event = Union[TextChunk, ToolCallStarted, ToolResultEvent, Progress, TodosUpdated, ErrorEvent, KeysExhausted, Done]

TERMINAL_EVENTS = (Done, ErrorEvent, KeysExhausted)


def is_terminal(event: Event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
