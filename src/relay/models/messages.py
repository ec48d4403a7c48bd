"""Provider-agnostic conversation records shared by adapters, tools, and the turn loop."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Union

__all__ = [
    "FinishReason",
    "FunctionCallPart",
    "FunctionDeclaration",
    "FunctionResponsePart",
    "Message",
    "Part",
    "Role",
    "TextPart",
    "Todo",
    "TodoStatus",
    "ToolError",
    "ToolErrorKind",
    "ToolResult",
    "message_from_dict",
    "message_to_dict",
    "synthesize_call_id",
]


class Role(str, Enum):
    """Conversation roles understood by every provider adapter."""

    USER = "user"
    MODEL = "model"


class FinishReason(str, Enum):
    """Normalised terminal signal reported by a provider."""

    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"


@dataclass(slots=True, frozen=True)
class TextPart:
    """Plain text emitted by the user or the model."""

    text: str
    thought: bool = False


@dataclass(slots=True, frozen=True)
class FunctionCallPart:
    """Tool invocation requested by the model."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass(slots=True, frozen=True)
class FunctionResponsePart:
    """Result of a tool invocation, correlated to its call by ``id``."""

    name: str
    response: Mapping[str, Any] = field(default_factory=dict)
    id: str = ""


Part = Union[TextPart, FunctionCallPart, FunctionResponsePart]


@dataclass(slots=True, frozen=True)
class Message:
    """Single conversation entry; parts keep the order the provider emitted them in."""

    role: Role
    parts: tuple[Part, ...] = ()

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(Role.USER, (TextPart(text),))

    @classmethod
    def model(cls, parts: Iterable[Part]) -> "Message":
        return cls(Role.MODEL, tuple(parts))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart) and not part.thought)

    @property
    def function_calls(self) -> tuple[FunctionCallPart, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCallPart))

    @property
    def function_responses(self) -> tuple[FunctionResponsePart, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionResponsePart))


@dataclass(slots=True, frozen=True)
class FunctionDeclaration:
    """Capability advertised to a provider: name, description, and JSON schema."""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


class ToolErrorKind(str, Enum):
    """Distinct failure categories reported inside a :class:`ToolResult`."""

    UNKNOWN_TOOL = "unknown_tool"
    INVALID_PARAMS = "invalid_params"
    EXECUTION_FAILED = "execution_failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass(slots=True, frozen=True)
class ToolError:
    message: str
    kind: ToolErrorKind = ToolErrorKind.EXECUTION_FAILED


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Outcome of one tool invocation: what the model sees and what a UI shows."""

    llm_content: str
    return_display: str = ""
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, message: str, kind: ToolErrorKind) -> "ToolResult":
        return cls(llm_content=f"Error: {message}", return_display=message, error=ToolError(message, kind))

    def to_response(self) -> dict[str, Any]:
        """Render the payload folded back into history as a function response."""
        if self.error is not None:
            return {"error": self.error.message, "kind": self.error.kind.value}
        return {"output": self.llm_content}


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Todo:
    description: str
    status: TodoStatus = TodoStatus.PENDING


def synthesize_call_id(name: str) -> str:
    """Build a call id for providers that omit one: name, epoch millis, random suffix."""
    return f"{name}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialise a message into the JSON shape used for persistence."""
    parts: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            entry: dict[str, Any] = {"text": part.text}
            if part.thought:
                entry["thought"] = True
            parts.append(entry)
        elif isinstance(part, FunctionCallPart):
            parts.append({"functionCall": {"name": part.name, "args": dict(part.args), "id": part.id}})
        else:
            parts.append(
                {"functionResponse": {"name": part.name, "response": dict(part.response), "id": part.id}}
            )
    return {"role": message.role.value, "parts": parts}


def message_from_dict(payload: Mapping[str, Any]) -> Message:
    """Inverse of :func:`message_to_dict`; unknown part shapes are skipped."""
    role = Role.MODEL if payload.get("role") == Role.MODEL.value else Role.USER
    parts: list[Part] = []
    for raw in payload.get("parts") or []:
        if not isinstance(raw, Mapping):
            continue
        if "text" in raw:
            parts.append(TextPart(str(raw["text"]), bool(raw.get("thought", False))))
        elif isinstance(raw.get("functionCall"), Mapping):
            call = raw["functionCall"]
            parts.append(FunctionCallPart(str(call.get("name", "")), dict(call.get("args") or {}), str(call.get("id") or "")))
        elif isinstance(raw.get("functionResponse"), Mapping):
            reply = raw["functionResponse"]
            parts.append(
                FunctionResponsePart(
                    str(reply.get("name", "")), dict(reply.get("response") or {}), str(reply.get("id") or "")
                )
            )
    return Message(role, tuple(parts))
