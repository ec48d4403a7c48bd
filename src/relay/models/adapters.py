"""Per-provider request builders and response parsers.

Every adapter converts the provider-agnostic :class:`~relay.models.messages.Message`
history into one vendor's wire shape and normalises that vendor's response body
(single document, JSON array, SSE or newline-delimited stream) back into text
chunks, function calls, and a :class:`~relay.models.messages.FinishReason`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .messages import (
    FinishReason,
    FunctionCallPart,
    FunctionDeclaration,
    FunctionResponsePart,
    Message,
    Part,
    Role,
    TextPart,
    message_from_dict,
    synthesize_call_id,
)
from .wire import AnthropicEvent, GoogleResponse, OllamaResponse, OpenAIResponse, WireModel

__all__ = [
    "AnthropicAdapter",
    "CustomAdapter",
    "GoogleAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ParsedResponse",
    "ProviderAdapter",
    "ProviderKind",
    "iter_documents",
]

LOGGER = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    GOOGLE = "google"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    CUSTOM = "custom"


@dataclass(slots=True)
class ParsedResponse:
    """Normalised view of one provider response, in document order."""

    text_chunks: List[str] = field(default_factory=list)
    calls: List[FunctionCallPart] = field(default_factory=list)
    finish: Optional[FinishReason] = None
    thoughts: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_chunks)

    def to_message(self) -> Message:
        parts: list[Part] = []
        if self.text:
            parts.append(TextPart(self.text))
        parts.extend(self.calls)
        return Message.model(parts)


def iter_documents(raw: str) -> Iterator[Any]:
    """Yield the JSON documents contained in a response body.

    A body that parses as one JSON value yields that value, or each element when
    it is an array. Otherwise the body is read line by line as SSE
    (``data:`` prefixes, ``[DONE]`` and ``:`` comment lines skipped) or NDJSON.
    """
    text = (raw or "").strip()
    if not text:
        return
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(document, list):
            yield from document
        else:
            yield document
        return

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(":") or line.startswith("event:"):
            continue
        if line.startswith("data:"):
            line = line[len("data:") :].strip()
        if not line or line == "[DONE]":
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping undecodable stream line: %s", line[:200])


def _decode(model: type[WireModel], document: Any) -> Optional[WireModel]:
    if not isinstance(document, Mapping):
        return None
    try:
        return model.model_validate(document)
    except ValidationError as error:
        LOGGER.warning("Ignoring malformed %s document: %s", model.__name__, error)
        return None


def _load_arguments(raw: Any, *, name: str) -> Dict[str, Any]:
    """Decode tool-call arguments; undecodable arguments become an empty mapping."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        LOGGER.warning("Discarding undecodable arguments for tool %s: %s", name, str(raw)[:200])
        return {}
    return dict(value) if isinstance(value, Mapping) else {}


class ProviderAdapter:
    """Base adapter; subclasses implement one provider family's wire format."""

    kind: ProviderKind

    def build_request(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration],
        system_prompt: Optional[str],
        *,
        model: str,
        include_tools: bool = True,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def decode_history(self, body: Mapping[str, Any]) -> List[Message]:
        """Recover the conversation carried by a request body built by this adapter."""
        raise NotImplementedError

    def parse_response(self, raw: str) -> ParsedResponse:
        parsed = ParsedResponse()
        state: Dict[str, Any] = {}
        for document in iter_documents(raw):
            self._consume(document, parsed, state)
        self._complete(parsed, state)
        if parsed.finish is None and parsed.text and not parsed.calls:
            parsed.finish = FinishReason.STOP
        return parsed

    def _consume(self, document: Any, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _complete(self, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        """Hook for adapters that assemble calls across stream events."""


# --------------------------------------------------------------------------- Google


_GOOGLE_FINISH = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
    "SPII": FinishReason.SAFETY,
    "MALFORMED_FUNCTION_CALL": FinishReason.MALFORMED_FUNCTION_CALL,
}


class GoogleAdapter(ProviderAdapter):
    """``contents``/``parts`` wire format used by Gemini's generateContent."""

    kind = ProviderKind.GOOGLE

    def build_request(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration],
        system_prompt: Optional[str],
        *,
        model: str,
        include_tools: bool = True,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        contents = []
        for message in history:
            parts = []
            for part in message.parts:
                if isinstance(part, TextPart):
                    if part.thought:
                        continue
                    parts.append({"text": part.text})
                elif isinstance(part, FunctionCallPart):
                    call: Dict[str, Any] = {"name": part.name, "args": dict(part.args)}
                    if part.id:
                        call["id"] = part.id
                    parts.append({"functionCall": call})
                else:
                    reply: Dict[str, Any] = {"name": part.name, "response": dict(part.response)}
                    if part.id:
                        reply["id"] = part.id
                    parts.append({"functionResponse": reply})
            if parts:
                contents.append({"role": message.role.value, "parts": parts})

        body: Dict[str, Any] = {"contents": contents}
        if include_tools and tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": tool.name, "description": tool.description, "parameters": dict(tool.parameters)}
                        for tool in tools
                    ]
                }
            ]
        elif not include_tools:
            body["toolConfig"] = {"functionCallingConfig": {"mode": "NONE"}}
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if max_tokens:
            body["generationConfig"] = {"maxOutputTokens": max_tokens}
        return body

    def decode_history(self, body: Mapping[str, Any]) -> List[Message]:
        return [message_from_dict(entry) for entry in body.get("contents") or []]

    def _consume(self, document: Any, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        response = _decode(GoogleResponse, document)
        if response is None or not response.candidates:
            return
        candidate = response.candidates[0]
        if candidate.content is not None:
            for part in candidate.content.parts:
                if part.functionCall is not None:
                    call = part.functionCall
                    parsed.calls.append(
                        FunctionCallPart(call.name, dict(call.args), call.id or synthesize_call_id(call.name))
                    )
                elif part.text:
                    if part.thought:
                        parsed.thoughts.append(part.text)
                    else:
                        parsed.text_chunks.append(part.text)
        if candidate.citationMetadata is not None:
            for citation in candidate.citationMetadata.citations:
                LOGGER.debug("Citation: %s %s", citation.title, citation.uri)
        if candidate.finishReason:
            mapped = _GOOGLE_FINISH.get(candidate.finishReason.upper())
            if mapped is None:
                LOGGER.warning("Unknown finish reason %s; treating as STOP", candidate.finishReason)
                mapped = FinishReason.STOP
            parsed.finish = mapped


class CustomAdapter(GoogleAdapter):
    """Pass-through custom endpoint that speaks the Google-style format."""

    kind = ProviderKind.CUSTOM


# --------------------------------------------------------------------------- OpenAI


_OPENAI_FINISH: Dict[str, Optional[FinishReason]] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
    "tool_calls": None,
    "function_call": None,
}


class OpenAIAdapter(ProviderAdapter):
    """``messages``/``tool_calls`` wire format used by chat completions."""

    kind = ProviderKind.OPENAI

    def build_request(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration],
        system_prompt: Optional[str],
        *,
        model: str,
        include_tools: bool = True,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        messages: list[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        announced: set[str] = set()
        for message in history:
            if message.role is Role.MODEL:
                calls = message.function_calls
                entry: Dict[str, Any] = {"role": "assistant", "content": message.text or None}
                if calls:
                    entry["tool_calls"] = [self._tool_call(call) for call in calls]
                    announced.update(call.id for call in calls)
                if message.text or calls:
                    messages.append(entry)
                continue
            for reply in message.function_responses:
                if reply.id not in announced:
                    # Tool messages must follow an assistant turn that announced the call.
                    messages.append(
                        {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [self._tool_call(FunctionCallPart(reply.name, {}, reply.id))],
                        }
                    )
                    announced.add(reply.id)
                messages.append(
                    {"role": "tool", "tool_call_id": reply.id, "content": json.dumps(dict(reply.response))}
                )
            if message.text:
                messages.append({"role": "user", "content": message.text})

        body: Dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
        if include_tools and tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": dict(tool.parameters),
                    },
                }
                for tool in tools
            ]
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body

    @staticmethod
    def _tool_call(call: FunctionCallPart) -> Dict[str, Any]:
        return {
            "id": call.id,
            "type": "function",
            "function": {"name": call.name, "arguments": json.dumps(dict(call.args))},
        }

    def decode_history(self, body: Mapping[str, Any]) -> List[Message]:
        history: list[Message] = []
        names: Dict[str, str] = {}
        pending_replies: list[Part] = []

        def flush() -> None:
            if pending_replies:
                history.append(Message(Role.USER, tuple(pending_replies)))
                pending_replies.clear()

        for entry in body.get("messages") or []:
            role = entry.get("role")
            if role == "tool":
                call_id = str(entry.get("tool_call_id") or "")
                pending_replies.append(
                    FunctionResponsePart(names.get(call_id, ""), _load_arguments(entry.get("content"), name="tool"), call_id)
                )
                continue
            flush()
            if role == "assistant":
                parts: list[Part] = []
                if entry.get("content"):
                    parts.append(TextPart(str(entry["content"])))
                for call in entry.get("tool_calls") or []:
                    function = call.get("function") or {}
                    name = str(function.get("name") or "")
                    names[str(call.get("id") or "")] = name
                    parts.append(
                        FunctionCallPart(name, _load_arguments(function.get("arguments"), name=name), str(call.get("id") or ""))
                    )
                history.append(Message(Role.MODEL, tuple(parts)))
            elif role == "user":
                history.append(Message.user(str(entry.get("content") or "")))
        flush()
        return history

    def _consume(self, document: Any, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        response = _decode(OpenAIResponse, document)
        if response is None or not response.choices:
            return
        choice = response.choices[0]
        message = choice.message or choice.delta
        builders: Dict[int, Dict[str, Any]] = state.setdefault("calls", {})
        if message is not None:
            if message.content:
                parsed.text_chunks.append(message.content)
            offset = len(builders) if choice.message else 0
            for position, call in enumerate(message.tool_calls):
                index = call.index if call.index is not None else offset + position
                builder = builders.setdefault(index, {"id": None, "name": "", "arguments": ""})
                if call.id:
                    builder["id"] = call.id
                if call.function is not None:
                    if call.function.name:
                        builder["name"] += call.function.name
                    arguments = call.function.arguments
                    if isinstance(arguments, Mapping):
                        builder["arguments"] = dict(arguments)
                    elif arguments:
                        builder["arguments"] += arguments
        if choice.finish_reason:
            reason = choice.finish_reason.lower()
            if reason in _OPENAI_FINISH:
                mapped = _OPENAI_FINISH[reason]
            else:
                LOGGER.warning("Unknown finish reason %s; treating as STOP", choice.finish_reason)
                mapped = FinishReason.STOP
            if mapped is not None:
                parsed.finish = mapped

    def _complete(self, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        for index in sorted(state.get("calls", {})):
            builder = state["calls"][index]
            name = builder["name"]
            parsed.calls.append(
                FunctionCallPart(name, _load_arguments(builder["arguments"], name=name), builder["id"] or synthesize_call_id(name))
            )


# ------------------------------------------------------------------------ Anthropic


_ANTHROPIC_FINISH: Dict[str, Optional[FinishReason]] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
    "refusal": FinishReason.SAFETY,
    "tool_use": None,
    "pause_turn": None,
}


class AnthropicAdapter(ProviderAdapter):
    """``content`` block wire format used by the messages API."""

    kind = ProviderKind.ANTHROPIC
    default_max_tokens = 4096

    def build_request(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration],
        system_prompt: Optional[str],
        *,
        model: str,
        include_tools: bool = True,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        messages: list[Dict[str, Any]] = []
        for message in history:
            blocks: list[Dict[str, Any]] = []
            if message.role is Role.MODEL:
                for part in message.parts:
                    if isinstance(part, TextPart) and not part.thought and part.text:
                        blocks.append({"type": "text", "text": part.text})
                    elif isinstance(part, FunctionCallPart):
                        blocks.append({"type": "tool_use", "id": part.id, "name": part.name, "input": dict(part.args)})
                role = "assistant"
            else:
                for reply in message.function_responses:
                    blocks.append(
                        {"type": "tool_result", "tool_use_id": reply.id, "content": json.dumps(dict(reply.response))}
                    )
                if message.text:
                    blocks.append({"type": "text", "text": message.text})
                role = "user"
            if blocks:
                messages.append({"role": role, "content": blocks})

        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self.default_max_tokens,
            "messages": messages,
        }
        if system_prompt:
            body["system"] = system_prompt
        if include_tools and tools:
            body["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": dict(tool.parameters)}
                for tool in tools
            ]
        if stream:
            body["stream"] = True
        return body

    def decode_history(self, body: Mapping[str, Any]) -> List[Message]:
        history: list[Message] = []
        names: Dict[str, str] = {}
        for entry in body.get("messages") or []:
            parts: list[Part] = []
            content = entry.get("content")
            if isinstance(content, str):
                content = [{"type": "text", "text": content}]
            for block in content or []:
                kind = block.get("type")
                if kind == "text":
                    parts.append(TextPart(str(block.get("text") or "")))
                elif kind == "tool_use":
                    names[str(block.get("id") or "")] = str(block.get("name") or "")
                    parts.append(FunctionCallPart(str(block.get("name") or ""), dict(block.get("input") or {}), str(block.get("id") or "")))
                elif kind == "tool_result":
                    call_id = str(block.get("tool_use_id") or "")
                    parts.append(
                        FunctionResponsePart(names.get(call_id, ""), _load_arguments(block.get("content"), name="tool"), call_id)
                    )
            role = Role.MODEL if entry.get("role") == "assistant" else Role.USER
            history.append(Message(role, tuple(parts)))
        return history

    def _consume(self, document: Any, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        event = _decode(AnthropicEvent, document)
        if event is None:
            return
        blocks: Dict[int, Dict[str, Any]] = state.setdefault("blocks", {})
        if event.type == "message_start" and event.message is not None:
            event = event.message
        if event.content:
            for block in event.content:
                index = len(blocks)
                blocks[index] = {"type": block.type, "text": block.text or "", "id": block.id, "name": block.name or "", "input": block.input, "json": ""}
        elif event.type == "content_block_start" and event.content_block is not None:
            block = event.content_block
            index = event.index if event.index is not None else len(blocks)
            blocks[index] = {"type": block.type, "text": block.text or "", "id": block.id, "name": block.name or "", "input": block.input, "json": ""}
        elif event.type == "content_block_delta" and event.delta is not None:
            index = event.index if event.index is not None else max(blocks, default=0)
            target = blocks.setdefault(index, {"type": "text", "text": "", "id": None, "name": "", "input": None, "json": ""})
            if event.delta.text:
                target["text"] += event.delta.text
            if event.delta.partial_json:
                target["json"] += event.delta.partial_json

        stop_reason = event.stop_reason or (event.delta.stop_reason if event.delta is not None else None)
        if stop_reason:
            if stop_reason in _ANTHROPIC_FINISH:
                mapped = _ANTHROPIC_FINISH[stop_reason]
            else:
                LOGGER.warning("Unknown stop reason %s; treating as STOP", stop_reason)
                mapped = FinishReason.STOP
            if mapped is not None:
                parsed.finish = mapped

    def _complete(self, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        blocks = state.get("blocks", {})
        for index in sorted(blocks):
            block = blocks[index]
            if block["type"] == "text" and block["text"]:
                parsed.text_chunks.append(block["text"])
            elif block["type"] == "tool_use":
                name = block["name"]
                arguments = _load_arguments(block["json"], name=name) if block["json"] else dict(block["input"] or {})
                parsed.calls.append(FunctionCallPart(name, arguments, block["id"] or synthesize_call_id(name)))


# --------------------------------------------------------------------------- Ollama


class OllamaAdapter(ProviderAdapter):
    """``/api/chat`` wire format; text parts of a message are concatenated."""

    kind = ProviderKind.OLLAMA

    def build_request(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration],
        system_prompt: Optional[str],
        *,
        model: str,
        include_tools: bool = True,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        messages: list[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for message in history:
            if message.role is Role.MODEL:
                calls = message.function_calls
                entry: Dict[str, Any] = {"role": "assistant", "content": message.text}
                if calls:
                    entry["tool_calls"] = [
                        {"function": {"name": call.name, "arguments": dict(call.args)}} for call in calls
                    ]
                if message.text or calls:
                    messages.append(entry)
                continue
            for reply in message.function_responses:
                messages.append({"role": "tool", "tool_name": reply.name, "content": json.dumps(dict(reply.response))})
            if message.text:
                messages.append({"role": "user", "content": message.text})

        body: Dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
        if include_tools and tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": dict(tool.parameters),
                    },
                }
                for tool in tools
            ]
        if max_tokens:
            body["options"] = {"num_predict": max_tokens}
        return body

    def decode_history(self, body: Mapping[str, Any]) -> List[Message]:
        history: list[Message] = []
        for entry in body.get("messages") or []:
            role = entry.get("role")
            if role == "system":
                continue
            if role == "tool":
                name = str(entry.get("tool_name") or "")
                reply = FunctionResponsePart(name, _load_arguments(entry.get("content"), name=name))
                history.append(Message(Role.USER, (reply,)))
                continue
            parts: list[Part] = []
            if entry.get("content"):
                parts.append(TextPart(str(entry["content"])))
            for call in entry.get("tool_calls") or []:
                function = call.get("function") or {}
                name = str(function.get("name") or "")
                parts.append(FunctionCallPart(name, _load_arguments(function.get("arguments"), name=name)))
            history.append(Message(Role.MODEL if role == "assistant" else Role.USER, tuple(parts)))
        return history

    def _consume(self, document: Any, parsed: ParsedResponse, state: Dict[str, Any]) -> None:
        response = _decode(OllamaResponse, document)
        if response is None:
            return
        if response.message is not None:
            if response.message.content:
                parsed.text_chunks.append(response.message.content)
            for call in response.message.tool_calls:
                if call.function is None:
                    continue
                name = call.function.name
                parsed.calls.append(
                    FunctionCallPart(name, _load_arguments(call.function.arguments, name=name), call.id or synthesize_call_id(name))
                )
        if response.done:
            parsed.finish = FinishReason.MAX_TOKENS if response.done_reason == "length" else FinishReason.STOP
