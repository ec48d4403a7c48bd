from __future__ import annotations

import json

import pytest

from relay.models.adapters import (
    AnthropicAdapter,
    CustomAdapter,
    GoogleAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderKind,
    iter_documents,
)
from relay.models.messages import (
    FinishReason,
    FunctionCallPart,
    FunctionDeclaration,
    FunctionResponsePart,
    Message,
    Role,
    TextPart,
)
from relay.models.transport import ProviderSettings, adapter_for, resolve_endpoint


def _sse(*documents: dict, done: bool = True) -> str:
    lines = [f"data: {json.dumps(document)}" for document in documents]
    if done:
        lines.append("data: [DONE]")
    return "\n\n".join(lines) + "\n"


def test_iter_documents_handles_arrays_sse_and_ndjson() -> None:
    assert list(iter_documents(json.dumps([{"a": 1}, {"b": 2}]))) == [{"a": 1}, {"b": 2}]
    assert list(iter_documents(": keep-alive\nevent: ping\ndata: {\"c\": 3}\ndata: [DONE]\n")) == [{"c": 3}]
    assert list(iter_documents('{"d": 4}\nnot json\n{"e": 5}\n')) == [{"d": 4}, {"e": 5}]
    assert list(iter_documents("   ")) == []


def test_google_stream_without_finish_reason_synthesizes_stop() -> None:
    raw = _sse(
        {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "lo"}]}}]},
        done=False,
    )

    parsed = GoogleAdapter().parse_response(raw)

    assert parsed.text == "Hello"
    assert parsed.text_chunks == ["Hel", "lo"]
    assert parsed.calls == []
    assert parsed.finish is FinishReason.STOP


def test_google_function_call_gets_synthesized_id_and_thoughts_are_separated() -> None:
    raw = json.dumps(
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "planning...", "thought": True},
                            {"functionCall": {"name": "read_file", "args": {"file_path": "a.txt"}}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ]
        }
    )

    parsed = GoogleAdapter().parse_response(raw)

    assert parsed.text == ""
    assert parsed.thoughts == ["planning..."]
    assert len(parsed.calls) == 1
    call = parsed.calls[0]
    assert call.name == "read_file"
    assert call.args == {"file_path": "a.txt"}
    assert call.id


def test_google_unknown_finish_reason_maps_to_stop() -> None:
    raw = json.dumps({"candidates": [{"content": {"parts": [{"text": "ok"}]}, "finishReason": "SOMETHING_NEW"}]})

    assert GoogleAdapter().parse_response(raw).finish is FinishReason.STOP


def test_google_request_disables_tools_when_excluded() -> None:
    tools = [FunctionDeclaration("shell", "Run a command")]
    body = GoogleAdapter().build_request(
        [Message.user("hi")], tools, "Be brief.", model="gemini", include_tools=False, max_tokens=128
    )

    assert "tools" not in body
    assert body["toolConfig"] == {"functionCallingConfig": {"mode": "NONE"}}
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["generationConfig"] == {"maxOutputTokens": 128}
    assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]


def test_openai_stream_assembles_tool_call_deltas() -> None:
    raw = _sse(
        {"choices": [{"delta": {"role": "assistant", "tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": ""}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "{\"file_path\": "}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "\"a.txt\"}"}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    )

    parsed = OpenAIAdapter().parse_response(raw)

    assert parsed.text == ""
    assert parsed.calls == [FunctionCallPart("read_file", {"file_path": "a.txt"}, "call_1")]
    assert parsed.finish is None


def test_openai_malformed_arguments_become_empty_mapping() -> None:
    raw = json.dumps(
        {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {"id": "c1", "type": "function", "function": {"name": "shell", "arguments": "{not json"}},
                            {"id": "c2", "type": "function", "function": {"name": "list_directory", "arguments": "{}"}},
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }
    )

    parsed = OpenAIAdapter().parse_response(raw)

    assert [call.name for call in parsed.calls] == ["shell", "list_directory"]
    assert parsed.calls[0].args == {}
    assert [call.id for call in parsed.calls] == ["c1", "c2"]


def test_openai_length_maps_to_max_tokens() -> None:
    raw = json.dumps({"choices": [{"message": {"content": "partial"}, "finish_reason": "length"}]})

    parsed = OpenAIAdapter().parse_response(raw)

    assert parsed.text == "partial"
    assert parsed.finish is FinishReason.MAX_TOKENS


def test_openai_request_pairs_tool_messages_with_announcing_assistant_turn() -> None:
    history = [
        Message.user("list files"),
        Message.model([FunctionCallPart("list_directory", {"dir_path": "."}, "c1")]),
        Message(Role.USER, (FunctionResponsePart("list_directory", {"output": "a.txt"}, "c1"),)),
        Message(Role.USER, (FunctionResponsePart("shell", {"output": "done"}, "c9"),)),
    ]

    body = OpenAIAdapter().build_request(history, [], "system text", model="gpt-4o-mini")
    messages = body["messages"]

    assert [entry["role"] for entry in messages] == ["system", "user", "assistant", "tool", "assistant", "tool"]
    assert messages[2]["tool_calls"][0]["id"] == "c1"
    assert json.loads(messages[2]["tool_calls"][0]["function"]["arguments"]) == {"dir_path": "."}
    assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": json.dumps({"output": "a.txt"})}
    assert messages[4]["tool_calls"][0]["id"] == "c9"
    assert messages[5]["tool_call_id"] == "c9"
    assert "tools" not in body


@pytest.mark.parametrize(
    "adapter",
    [GoogleAdapter(), CustomAdapter(), OpenAIAdapter(), AnthropicAdapter(), OllamaAdapter()],
    ids=lambda adapter: adapter.kind.value,
)
def test_text_only_history_survives_request_round_trip(adapter) -> None:
    history = [
        Message.user("Write a haiku about caf\u00e9s."),
        Message.model([TextPart("Steam curls from the cup,\n  quiet morning conversation,\n  \"bitter\" and sweet.")]),
        Message.user("Now {one} more, with a tab\there."),
    ]

    body = adapter.build_request(history, [], "Be brief.", model="m")
    decoded = adapter.decode_history(body)

    assert decoded == history
    assert [message.text for message in decoded] == [message.text for message in history]


def test_openai_decode_history_restores_tool_names() -> None:
    adapter = OpenAIAdapter()
    history = [
        Message.user("list files"),
        Message.model([FunctionCallPart("list_directory", {"dir_path": "."}, "c1")]),
        Message(Role.USER, (FunctionResponsePart("list_directory", {"output": "a.txt"}, "c1"),)),
    ]

    decoded = adapter.decode_history(adapter.build_request(history, [], None, model="m"))

    assert decoded == history


def test_anthropic_stream_assembles_text_and_partial_json() -> None:
    events = [
        {"type": "message_start", "message": {"type": "message", "content": [], "stop_reason": None}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me look."}},
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "list_directory", "input": {}}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"dir_path\": "}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "\"src\"}"}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
    ]
    raw = "\n".join(f"event: {event['type']}\ndata: {json.dumps(event)}\n" for event in events)

    parsed = AnthropicAdapter().parse_response(raw)

    assert parsed.text == "Let me look."
    assert parsed.calls == [FunctionCallPart("list_directory", {"dir_path": "src"}, "toolu_1")]
    assert parsed.finish is None


def test_anthropic_whole_message_with_end_turn() -> None:
    raw = json.dumps(
        {"type": "message", "content": [{"type": "text", "text": "All set."}], "stop_reason": "end_turn"}
    )

    parsed = AnthropicAdapter().parse_response(raw)

    assert parsed.text == "All set."
    assert parsed.finish is FinishReason.STOP


def test_anthropic_request_uses_default_max_tokens_and_system_field() -> None:
    body = AnthropicAdapter().build_request([Message.user("hi")], [], "Be brief.", model="claude", stream=True)

    assert body["max_tokens"] == AnthropicAdapter.default_max_tokens
    assert body["system"] == "Be brief."
    assert body["stream"] is True
    assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]


def test_ollama_ndjson_stream_concatenates_text() -> None:
    raw = "\n".join(
        json.dumps(document)
        for document in (
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            {"message": {"role": "assistant", "content": " there"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"},
        )
    )

    parsed = OllamaAdapter().parse_response(raw)

    assert parsed.text == "Hi there"
    assert parsed.finish is FinishReason.STOP


def test_ollama_length_and_tool_calls() -> None:
    raw = json.dumps(
        {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "read_file", "arguments": {"file_path": "x.py"}}}],
            },
            "done": True,
            "done_reason": "length",
        }
    )

    parsed = OllamaAdapter().parse_response(raw)

    assert parsed.finish is FinishReason.MAX_TOKENS
    assert parsed.calls[0].name == "read_file"
    assert parsed.calls[0].args == {"file_path": "x.py"}
    assert parsed.calls[0].id


def test_adapter_selection_for_custom_endpoints() -> None:
    assert isinstance(adapter_for(ProviderKind.CUSTOM, "https://llm.example.com/v1/generate"), CustomAdapter)
    assert isinstance(adapter_for(ProviderKind.CUSTOM, "http://localhost:11434"), OllamaAdapter)
    assert isinstance(adapter_for(ProviderKind.ANTHROPIC), AnthropicAdapter)


def test_resolve_endpoint_per_provider() -> None:
    url, headers = resolve_endpoint(ProviderSettings(kind=ProviderKind.GOOGLE, model="gemini-x"), "k1", stream=True)
    assert url.endswith("/v1beta/models/gemini-x:streamGenerateContent?alt=sse&key=k1")

    url, headers = resolve_endpoint(ProviderSettings(kind=ProviderKind.OPENAI), "k2")
    assert url == "https://api.openai.com/v1/chat/completions"
    assert headers["Authorization"] == "Bearer k2"

    url, headers = resolve_endpoint(ProviderSettings(kind=ProviderKind.ANTHROPIC), "k3")
    assert headers["x-api-key"] == "k3"

    url, _ = resolve_endpoint(ProviderSettings(kind=ProviderKind.CUSTOM, base_url="http://localhost:11434/"), None)
    assert url == "http://localhost:11434/api/chat"


def test_provider_settings_key_requirements() -> None:
    assert ProviderSettings(kind=ProviderKind.OLLAMA).requires_key is False
    assert ProviderSettings(kind=ProviderKind.CUSTOM, base_url="http://127.0.0.1:8080").requires_key is False
    assert ProviderSettings(kind=ProviderKind.CUSTOM, base_url="https://api.example.com").requires_key is True
    assert ProviderSettings(kind=ProviderKind.GOOGLE).requires_key is True
