from __future__ import annotations

import threading
from pathlib import Path

from relay.errors import RateLimitError
from relay.events import Done, ErrorEvent, KeysExhausted, TextChunk, TodosUpdated, ToolCallStarted, ToolResultEvent, is_terminal
from relay.models.adapters import ProviderKind
from relay.models.chat import ProviderClient
from relay.models.credentials import CredentialSource
from relay.models.messages import FinishReason, Role, TodoStatus
from relay.models.transport import ProviderSettings
from relay.tools.bridge import ToolExecutionBridge
from relay.tools.builtin import TodoBoard, default_registry
from relay.turns import TurnController


def _openai_text(text: str, finish: str | None = "stop") -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": finish}]}


def _openai_call(name: str, arguments: str, call_id: str = "call_1") -> dict:
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}],
                },
                "finish_reason": "tool_calls",
            }
        ]
    }


def _controller(workspace: Path, transport, *, kind: ProviderKind = ProviderKind.OPENAI, keys=("k1",), max_turns: int = 10):
    settings = ProviderSettings(kind=kind, api_keys=list(keys))
    credentials = CredentialSource(settings.api_keys, model=settings.resolved_model, sleep=lambda _: None)
    client = ProviderClient(settings, credentials, transport=transport)
    board = TodoBoard()
    bridge = ToolExecutionBridge(default_registry(workspace, board=board), timeout=5.0)
    return TurnController(client, bridge, system_prompt="You are a test agent.", max_turns=max_turns, todos=board), bridge


def test_tool_call_then_answer_yields_ordered_events(workspace: Path, fake_transport) -> None:
    (workspace / "notes.txt").write_text("hello\n", encoding="utf-8")
    transport = fake_transport(_openai_call("list_directory", "{}"), _openai_text("There is one file."))
    controller, bridge = _controller(workspace, transport)

    events = list(controller.run("What is in the workspace?"))
    bridge.close()

    assert [type(event) for event in events] == [ToolCallStarted, ToolResultEvent, TextChunk, Done]
    started, finished, chunk, done = events
    assert started.name == "list_directory" and started.call_id == "call_1"
    assert finished.result.ok and "notes.txt" in finished.result.llm_content
    assert finished.call_id == started.call_id
    assert chunk.text == "There is one file."
    assert done.finish is FinishReason.STOP
    assert done.summary == "There is one file."

    history = controller.history()
    assert [message.role for message in history] == [Role.USER, Role.MODEL, Role.USER, Role.MODEL]
    assert history[2].function_responses[0].id == "call_1"
    assert controller.turn_count == 2

    second_request = transport.requests[1]["payload"]["messages"]
    assert second_request[0] == {"role": "system", "content": "You are a test agent."}
    assert any(entry["role"] == "tool" and entry["tool_call_id"] == "call_1" for entry in second_request)


def test_text_without_finish_reason_completes_with_stop(workspace: Path, fake_transport) -> None:
    transport = fake_transport({"candidates": [{"content": {"parts": [{"text": "Hi!"}]}}]})
    controller, bridge = _controller(workspace, transport, kind=ProviderKind.GOOGLE)

    events = list(controller.run("hello"))
    bridge.close()

    assert isinstance(events[-1], Done)
    assert events[-1].finish is FinishReason.STOP
    assert sum(1 for event in events if is_terminal(event)) == 1


def test_empty_reply_is_an_error(workspace: Path, fake_transport) -> None:
    controller, bridge = _controller(workspace, fake_transport(_openai_text("", finish=None)))

    events = list(controller.run("hello"))
    bridge.close()

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)


def test_max_tokens_finish_is_reported(workspace: Path, fake_transport) -> None:
    controller, bridge = _controller(workspace, fake_transport(_openai_text("truncated", finish="length")))

    events = list(controller.run("write a long essay"))
    bridge.close()

    assert events[-1] == Done(FinishReason.MAX_TOKENS, "truncated")


def test_max_turns_stops_the_loop(workspace: Path, fake_transport) -> None:
    transport = fake_transport(_openai_call("list_directory", "{}"))
    controller, bridge = _controller(workspace, transport, max_turns=2)

    events = list(controller.run("loop forever"))
    bridge.close()

    assert sum(1 for event in events if isinstance(event, ToolCallStarted)) == 2
    assert events[-1] == ErrorEvent("Maximum turns reached (2).")
    assert len(transport.requests) == 2


def test_rate_limited_keys_surface_as_keys_exhausted(workspace: Path, fake_transport) -> None:
    transport = fake_transport(RateLimitError("HTTP 429: too many requests", status=429))
    controller, bridge = _controller(workspace, transport, keys=("k1", "k2"))

    events = list(controller.run("hello"))
    bridge.close()

    assert len(events) == 1
    assert isinstance(events[0], KeysExhausted)
    assert [request["headers"]["Authorization"] for request in transport.requests] == ["Bearer k1", "Bearer k2"]


def test_cancelled_request_never_calls_the_provider(workspace: Path, fake_transport) -> None:
    transport = fake_transport(_openai_text("unused"))
    controller, bridge = _controller(workspace, transport)
    cancel = threading.Event()
    cancel.set()

    events = list(controller.run("hello", cancel=cancel))
    bridge.close()

    assert events == [ErrorEvent("Request cancelled.")]
    assert transport.requests == []


def test_write_todos_call_publishes_snapshot(workspace: Path, fake_transport) -> None:
    todos = '{"todos": [{"description": "Read code", "status": "in_progress"}, {"description": "Fix bug"}]}'
    transport = fake_transport(_openai_call("write_todos", todos), _openai_text("Planned."))
    controller, bridge = _controller(workspace, transport)

    events = list(controller.run("plan the work"))
    bridge.close()

    updates = [event for event in events if isinstance(event, TodosUpdated)]
    assert len(updates) == 1
    assert [(todo.description, todo.status) for todo in updates[0].todos] == [
        ("Read code", TodoStatus.IN_PROGRESS),
        ("Fix bug", TodoStatus.PENDING),
    ]
    assert isinstance(events[-1], Done)


def test_unknown_tool_is_reported_back_to_the_model(workspace: Path, fake_transport) -> None:
    transport = fake_transport(_openai_call("teleport", "{}"), _openai_text("Sorry."))
    controller, bridge = _controller(workspace, transport)

    events = list(controller.run("go"))
    bridge.close()

    result_event = next(event for event in events if isinstance(event, ToolResultEvent))
    assert not result_event.result.ok
    reply = controller.history()[2].function_responses[0]
    assert reply.response["kind"] == "unknown_tool"
    assert isinstance(events[-1], Done)


def test_anthropic_tool_use_loops_to_a_new_turn(workspace: Path, fake_transport) -> None:
    transport = fake_transport(
        {
            "type": "message",
            "content": [{"type": "tool_use", "id": "toolu_1", "name": "list_directory", "input": {}}],
            "stop_reason": "tool_use",
        },
        {"type": "message", "content": [{"type": "text", "text": "Empty workspace."}], "stop_reason": "end_turn"},
    )
    controller, bridge = _controller(workspace, transport, kind=ProviderKind.ANTHROPIC)

    events = list(controller.run("What is here?"))
    bridge.close()

    assert [type(event) for event in events] == [ToolCallStarted, ToolResultEvent, TextChunk, Done]
    assert len(transport.requests) == 2
    follow_up = transport.requests[1]["payload"]["messages"][-1]
    assert follow_up["role"] == "user"
    assert follow_up["content"][0]["type"] == "tool_result"
    assert follow_up["content"][0]["tool_use_id"] == "toolu_1"
