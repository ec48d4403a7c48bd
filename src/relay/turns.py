"""Turn controller: the bounded request / tool-execution loop.

The controller is the only writer of its :class:`ConversationState`; callers read
immutable snapshots. :meth:`TurnController.run` is a generator that yields events
in program order and ends with exactly one terminal event.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator, Optional

from .errors import KeysExhaustedError, RelayError
from .events import Done, ErrorEvent, Event, KeysExhausted, TextChunk, TodosUpdated, ToolCallStarted, ToolResultEvent
from .models.chat import ProviderClient
from .models.messages import FinishReason, FunctionResponsePart, Message, Role
from .tools.bridge import ToolExecutionBridge
from .tools.builtin import WRITE_TODOS_TOOL, TodoBoard

__all__ = ["ConversationState", "DEFAULT_MAX_TURNS", "TurnController"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100


class ConversationState:
    """Append-only message history plus a strictly increasing turn counter."""

    def __init__(self, history: Iterable[Message] = ()) -> None:
        self._history: list[Message] = list(history)
        self._turn = 0

    @property
    def turn(self) -> int:
        return self._turn

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._history)

    def append(self, message: Message) -> None:
        self._history.append(message)

    def advance(self) -> int:
        self._turn += 1
        return self._turn

    def reset(self) -> None:
        self._history.clear()
        self._turn = 0

    def __len__(self) -> int:
        return len(self._history)


class TurnController:
    """Drive provider turns and tool execution until a terminal condition."""

    def __init__(
        self,
        client: ProviderClient,
        bridge: ToolExecutionBridge,
        *,
        system_prompt: Optional[str] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        history: Iterable[Message] = (),
        todos: Optional[TodoBoard] = None,
    ) -> None:
        self._client = client
        self._bridge = bridge
        self._system_prompt = system_prompt
        self._max_turns = max_turns
        self._state = ConversationState(history)
        self._todos = todos

    @property
    def turn_count(self) -> int:
        return self._state.turn

    def history(self) -> tuple[Message, ...]:
        return self._state.snapshot()

    def reset(self) -> None:
        self._state.reset()

    def run(self, user_message: Optional[str] = None, *, cancel: Optional[threading.Event] = None) -> Iterator[Event]:
        """Send ``user_message`` (or continue the conversation when None) and yield events."""
        if user_message is not None:
            self._state.append(Message.user(user_message))
        declarations = self._bridge.registry.get_function_declarations()

        while True:
            if cancel is not None and cancel.is_set():
                yield ErrorEvent("Request cancelled.")
                return
            if self._state.turn >= self._max_turns:
                yield ErrorEvent(f"Maximum turns reached ({self._max_turns}).")
                return
            turn = self._state.advance()

            try:
                parsed = self._client.generate(self._state.snapshot(), declarations, self._system_prompt)
            except KeysExhaustedError as error:
                yield KeysExhausted(str(error))
                return
            except RelayError as error:
                LOGGER.warning("Turn %d failed: %s", turn, error)
                yield ErrorEvent(str(error))
                return

            for chunk in parsed.text_chunks:
                yield TextChunk(chunk)
            if parsed.text or parsed.calls:
                self._state.append(parsed.to_message())

            if parsed.calls:
                replies: list[FunctionResponsePart] = []
                for call in parsed.calls:
                    yield ToolCallStarted(call.name, dict(call.args), call.id)
                    result = self._bridge.execute(call.name, call.args, cancel=cancel)
                    replies.append(FunctionResponsePart(call.name, result.to_response(), call.id))
                    yield ToolResultEvent(call.name, result, call.id)
                    if call.name == WRITE_TODOS_TOOL and result.ok and self._todos is not None:
                        yield TodosUpdated(self._todos.snapshot())
                self._state.append(Message(Role.USER, tuple(replies)))
                LOGGER.debug("Turn %d executed %d tool call(s)", turn, len(replies))
                continue

            finish = parsed.finish
            if finish is None:
                if not parsed.text:
                    yield ErrorEvent("Provider response contained no text, tool calls, or finish reason.")
                    return
                finish = FinishReason.STOP
            yield Done(finish, parsed.text)
            return
