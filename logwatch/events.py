"""
Event registry: ordered callback chains per event kind.

Each kind has one composition strategy (see COMPOSITION):

- transform: every callback receives the current best candidate and may return
  a replacement or `skip()`. The final candidate is the result; if every
  callback skips, the original input is returned untouched.
- first_result: callbacks run in order until one returns a non-skip value,
  which becomes the result. If all skip (or none is registered) SKIP is returned.
- side_effect: every callback runs for its effect; return values are ignored.

Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Tuple, TypeVar, Union

T = TypeVar("T")


class _Skip:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIP"


SKIP = _Skip()


def skip() -> _Skip:
    """Return from an event callback to decline and hand over to the next one."""
    return SKIP


def is_skip(value: Any) -> bool:
    return value is SKIP


async def resolve(value: Union[T, Awaitable[T]]) -> T:
    """Await `value` when a callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class EventKind(str, Enum):
    USER_MESSAGE = "userMessage"
    AI_MESSAGE = "aiMessage"
    TOOL_CALL = "toolCall"
    MODEL_INVOCATION = "modelInvocation"
    AFTER_STATE_UPDATE = "after:stateUpdate"
    AFTER_CONVERSATION_UPDATE = "after:conversationUpdate"


class Composition(str, Enum):
    TRANSFORM = "transform"
    FIRST_RESULT = "first_result"
    SIDE_EFFECT = "side_effect"


COMPOSITION: Dict[EventKind, Composition] = {
    EventKind.USER_MESSAGE: Composition.TRANSFORM,
    EventKind.AI_MESSAGE: Composition.TRANSFORM,
    EventKind.TOOL_CALL: Composition.FIRST_RESULT,
    EventKind.MODEL_INVOCATION: Composition.FIRST_RESULT,
    EventKind.AFTER_STATE_UPDATE: Composition.SIDE_EFFECT,
    EventKind.AFTER_CONVERSATION_UPDATE: Composition.SIDE_EFFECT,
}

# Reasons passed to `after:conversationUpdate` callbacks.
REASON_USER_MESSAGE = "userMessage"
REASON_TOOL_CALL = "toolCall"
REASON_PARTIAL_AI_MESSAGE = "partialAiMessage"
REASON_AI_MESSAGE = "aiMessage"


@dataclass(frozen=True)
class RegisteredEvent:
    id: str
    callback: Callable[..., Any]


class EventRegistry:
    def __init__(self) -> None:
        self._events: Dict[EventKind, List[RegisteredEvent]] = {}
        # Immutable per-kind snapshots used during dispatch; dropped with the kind.
        self._chains: Dict[EventKind, Tuple[RegisteredEvent, ...]] = {}

    def on(self, kind: Union[EventKind, str], callback: Callable[..., Any]) -> Callable[[], None]:
        """Register `callback` for `kind`; returns a function removing exactly this registration."""
        kind = EventKind(kind)
        event = RegisteredEvent(id=str(uuid.uuid4()), callback=callback)
        self._events.setdefault(kind, []).append(event)
        self._chains[kind] = tuple(self._events[kind])

        def unsubscribe() -> None:
            self._remove(kind, event.id)

        return unsubscribe

    def _remove(self, kind: EventKind, event_id: str) -> None:
        events = self._events.get(kind)
        if not events:
            return
        remaining = [event for event in events if event.id != event_id]
        if not remaining:
            del self._events[kind]
            self._chains.pop(kind, None)
            return
        self._events[kind] = remaining
        self._chains[kind] = tuple(remaining)

    def get(self, kind: Union[EventKind, str]) -> Tuple[RegisteredEvent, ...]:
        return self._chains.get(EventKind(kind), ())

    def has(self, kind: Union[EventKind, str]) -> bool:
        return EventKind(kind) in self._chains

    async def transform(self, kind: EventKind, value: T, *args: Any) -> T:
        _check(kind, Composition.TRANSFORM)
        current = value
        for event in self.get(kind):
            result = await resolve(event.callback(current, *args))
            if is_skip(result):
                continue
            current = result
        return current

    async def first_result(self, kind: EventKind, *args: Any) -> Any:
        _check(kind, Composition.FIRST_RESULT)
        for event in self.get(kind):
            result = await resolve(event.callback(*args))
            if not is_skip(result):
                return result
        return SKIP

    async def notify(self, kind: EventKind, *args: Any) -> None:
        _check(kind, Composition.SIDE_EFFECT)
        for event in self.get(kind):
            await resolve(event.callback(*args))


def _check(kind: EventKind, expected: Composition) -> None:
    if COMPOSITION[kind] is not expected:
        raise ValueError(f"Event '{kind.value}' is dispatched as {COMPOSITION[kind].value}, not {expected.value}")
