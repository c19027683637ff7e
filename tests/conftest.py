import os
from contextlib import contextmanager
from typing import Any, AsyncIterator, Callable, Dict, List

import pytest

from logwatch.events import resolve
from logwatch.models import AssistantMessage, CompletionChunk, CompletionRequest
from logwatch.providers import BaseTransport, CancelToken


class ScriptedTransport(BaseTransport):
    """
    Transport replaying a fixed script of responses, one per request.

    An entry may be an AssistantMessage (or dict), a list of CompletionChunk
    (returned as a stream), an exception instance (raised), or a callable
    receiving the request and the cancel token.
    """

    def __init__(self, script: List[Any]) -> None:
        self.script = list(script)
        self.requests: List[CompletionRequest] = []

    async def create(self, request: CompletionRequest, *, cancel: CancelToken):
        self.requests.append(request)
        if not self.script:
            raise AssertionError("ScriptedTransport ran out of responses")
        entry = self.script.pop(0)
        if callable(entry) and not isinstance(entry, type):
            entry = await resolve(entry(request, cancel))
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, list):
            return _replay(entry)
        return entry


async def _replay(chunks: List[CompletionChunk]) -> AsyncIterator[CompletionChunk]:
    for chunk in chunks:
        yield chunk


def text_chunks(*parts: str) -> List[CompletionChunk]:
    """Content fragments followed by a terminal fragment."""
    chunks = [CompletionChunk.model_validate({"delta": {"role": "assistant", "content": part}}) for part in parts]
    chunks.append(CompletionChunk.model_validate({"delta": {}, "finish_reason": "stop"}))
    return chunks


def tool_call_message(*calls: Dict[str, Any], content: Any = None) -> AssistantMessage:
    """Assistant message requesting `calls` given as {"id", "name", "arguments"} dicts."""
    return AssistantMessage.model_validate(
        {
            "content": content,
            "tool_calls": [
                {"id": call["id"], "type": "function", "function": {"name": call["name"], "arguments": call.get("arguments", "{}")}}
                for call in calls
            ],
        }
    )


@pytest.fixture
def make_transport() -> Callable[[List[Any]], ScriptedTransport]:
    return ScriptedTransport


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old
