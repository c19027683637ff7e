from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar, Union

import httpx

from .config import get_settings
from .errors import CompletionCancelled
from .models import AssistantMessage, CompletionChunk, CompletionRequest

logger = logging.getLogger("logwatch")

T = TypeVar("T")

CompletionResponse = Union[AssistantMessage, AsyncIterator[CompletionChunk]]

OPENAI_API_URL = "https://api.openai.com/v1"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1"


class CancelToken:
    """
    Cancellation handle attached to one completion request.

    `Agent.stop()` calls `cancel()`; transports observe it between stream
    fragments and while awaiting the HTTP response.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CompletionCancelled("Completion request was cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it as soon as the token is cancelled."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise CompletionCancelled("Completion request was cancelled")


class BaseTransport:
    """
    Abstract completion transport.

    `create` returns either one complete assistant message or an async iterator
    of stream fragments, depending on `request.stream`.
    """

    async def create(self, request: CompletionRequest, *, cancel: CancelToken) -> CompletionResponse:  # pragma: no cover - interface only
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources; transports without any keep the default."""


class StubTransport(BaseTransport):
    """
    Deterministic transport that never touches the network.

    It answers every request with a short assistant message, streamed word by
    word when the request asks for streaming. Used when no API key is set.
    """

    def __init__(self, content: str = "stub") -> None:
        self.content = content

    async def create(self, request: CompletionRequest, *, cancel: CancelToken) -> CompletionResponse:
        cancel.raise_if_cancelled()
        if not request.stream:
            return AssistantMessage(content=self.content)
        return self._stream(cancel)

    async def _stream(self, cancel: CancelToken) -> AsyncIterator[CompletionChunk]:
        words = self.content.split(" ")
        for index, word in enumerate(words):
            cancel.raise_if_cancelled()
            text = word if index == 0 else f" {word}"
            yield CompletionChunk.model_validate({"delta": {"role": "assistant", "content": text}})
        yield CompletionChunk.model_validate({"delta": {}, "finish_reason": "stop"})


class OpenAICompatibleTransport(BaseTransport):
    """
    Transport for any OpenAI-compatible `/chat/completions` endpoint
    (OpenAI, OpenRouter, vLLM, Ollama, ...).
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or OPENAI_API_URL).rstrip("/")
        # Default model chosen conservatively; callers may override via env or model settings.
        self.model = model or "gpt-4o-mini"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, request: CompletionRequest) -> Dict[str, Any]:
        body = request.payload()
        body.setdefault("model", self.model)
        return body

    async def create(self, request: CompletionRequest, *, cancel: CancelToken) -> CompletionResponse:
        body = self._body(request)
        if request.stream:
            return self._stream(body, cancel)

        resp = await cancel.guard(self._client.post(self.url, headers=self._headers(), json=body))
        resp.raise_for_status()
        data = resp.json()
        message = data["choices"][0]["message"]
        return AssistantMessage.model_validate(message)

    async def _stream(self, body: Dict[str, Any], cancel: CancelToken) -> AsyncIterator[CompletionChunk]:
        cancel.raise_if_cancelled()
        async with self._client.stream("POST", self.url, headers=self._headers(), json=body) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                cancel.raise_if_cancelled()
                chunk = parse_sse_line(line)
                if chunk is None:
                    continue
                if chunk == "[DONE]":
                    break
                yield CompletionChunk.from_openai(chunk)

    async def aclose(self) -> None:
        await self._client.aclose()


def parse_sse_line(line: str) -> Union[Dict[str, Any], str, None]:
    """Decode one server-sent-events line; returns None for keep-alives and comments."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    if data == "[DONE]":
        return data
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.warning("skipping malformed stream line: %s", data[:200])
        return None


def build_transport() -> BaseTransport:
    """Factory that chooses the concrete transport implementation."""
    settings = get_settings()
    if settings.provider_name == "openrouter":
        if not settings.openrouter_api_key:
            return StubTransport()
        return OpenAICompatibleTransport(
            settings.openrouter_api_key,
            base_url=OPENROUTER_API_URL,
            model=settings.model or "openai/gpt-4o-mini",
        )
    if settings.provider_name == "openai":
        if not settings.openai_api_key:
            return StubTransport()
        return OpenAICompatibleTransport(
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.model,
        )

    return StubTransport()
