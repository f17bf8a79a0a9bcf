"""Async OpenAI-compatible transport for the coaching model.

Exposes a streaming mode (``stream()``, an async iterator of tagged events)
and a non-streaming fallback (``complete()``).  The client never retries:
failures are mapped onto the engine's error taxonomy and left to the
caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Protocol

import httpx

from coach_chat.config import ProfileSpec
from coach_chat.errors import ClientError, ServerError, TransportError
from coach_chat.types import ChatRequest, CompletionResult, Failed, StreamEvent

from .response_parser import SSEParser, parse_completion

_logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class Transport(Protocol):
    """What the turn orchestrator needs from a model endpoint."""

    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def complete(self, request: ChatRequest) -> CompletionResult:
        ...


def error_for_status(status_code: int, body: str = "") -> Exception:
    """Map an HTTP error status onto TransportError/ServerError/ClientError."""
    detail = body[:300] if body else ""
    message = f"LLM API returned {status_code}"
    if detail:
        message = f"{message}: {detail}"
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return ServerError(message, status_code=status_code)
    if status_code in (401, 403):
        return ClientError(message, status_code=status_code, authentication=True)
    return ClientError(message, status_code=status_code)


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


class AsyncLLMClient:
    """Async client for OpenAI-compatible chat APIs (OpenRouter and friends)."""

    def __init__(
        self,
        profile: ProfileSpec,
        timeout: float = 120,
        idle_timeout: float = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self._idle_timeout = idle_timeout

        headers = {
            "Authorization": f"Bearer {profile.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(profile.headers)

        self._client = httpx.AsyncClient(
            base_url=profile.url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30),
            transport=transport,
        )

    def _payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.history)

        payload: dict[str, Any] = {
            "model": request.model or self.profile.model,
            "messages": messages,
            "stream": stream,
        }
        if self.profile.include_reasoning:
            payload["include_reasoning"] = True
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Yield ContentDelta/ReasoningDelta events, then one Completed.

        A provider error inside the stream is yielded as ``Failed``.  HTTP
        and network failures raise; a gap longer than ``idle_timeout``
        between lines raises ``TransportError(timeout=True)``.
        """
        payload = self._payload(request, stream=True)
        parser = SSEParser()

        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=payload,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise error_for_status(resp.status_code, resp.text)

                lines = resp.aiter_lines().__aiter__()
                while not parser.done:
                    try:
                        line = await asyncio.wait_for(
                            _next_line(lines), self._idle_timeout,
                        )
                    except asyncio.TimeoutError:
                        raise TransportError(
                            f"No stream data for {self._idle_timeout}s",
                            timeout=True,
                        ) from None
                    if line is None:
                        break
                    for event in parser.feed(line):
                        yield event
                        if isinstance(event, Failed):
                            return
        except httpx.TimeoutException as e:
            raise TransportError(f"Stream timed out: {e}", timeout=True) from e
        except httpx.TransportError as e:
            raise TransportError(f"Stream connection failed: {e}") from e

        _logger.debug(
            "Stream finished: model=%s finish_reason=%s",
            parser.model, parser.finish_reason,
        )
        yield parser.completed()

    # ------------------------------------------------------------------
    # Non-streaming fallback
    # ------------------------------------------------------------------

    async def complete(self, request: ChatRequest) -> CompletionResult:
        """Send one non-streaming completion request."""
        payload = self._payload(request, stream=False)
        try:
            resp = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", timeout=True) from e
        except httpx.TransportError as e:
            raise TransportError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise ServerError(
                "Invalid JSON in completion response", status_code=resp.status_code,
            ) from e
        return parse_completion(data)

    async def close(self) -> None:
        await self._client.aclose()
