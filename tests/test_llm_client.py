"""Tests for AsyncLLMClient with httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from coach_chat.config import ProfileSpec
from coach_chat.errors import ClientError, ServerError, TransportError
from coach_chat.llm.client import AsyncLLMClient, error_for_status
from coach_chat.llm.response_parser import SSEParser, _extract_thinking, parse_completion
from coach_chat.types import (
    ChatRequest,
    Completed,
    ContentDelta,
    Failed,
    ReasoningDelta,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def profile() -> ProfileSpec:
    return ProfileSpec(
        url="http://llm.test/v1",
        api_key="test-key",
        model="coach-model",
        extra_params={"temperature": 0.3},
    )


def _request(**kwargs) -> ChatRequest:
    defaults = dict(
        model="",
        system_prompt="You are a coach.",
        history=[{"role": "user", "content": "hi"}],
    )
    defaults.update(kwargs)
    return ChatRequest(**defaults)


def _chunk(content: str | None = None, reasoning: str | None = None,
           finish_reason: str | None = None) -> str:
    delta: dict = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning"] = reasoning
    data = {
        "model": "coach-model",
        "choices": [{"delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(data)}\n\n"


def _sse(*chunks: str) -> bytes:
    return ("".join(chunks) + "data: [DONE]\n\n").encode()


def _completion(content: str, reasoning: str | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning"] = reasoning
    return {
        "model": "coach-model",
        "choices": [{"message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }


def _client(profile: ProfileSpec, handler, **kwargs) -> AsyncLLMClient:
    return AsyncLLMClient(profile, transport=httpx.MockTransport(handler), **kwargs)


async def _collect(client: AsyncLLMClient, request: ChatRequest | None = None) -> list:
    return [event async for event in client.stream(request or _request())]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStream:
    async def test_deltas_then_completed(self, profile):
        body = _sse(
            _chunk(reasoning="8 reps "),
            _chunk(reasoning="at 80kg"),
            _chunk(content="Solid "),
            _chunk(content="set!", finish_reason="stop"),
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        client = _client(profile, handler)
        events = await _collect(client)
        await client.close()

        assert events[:4] == [
            ReasoningDelta("8 reps "),
            ReasoningDelta("at 80kg"),
            ContentDelta("Solid "),
            ContentDelta("set!"),
        ]
        assert isinstance(events[-1], Completed)
        assert events[-1].finish_reason == "stop"
        assert events[-1].model == "coach-model"

    async def test_payload(self, profile):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=_sse(_chunk(content="ok")))

        client = _client(profile, handler)
        await _collect(client)
        await client.close()

        req = seen[0]
        assert req.url.path == "/v1/chat/completions"
        assert req.headers["Authorization"] == "Bearer test-key"
        payload = json.loads(req.content)
        assert payload["model"] == "coach-model"
        assert payload["stream"] is True
        assert payload["include_reasoning"] is True
        assert payload["temperature"] == 0.3
        assert payload["messages"] == [
            {"role": "system", "content": "You are a coach."},
            {"role": "user", "content": "hi"},
        ]

    async def test_request_model_overrides_profile(self, profile):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=_sse())

        client = _client(profile, handler)
        await _collect(client, _request(model="other-model"))
        await client.close()
        assert seen[0]["model"] == "other-model"

    async def test_ignores_comments_and_bad_chunks(self, profile):
        body = b": OPENROUTER PROCESSING\n\ndata: {not json\n\n" + _sse(_chunk(content="hi"))

        def handler(request):
            return httpx.Response(200, content=body)

        client = _client(profile, handler)
        events = await _collect(client)
        await client.close()
        assert events[0] == ContentDelta("hi")
        assert isinstance(events[1], Completed)

    async def test_provider_error_in_stream(self, profile):
        error = json.dumps({"error": {"message": "overloaded", "code": 503}})
        body = _chunk(content="par").encode() + f"data: {error}\n\n".encode()

        def handler(request):
            return httpx.Response(200, content=body)

        client = _client(profile, handler)
        events = await _collect(client)
        await client.close()

        assert events[0] == ContentDelta("par")
        assert isinstance(events[1], Failed)
        assert isinstance(events[1].error, ServerError)
        assert events[1].error.status_code == 503
        assert len(events) == 2

    @pytest.mark.parametrize("status,exc_type", [
        (503, ServerError),
        (429, ServerError),
        (400, ClientError),
        (401, ClientError),
    ])
    async def test_http_errors(self, profile, status, exc_type):
        def handler(request):
            return httpx.Response(status, text="nope")

        client = _client(profile, handler)
        with pytest.raises(exc_type) as exc_info:
            await _collect(client)
        await client.close()
        assert exc_info.value.status_code == status
        assert "nope" in str(exc_info.value)

    async def test_connect_error(self, profile):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(profile, handler)
        with pytest.raises(TransportError) as exc_info:
            await _collect(client)
        await client.close()
        assert exc_info.value.timeout is False

    async def test_read_timeout(self, profile):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client = _client(profile, handler)
        with pytest.raises(TransportError) as exc_info:
            await _collect(client)
        await client.close()
        assert exc_info.value.timeout is True

    async def test_idle_timeout(self, profile):
        async def stalled():
            yield _chunk(content="hel").encode()
            await asyncio.sleep(5)
            yield _sse()

        def handler(request):
            return httpx.Response(200, content=stalled())

        client = _client(profile, handler, idle_timeout=0.05)
        received = []
        with pytest.raises(TransportError) as exc_info:
            async for event in client.stream(_request()):
                received.append(event)
        await client.close()

        assert received == [ContentDelta("hel")]
        assert exc_info.value.timeout is True


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

class TestComplete:
    async def test_reasoning_field(self, profile):
        seen: list[dict] = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_completion("Answer", reasoning="step 1"))

        client = _client(profile, handler)
        result = await client.complete(_request(stream=False))
        await client.close()

        assert seen[0]["stream"] is False
        assert result.content == "Answer"
        assert result.reasoning == "step 1"
        assert result.usage["prompt_tokens"] == 10

    async def test_think_tags(self, profile):
        def handler(request):
            return httpx.Response(
                200, json=_completion("<think>count reps</think>Eight reps, nice."),
            )

        client = _client(profile, handler)
        result = await client.complete(_request())
        await client.close()
        assert result.content == "Eight reps, nice."
        assert result.reasoning == "count reps"

    async def test_server_error(self, profile):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        client = _client(profile, handler)
        with pytest.raises(ServerError):
            await client.complete(_request())
        await client.close()

    async def test_invalid_json(self, profile):
        def handler(request):
            return httpx.Response(200, text="<html>")

        client = _client(profile, handler)
        with pytest.raises(ServerError):
            await client.complete(_request())
        await client.close()

    async def test_timeout(self, profile):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(profile, handler)
        with pytest.raises(TransportError) as exc_info:
            await client.complete(_request())
        await client.close()
        assert exc_info.value.timeout


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

class TestErrorForStatus:
    def test_mapping(self):
        assert isinstance(error_for_status(500), ServerError)
        assert isinstance(error_for_status(429), ServerError)
        auth = error_for_status(403)
        assert isinstance(auth, ClientError) and auth.authentication
        plain = error_for_status(422)
        assert isinstance(plain, ClientError) and not plain.authentication


class TestResponseParser:
    def test_reasoning_content_alias(self):
        parser = SSEParser()
        line = 'data: {"choices": [{"delta": {"reasoning_content": "hmm"}}]}'
        assert parser.feed(line) == [ReasoningDelta("hmm")]

    def test_done(self):
        parser = SSEParser()
        assert parser.feed("data: [DONE]") == []
        assert parser.done

    def test_usage_recorded(self):
        parser = SSEParser()
        parser.feed('data: {"choices": [], "usage": {"total_tokens": 7}}')
        assert parser.completed().usage == {"total_tokens": 7}

    def test_extract_thinking(self):
        thinking, cleaned = _extract_thinking("<think>a</think>X<think>b</think>")
        assert thinking == "a\nb"
        assert cleaned == "X"

    def test_completion_without_reasoning(self):
        assert parse_completion(_completion("hi")).reasoning is None

    def test_completion_empty_choices(self):
        with pytest.raises(ServerError):
            parse_completion({"choices": []})
