"""
Tests for the generation clients and the OpenAI-compatible stream parser.
"""

import asyncio
import json

import httpx
import pytest

from recall.core.config import OpenAISettings
from recall.core.errors import ProviderUnavailable, StreamTransportFailure
from recall.llm.client import (
    TIMEOUT_MESSAGE,
    OllamaClient,
    OpenAICompatibleClient,
    _DONE,
    build_messages,
    create_generation_client,
    friendly_error_message,
    parse_stream_line
)


def sse_body(*events):
    return "".join(f"data: {event}\n\n" for event in events)


def delta(content):
    return json.dumps({"choices": [{"delta": {"content": content}}]})


def make_client(handler):
    return OpenAICompatibleClient(
        api_key="sk-test", base_url="https://example.test/v1/", default_model="final",
        transport=httpx.MockTransport(handler)
    )


def test_parse_stream_line():
    assert parse_stream_line(f"data: {delta('Hi')}") == "Hi"
    assert parse_stream_line("data: [DONE]") is _DONE
    assert parse_stream_line("") is None
    assert parse_stream_line(": keep-alive") is None
    assert parse_stream_line("event: message") is None
    assert parse_stream_line('data: {"choices": []}') is None
    assert parse_stream_line('data: {"choices": [{"delta": {}}]}') is None


def test_parse_stream_line_skips_malformed_json():
    assert parse_stream_line("data: {not json") is None


def test_parse_stream_line_raises_on_error_payload():
    with pytest.raises(StreamTransportFailure):
        parse_stream_line('data: {"error": {"message": "overloaded"}}')


def test_build_messages():
    assert build_messages("hi") == [{"role": "user", "content": "hi"}]
    assert build_messages("hi", "be brief")[0] == {"role": "system", "content": "be brief"}


def test_stream_yields_deltas_until_done():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        body = sse_body(delta("Hello"), "{broken", delta(" world"), "[DONE]", delta("ignored"))
        return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

    async def run():
        return [chunk async for chunk in make_client(handler).stream("Hi", system_prompt="sys", temperature=0.2)]

    chunks = asyncio.run(run())

    assert chunks == ["Hello", " world"]
    assert seen["url"] == "https://example.test/v1/chat/completions"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "final"
    assert seen["body"]["temperature"] == 0.2
    assert seen["body"]["messages"][0] == {"role": "system", "content": "sys"}


def test_stream_rate_limit_has_friendly_message():
    def handler(request):
        return httpx.Response(429, json={"error": {"type": "rate_limit_error", "message": "slow down"}})

    async def run():
        return [chunk async for chunk in make_client(handler).stream("Hi")]

    with pytest.raises(StreamTransportFailure) as exc_info:
        asyncio.run(run())
    assert exc_info.value.user_message == "Rate limit exceeded. Please wait a moment and try again."


def test_stream_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async def run():
        return [chunk async for chunk in make_client(handler).stream("Hi")]

    with pytest.raises(StreamTransportFailure):
        asyncio.run(run())


def test_complete_returns_message_content():
    def handler(request):
        body = json.loads(request.content)
        assert "stream" not in body
        return httpx.Response(200, json={"choices": [{"message": {"content": "Rider."}}]})

    assert asyncio.run(make_client(handler).complete("Which IDE?")) == "Rider."


def test_complete_unauthorized():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(ProviderUnavailable) as exc_info:
        asyncio.run(make_client(handler).complete("Which IDE?"))
    assert exc_info.value.status_code == 401
    assert exc_info.value.user_message == "API key issue. Please check your API key configuration."


def test_complete_malformed_body():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(ProviderUnavailable):
        asyncio.run(make_client(handler).complete("Which IDE?"))


def test_friendly_error_message():
    assert friendly_error_message(429).startswith("Rate limit exceeded")
    assert friendly_error_message(429, json.dumps({"error": {"code": "insufficient_quota"}})).startswith("Quota exceeded")
    assert friendly_error_message(402).startswith("Quota exceeded")
    assert friendly_error_message(401).startswith("API key issue")
    assert friendly_error_message(
        400, json.dumps({"error": {"type": "invalid_request_error", "message": "bad temperature"}})
    ) == "Invalid request: bad temperature"
    assert friendly_error_message(503).startswith("The AI service is experiencing issues")
    assert friendly_error_message(404, json.dumps({"error": {"message": "no model"}})) == "API error (404): no model"
    assert friendly_error_message(418, "teapot") == "Error (418). Please try again or contact support."


def test_create_generation_client():
    assert isinstance(create_generation_client("openai"), OpenAICompatibleClient)
    with pytest.raises(ValueError):
        create_generation_client("nope")


class StalledOllama:
    """Ollama client double that sends one chunk and then goes quiet."""

    async def chat(self, model, messages, options=None, stream=False):
        if not stream:
            await asyncio.sleep(10)
            return {"message": {"content": "late"}}

        async def parts():
            yield {"message": {"content": "Hel"}}
            await asyncio.sleep(10)
            yield {"message": {"content": "lo"}}
        return parts()


def test_ollama_stream_times_out_between_chunks():
    client = OllamaClient(client=StalledOllama(), timeout_sec=0.05)
    received = []

    async def run():
        async for chunk in client.stream("hi"):
            received.append(chunk)

    with pytest.raises(StreamTransportFailure) as excinfo:
        asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert received == ["Hel"]
    assert excinfo.value.user_message == TIMEOUT_MESSAGE


def test_ollama_complete_times_out():
    client = OllamaClient(client=StalledOllama(), timeout_sec=0.05)

    with pytest.raises(ProviderUnavailable) as excinfo:
        asyncio.run(asyncio.wait_for(client.complete("hi"), timeout=5))

    assert excinfo.value.user_message == TIMEOUT_MESSAGE


def test_create_openai_client_from_settings():
    settings = OpenAISettings(api_key="sk-x", base_url="https://e.test/v1/", timeout_sec=5, final_model="m")

    client = create_generation_client("openai", settings)

    assert isinstance(client, OpenAICompatibleClient)
    assert client.api_key == "sk-x"
    assert client.base_url == "https://e.test/v1"
    assert client.default_model == "m"
    assert client.timeout_sec == 5
