"""
Generation clients: one-shot completions and streamed token deltas.

The OpenAI-compatible client speaks the chat completions wire format over
httpx, including the ``data: ...`` / ``data: [DONE]`` event stream. The
Ollama client uses the ollama library's async chat API.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List

import httpx
import ollama

from ..core.config import (
    COMPLETION_DEFAULT_MAX_TOKENS, COMPLETION_DEFAULT_TEMPERATURE, FINAL_RESULT_MODEL,
    LLM_PROVIDER, OLLAMA_HOST, OPENAI_API_KEY, OPENAI_BASE_URL, REQUEST_TIMEOUT_SEC, OpenAISettings
)
from ..core.errors import ProviderUnavailable, StreamTransportFailure
from ..util.logging import logger

TIMEOUT_MESSAGE = "The request timed out. Please try again."

_DONE = object()


def friendly_error_message(status_code: int, body: str = "") -> str:
    """Turn a provider HTTP failure into a short message a user can act on."""
    error_type = ""
    error_code = ""
    error_message = ""
    try:
        error = json.loads(body).get("error") or {}
        if isinstance(error, dict):
            error_type = error.get("type") or ""
            error_code = error.get("code") or ""
            error_message = error.get("message") or ""
    except (ValueError, AttributeError):
        pass

    if status_code == 429 and "insufficient_quota" not in (error_type, error_code):
        return "Rate limit exceeded. Please wait a moment and try again."
    if status_code == 401:
        return "API key issue. Please check your API key configuration."
    if status_code == 402 or "insufficient_quota" in (error_type, error_code):
        return "Quota exceeded. Please check your provider billing."
    if status_code == 400 and error_type == "invalid_request_error":
        return f"Invalid request: {error_message}"
    if status_code >= 500:
        return "The AI service is experiencing issues. Please try again later."
    if error_message:
        return f"API error ({status_code}): {error_message}"
    return f"Error ({status_code}). Please try again or contact support."


def build_messages(prompt: str, system_prompt: str = None) -> List[Dict[str, str]]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


class IGenerationClient(ABC):
    """Abstract interface for text generation providers."""

    provider_name: str = "unknown"

    @abstractmethod
    async def complete(self, prompt: str, system_prompt: str = None, model: str = None,
                       temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
                       max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> str:
        """Return the full completion text for a prompt."""
        pass

    @abstractmethod
    def stream(self, prompt: str, system_prompt: str = None, model: str = None,
               temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
               max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> AsyncIterator[str]:
        """Yield completion text deltas as they arrive."""
        pass


class OpenAICompatibleClient(IGenerationClient):
    """Chat completions over httpx against any OpenAI-compatible endpoint."""

    provider_name = "openai"

    def __init__(self, api_key: str = OPENAI_API_KEY, base_url: str = OPENAI_BASE_URL,
                 default_model: str = FINAL_RESULT_MODEL, timeout_sec: float = REQUEST_TIMEOUT_SEC,
                 transport: httpx.AsyncBaseTransport = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_sec),
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}", "User-Agent": "recall/1.0"}
        )

    def _payload(self, prompt, system_prompt, model, temperature, max_tokens, stream=False):
        payload = {
            "model": model or self.default_model,
            "messages": build_messages(prompt, system_prompt),
            "temperature": temperature,
            "max_tokens": max_tokens
        }
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, prompt: str, system_prompt: str = None, model: str = None,
                       temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
                       max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> str:
        payload = self._payload(prompt, system_prompt, model, temperature, max_tokens)
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            logger.log_provider_call(self.provider_name, "complete", "failed", {"error": "timeout"})
            raise ProviderUnavailable(f"Completion timed out: {e}", provider=self.provider_name,
                                      user_message=TIMEOUT_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.log_provider_call(self.provider_name, "complete", "failed", {"error": str(e)})
            raise ProviderUnavailable(f"Completion request failed: {e}", provider=self.provider_name) from e

        if response.status_code != 200:
            logger.log_provider_call(self.provider_name, "complete", "failed", {
                "status_code": response.status_code,
                "body": response.text
            })
            raise ProviderUnavailable(
                f"Completion returned HTTP {response.status_code}",
                status_code=response.status_code,
                provider=self.provider_name,
                user_message=friendly_error_message(response.status_code, response.text)
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderUnavailable(f"Malformed completion response: {e}", provider=self.provider_name) from e

        logger.log_provider_call(self.provider_name, "complete", "success", {"model": payload["model"]})
        return content or ""

    async def stream(self, prompt: str, system_prompt: str = None, model: str = None,
                     temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
                     max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> AsyncIterator[str]:
        payload = self._payload(prompt, system_prompt, model, temperature, max_tokens, stream=True)
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self.base_url}/chat/completions", json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        logger.log_provider_call(self.provider_name, "stream", "failed", {
                            "status_code": response.status_code,
                            "body": body
                        })
                        raise StreamTransportFailure(
                            f"Streaming completion returned HTTP {response.status_code}",
                            user_message=friendly_error_message(response.status_code, body)
                        )

                    async for line in response.aiter_lines():
                        delta = parse_stream_line(line)
                        if delta is _DONE:
                            break
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            logger.log_provider_call(self.provider_name, "stream", "failed", {"error": "timeout"})
            raise StreamTransportFailure(f"Streaming completion timed out: {e}", user_message=TIMEOUT_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.log_provider_call(self.provider_name, "stream", "failed", {"error": str(e)})
            raise StreamTransportFailure(f"Streaming completion failed: {e}") from e

        logger.log_provider_call(self.provider_name, "stream", "success", {"model": payload["model"]})


def parse_stream_line(line: str):
    """Extract the text delta from one event-stream line.

    Returns the delta text, ``None`` for lines that carry nothing, or the
    ``_DONE`` marker for the terminal ``[DONE]`` event. Malformed JSON is
    logged and skipped; an ``error`` payload raises.
    """
    if not line or not line.startswith("data: "):
        return None

    data = line[6:].strip()
    if data == "[DONE]":
        return _DONE

    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"Skipping malformed stream chunk: {data[:100]}")
        return None

    if not isinstance(chunk, dict):
        return None

    if chunk.get("error"):
        error = chunk["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise StreamTransportFailure(f"Provider reported an error mid-stream: {message}")

    choices = chunk.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    return delta.get("content") or None


class OllamaClient(IGenerationClient):
    """Chat completions from a local Ollama server.

    Every call, and every wait for the next streamed chunk, is bounded by
    ``timeout_sec``.
    """

    provider_name = "ollama"

    def __init__(self, host: str = OLLAMA_HOST, default_model: str = FINAL_RESULT_MODEL,
                 timeout_sec: float = REQUEST_TIMEOUT_SEC, client: ollama.AsyncClient = None):
        self.default_model = default_model
        self.timeout_sec = timeout_sec
        self.client = client or ollama.AsyncClient(host=host, timeout=timeout_sec)

    async def complete(self, prompt: str, system_prompt: str = None, model: str = None,
                       temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
                       max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.chat(
                    model=model or self.default_model,
                    messages=build_messages(prompt, system_prompt),
                    options={"temperature": temperature, "num_predict": max_tokens}
                ),
                timeout=self.timeout_sec
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.log_provider_call(self.provider_name, "complete", "failed", {"error": "timeout"})
            raise ProviderUnavailable(f"Ollama completion timed out: {e}", provider=self.provider_name,
                                      user_message=TIMEOUT_MESSAGE) from e
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            logger.log_provider_call(self.provider_name, "complete", "failed", {"error": str(e)})
            raise ProviderUnavailable(f"Ollama completion failed: {e}", status_code=getattr(e, "status_code", None),
                                      provider=self.provider_name) from e

        return response["message"]["content"] or ""

    async def stream(self, prompt: str, system_prompt: str = None, model: str = None,
                     temperature: float = COMPLETION_DEFAULT_TEMPERATURE,
                     max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS) -> AsyncIterator[str]:
        try:
            parts = await asyncio.wait_for(
                self.client.chat(
                    model=model or self.default_model,
                    messages=build_messages(prompt, system_prompt),
                    options={"temperature": temperature, "num_predict": max_tokens},
                    stream=True
                ),
                timeout=self.timeout_sec
            )
            iterator = parts.__aiter__()
            while True:
                try:
                    part = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout_sec)
                except StopAsyncIteration:
                    break
                content = part["message"]["content"]
                if content:
                    yield content
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.log_provider_call(self.provider_name, "stream", "failed", {"error": "timeout"})
            raise StreamTransportFailure(f"Ollama streaming timed out: {e}", user_message=TIMEOUT_MESSAGE) from e
        except ollama.ResponseError as e:
            logger.log_provider_call(self.provider_name, "stream", "failed", {"error": str(e)})
            raise StreamTransportFailure(
                f"Ollama streaming failed: {e}",
                user_message=friendly_error_message(e.status_code, json.dumps({"error": {"message": e.error}}))
            ) from e
        except (httpx.HTTPError, ConnectionError) as e:
            logger.log_provider_call(self.provider_name, "stream", "failed", {"error": str(e)})
            raise StreamTransportFailure(f"Ollama streaming failed: {e}") from e


def create_generation_client(name: str = None, settings: OpenAISettings = None) -> IGenerationClient:
    """Build the client selected by ``LLM_PROVIDER``."""
    name = name or LLM_PROVIDER
    if name == "openai":
        settings = settings or OpenAISettings()
        return OpenAICompatibleClient(
            api_key=settings.api_key,
            base_url=settings.base_url,
            default_model=settings.final_model,
            timeout_sec=settings.timeout_sec
        )
    if name == "ollama":
        return OllamaClient()
    raise ValueError(f"Unknown LLM provider: {name}")
