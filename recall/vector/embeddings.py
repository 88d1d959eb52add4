"""
Embedding providers and the cached embedding service used by search and extraction.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import ollama

from ..core.config import (
    EMBED_DIM, EMBED_MODEL_NAME, EMBED_PROVIDER, EMBED_TIMEOUT_SEC,
    OLLAMA_HOST, OPENAI_API_KEY, OPENAI_BASE_URL, OpenAISettings
)
from ..core.errors import ProviderUnavailable
from ..util.logging import logger
from .cache import EmbeddingCache

DEFAULT_SENTENCE_TRANSFORMER_MODEL = "all-mpnet-base-v2"


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_name: str = "unknown"

    @abstractmethod
    async def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate one vector per input text, in input order."""
        return [await self.embed_text(text) for text in texts]

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for development and tests.

    Identical text always maps to the identical vector, so cache and
    duplicate behavior can be exercised without a model or network.
    """

    def __init__(self, dimension: int = EMBED_DIM):
        self.dimension = dimension
        self.model_name = f"hash-{dimension}"

    async def embed_text(self, text: str) -> List[float]:
        vector = []
        counter = 0
        while len(vector) < self.dimension:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).hexdigest()
            for i in range(0, len(digest), 8):
                value = int(digest[i:i + 8], 16)
                # map to [-1, 1]
                vector.append((value / 2**32) * 2 - 1)
            counter += 1
        return vector[:self.dimension]

    def get_dimension(self) -> int:
        return self.dimension


class OpenAIEmbedding(IEmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model_name: str = EMBED_MODEL_NAME,
                 dimension: int = EMBED_DIM, base_url: str = OPENAI_BASE_URL,
                 timeout_sec: float = EMBED_TIMEOUT_SEC, transport: httpx.AsyncBaseTransport = None):
        self.api_key = api_key
        self.model_name = model_name
        self.dimension = dimension
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport = transport

    async def embed_text(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        payload = {"input": texts, "model": self.model_name, "encoding_format": "float"}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_sec), transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.log_provider_call("openai", "embed", "failed", {"error": str(e)})
            raise ProviderUnavailable(f"Embedding request failed: {e}", provider="openai") from e

        if response.status_code != 200:
            logger.log_provider_call("openai", "embed", "failed", {"status_code": response.status_code})
            raise ProviderUnavailable(
                f"Embedding request returned HTTP {response.status_code}",
                status_code=response.status_code,
                provider="openai"
            )

        try:
            data = sorted(response.json()["data"], key=lambda item: item["index"])
            vectors = [item["embedding"] for item in data]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderUnavailable(f"Malformed embedding response: {e}", provider="openai") from e

        if len(vectors) != len(texts):
            raise ProviderUnavailable(
                f"Embedding count mismatch: sent {len(texts)}, received {len(vectors)}", provider="openai"
            )

        logger.log_provider_call("openai", "embed", "success", {"count": len(vectors), "model": self.model_name})
        return vectors

    def get_dimension(self) -> int:
        return self.dimension


class OllamaEmbedding(IEmbeddingProvider):
    """Embeddings from a local Ollama server."""

    def __init__(self, model_name: str = EMBED_MODEL_NAME, dimension: int = EMBED_DIM,
                 host: str = OLLAMA_HOST, timeout_sec: float = EMBED_TIMEOUT_SEC,
                 client: ollama.AsyncClient = None):
        self.model_name = model_name
        self.dimension = dimension
        self.client = client or ollama.AsyncClient(host=host, timeout=timeout_sec)

    async def embed_text(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.embed(model=self.model_name, input=texts)
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            logger.log_provider_call("ollama", "embed", "failed", {"error": str(e)})
            status_code = getattr(e, "status_code", None)
            raise ProviderUnavailable(f"Ollama embedding failed: {e}", status_code=status_code, provider="ollama") from e

        vectors = [list(vector) for vector in response["embeddings"]]
        if len(vectors) != len(texts):
            raise ProviderUnavailable(
                f"Embedding count mismatch: sent {len(texts)}, received {len(vectors)}", provider="ollama"
            )
        return vectors

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Local sentence-transformers model, loaded on first use.

    Encoding is CPU bound, so it runs in a worker thread. A missing package,
    an unknown model or an encoding error raises ``ProviderUnavailable``.
    """

    def __init__(self, model_name: str = DEFAULT_SENTENCE_TRANSFORMER_MODEL):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
                self._model = SentenceTransformer(self.model_name)
            except (ImportError, OSError, ValueError) as e:
                logger.log_provider_call("sentence-transformers", "load", "failed", {"error": str(e)})
                raise ProviderUnavailable(
                    f"Could not load sentence-transformers model '{self.model_name}': {e}",
                    provider="sentence-transformers"
                ) from e
        return self._model

    async def embed_text(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        model = self.model
        try:
            embeddings = await asyncio.to_thread(model.encode, texts, convert_to_tensor=False)
        except (RuntimeError, ValueError) as e:
            logger.log_provider_call("sentence-transformers", "embed", "failed", {"error": str(e)})
            raise ProviderUnavailable(f"sentence-transformers encoding failed: {e}",
                                      provider="sentence-transformers") from e
        return [embedding.tolist() for embedding in embeddings]

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


def sentence_transformer_model_name(name: str = EMBED_MODEL_NAME) -> str:
    """Map the configured model name to a local model; OpenAI model names fall back to the default."""
    if not name or name.startswith("text-embedding-"):
        return DEFAULT_SENTENCE_TRANSFORMER_MODEL
    return name


def create_embedding_provider(name: str = None, settings: OpenAISettings = None) -> IEmbeddingProvider:
    """Build the provider selected by ``EMBED_PROVIDER``."""
    name = name or EMBED_PROVIDER
    if name == "openai":
        settings = settings or OpenAISettings()
        return OpenAIEmbedding(api_key=settings.api_key, base_url=settings.base_url)
    if name == "ollama":
        return OllamaEmbedding()
    if name == "sentence-transformers":
        return SentenceTransformerEmbedding(sentence_transformer_model_name())
    if name == "hash":
        return DeterministicHashEmbedding(EMBED_DIM)
    raise ValueError(f"Unknown embedding provider: {name}")


class EmbeddingService:
    """
    Cache-fronted embedding calls.

    Single texts hit the cache first. Batches are split into cached and
    uncached texts; only the uncached ones reach the provider, in one call,
    and the results are merged back into input order and cached.
    """

    def __init__(self, provider: IEmbeddingProvider, cache: EmbeddingCache = None,
                 timeout_sec: float = EMBED_TIMEOUT_SEC):
        self.provider = provider
        self.cache = cache if cache is not None else EmbeddingCache()
        self.timeout_sec = timeout_sec

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    @property
    def dimension(self) -> int:
        return self.provider.get_dimension()

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        cached = self.cache.get(text)
        if cached is not None:
            return cached

        vector = await self._call(self.provider.embed_text(text))
        self._check_dimension(vector)
        self.cache.put(text, vector)
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if any(not text or not text.strip() for text in texts):
            raise ValueError("Cannot embed empty text")

        results: List[Optional[List[float]]] = [None] * len(texts)
        uncached = []
        for i, text in enumerate(texts):
            cached = self.cache.get(text)
            if cached is None:
                uncached.append(i)
            else:
                results[i] = cached

        if uncached:
            vectors = await self._call(self.provider.embed_batch([texts[i] for i in uncached]))
            if len(vectors) != len(uncached):
                raise ProviderUnavailable(
                    f"Embedding count mismatch: sent {len(uncached)}, received {len(vectors)}"
                )
            for i, vector in zip(uncached, vectors):
                self._check_dimension(vector)
                results[i] = vector
                self.cache.put(texts[i], vector)

        logger.debug(f"Embedded batch of {len(texts)} texts ({len(texts) - len(uncached)} cached)")
        return results

    async def _call(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            logger.log_provider_call(self.model_name, "embed", "failed", {"error": "timeout"})
            raise ProviderUnavailable(f"Embedding timed out after {self.timeout_sec}s") from e

    def _check_dimension(self, vector: List[float]) -> None:
        expected = self.dimension
        if len(vector) != expected:
            raise ProviderUnavailable(
                f"Embedding has dimension {len(vector)}, expected {expected}"
            )
