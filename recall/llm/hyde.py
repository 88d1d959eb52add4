"""
Hypothetical document generation (HyDE) for retrieval.

A short, plausible knowledge-base entry is generated for the user's query and
embedded in place of (or alongside) the query itself, since such an entry
usually sits closer to stored memories than the question does.
"""

import asyncio
from typing import List

from ..core.config import HydeSettings
from ..core.errors import Disabled, ProviderUnavailable
from ..util.logging import logger
from ..vector.cache import HydeCache
from ..vector.embeddings import EmbeddingService
from .client import IGenerationClient
from .prompts import HYDE_SYSTEM_PROMPT


class HydeGenerator:
    """Generates and caches hypothetical documents for queries."""

    def __init__(self, client: IGenerationClient, embedding_service: EmbeddingService,
                 settings: HydeSettings = None, cache: HydeCache = None):
        self.client = client
        self.embedding_service = embedding_service
        self.settings = settings or HydeSettings()
        self.cache = cache if cache is not None else HydeCache()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    async def generate(self, query: str) -> str:
        """Return a hypothetical document answering ``query``.

        Raises:
            Disabled: HyDE is turned off.
            ValueError: the query is blank.
            ProviderUnavailable: the generation call failed or timed out.
        """
        if not self.settings.enabled:
            raise Disabled("HyDE generation is disabled")
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")

        cached = self.cache.get(query)
        if cached is not None:
            logger.debug("HyDE cache hit")
            return cached

        try:
            document = await asyncio.wait_for(
                self.client.complete(
                    query.strip(),
                    system_prompt=HYDE_SYSTEM_PROMPT,
                    model=self.settings.model,
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens
                ),
                timeout=self.settings.timeout_sec
            )
        except asyncio.TimeoutError as e:
            logger.log_provider_call(self.client.provider_name, "hyde", "failed", {"error": "timeout"})
            raise ProviderUnavailable(f"HyDE generation timed out after {self.settings.timeout_sec}s") from e

        document = (document or "").strip()
        if not document:
            logger.warning("HyDE generation returned empty output, falling back to the original query")
            return query.strip()

        self.cache.put(query, document)
        logger.log_provider_call(self.client.provider_name, "hyde", "success", {"length": len(document)})
        return document

    async def get_embedding(self, query: str) -> List[float]:
        """Embed the hypothetical document for ``query``."""
        document = await self.generate(query)
        return await self.embedding_service.embed(document)
