"""
Tests for hypothetical document generation.
"""

import asyncio

import pytest

from recall.core.config import HydeSettings
from recall.core.errors import Disabled, ProviderUnavailable
from recall.llm.hyde import HydeGenerator
from recall.llm.prompts import HYDE_SYSTEM_PROMPT
from recall.vector.cache import HydeCache
from recall.vector.embeddings import EmbeddingService

from fakes import ScriptedEmbeddingProvider, ScriptedGenerationClient


def make_generator(client, enabled=True, timeout_sec=10.0, provider=None):
    settings = HydeSettings(enabled=enabled, model="hyde-model", max_tokens=100, temperature=0.7,
                            timeout_sec=timeout_sec)
    service = EmbeddingService(provider or ScriptedEmbeddingProvider())
    return HydeGenerator(client, service, settings, HydeCache(max_size=50))


def test_disabled_generator_raises():
    generator = make_generator(ScriptedGenerationClient(), enabled=False)

    with pytest.raises(Disabled):
        asyncio.run(generator.generate("What IDE do I use?"))


def test_blank_query_rejected():
    generator = make_generator(ScriptedGenerationClient())

    with pytest.raises(ValueError):
        asyncio.run(generator.generate("   "))


def test_generate_uses_hyde_prompt_and_budget():
    client = ScriptedGenerationClient(completions={HYDE_SYSTEM_PROMPT: "You use JetBrains Rider."})
    generator = make_generator(client)

    document = asyncio.run(generator.generate("  What IDE do I use?  "))

    assert document == "You use JetBrains Rider."
    call = client.complete_calls[0]
    assert call["prompt"] == "What IDE do I use?"
    assert call["system_prompt"] == HYDE_SYSTEM_PROMPT
    assert call["model"] == "hyde-model"
    assert call["max_tokens"] == 100


def test_generated_document_is_cached_case_insensitively():
    client = ScriptedGenerationClient(completions={HYDE_SYSTEM_PROMPT: "You use JetBrains Rider."})
    generator = make_generator(client)

    asyncio.run(generator.generate("What IDE do I use?"))
    second = asyncio.run(generator.generate("what ide do i use?"))

    assert second == "You use JetBrains Rider."
    assert len(client.complete_calls) == 1


def test_empty_output_falls_back_to_query():
    """Whitespace-only output returns the trimmed query and is not cached."""
    client = ScriptedGenerationClient(completions={HYDE_SYSTEM_PROMPT: "   "})
    generator = make_generator(client)

    first = asyncio.run(generator.generate("  What IDE do I use? "))
    asyncio.run(generator.generate("What IDE do I use?"))

    assert first == "What IDE do I use?"
    assert len(client.complete_calls) == 2
    assert len(generator.cache) == 0


def test_provider_failure_propagates():
    client = ScriptedGenerationClient(complete_error=ProviderUnavailable("down"))
    generator = make_generator(client)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(generator.generate("What IDE do I use?"))


def test_slow_generation_times_out():
    class SlowClient(ScriptedGenerationClient):
        async def complete(self, prompt, **kwargs):
            await asyncio.sleep(1)
            return "late"

    generator = make_generator(SlowClient(), timeout_sec=0.01)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(generator.generate("What IDE do I use?"))


def test_get_embedding_embeds_document():
    provider = ScriptedEmbeddingProvider(vectors={"You use JetBrains Rider.": [0.0, 1.0]})
    client = ScriptedGenerationClient(completions={HYDE_SYSTEM_PROMPT: "You use JetBrains Rider."})
    generator = make_generator(client, provider=provider)

    vector = asyncio.run(generator.get_embedding("What IDE do I use?"))

    assert vector == [0.0, 1.0]
    assert provider.calls == [["You use JetBrains Rider."]]
