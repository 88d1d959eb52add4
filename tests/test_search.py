"""
Tests for plain and hybrid similarity search over stored memories.
"""

import asyncio

import pytest

from recall.core.config import HydeSettings
from recall.core.errors import ProviderUnavailable
from recall.core.schema import Memory
from recall.llm.hyde import HydeGenerator
from recall.llm.prompts import HYDE_SYSTEM_PROMPT
from recall.vector.embeddings import EmbeddingService
from recall.vector.search import VectorSearchEngine, fuse_scores

from fakes import ScriptedEmbeddingProvider, ScriptedGenerationClient, unit_vector

QUERY = "What IDE do I use?"
HYDE_DOCUMENT = "You switched to JetBrains Rider for .NET work."


def make_engine(store, provider=None, hyde_enabled=True):
    provider = provider or ScriptedEmbeddingProvider(vectors={
        QUERY: [1.0, 0.0],
        HYDE_DOCUMENT: [0.0, 1.0]
    })
    service = EmbeddingService(provider)
    client = ScriptedGenerationClient(completions={HYDE_SYSTEM_PROMPT: HYDE_DOCUMENT})
    hyde = HydeGenerator(client, service, HydeSettings(enabled=hyde_enabled, model="m", max_tokens=100,
                                                       temperature=0.7, timeout_sec=5))
    return VectorSearchEngine(store, service, hyde)


def test_threshold_keeps_only_close_matches(store, add_memory):
    """Two memories at 0.81 and 0.65 against threshold 0.7 yield only the 0.81 one."""
    add_memory("u1", "Switched to JetBrains Rider for .NET work", unit_vector(0.81), title="Rider")
    add_memory("u1", "Prefers VS Code for web projects", unit_vector(0.65), title="VS Code")
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=5, threshold=0.7))

    assert len(results) == 1
    assert results[0].memory.title == "Rider"
    assert results[0].similarity_score == pytest.approx(0.81, abs=1e-5)
    assert results[0].search_method == "query"


def test_results_sorted_and_limited(store, add_memory):
    for similarity in [0.2, 0.9, 0.5, 0.7]:
        add_memory("u1", f"memory {similarity}", unit_vector(similarity))
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=3, threshold=0.0))

    scores = [r.similarity_score for r in results]
    assert len(results) == 3
    assert scores == sorted(scores, reverse=True)
    assert scores[0] == pytest.approx(0.9, abs=1e-5)


def test_no_result_below_threshold(store, add_memory):
    for similarity in [0.1, 0.3, 0.55, 0.6, 0.95]:
        add_memory("u1", f"memory {similarity}", unit_vector(similarity))
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=10, threshold=0.58))

    assert len(results) == 2
    assert all(r.similarity_score >= 0.58 for r in results)


def test_search_is_scoped_to_user(store, add_memory):
    add_memory("u1", "mine", unit_vector(0.9))
    add_memory("u2", "someone else's", unit_vector(0.99))
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=10))

    assert [r.memory.content for r in results] == ["mine"]


def test_other_dimensions_are_ignored(store, add_memory):
    add_memory("u1", "two dims", [1.0, 0.0])
    add_memory("u1", "three dims", [1.0, 0.0, 0.0])
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=10))

    assert [r.memory.content for r in results] == ["two dims"]


def test_zero_vector_scores_zero(store, add_memory):
    add_memory("u1", "empty vector", [0.0, 0.0])
    engine = make_engine(store)

    results = asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=10))

    assert results[0].similarity_score == 0.0
    assert asyncio.run(engine.search_similar("u1", [1.0, 0.0], limit=10, threshold=0.1)) == []


def test_fuse_scores():
    """Single pathway keeps its score; both pathways take max(weighted, best)."""
    assert fuse_scores(None, 0.42) == 0.42
    assert fuse_scores(0.42, None) == 0.42
    for q, h in [(0.9, 0.1), (0.3, 0.8), (0.5, 0.5), (0.0, 1.0)]:
        expected = max(0.4 * q + 0.6 * h, max(q, h))
        assert fuse_scores(q, h) == pytest.approx(expected)
        assert fuse_scores(q, h) == pytest.approx(max(q, h))


def test_hybrid_search_merges_pathways(store, add_memory):
    add_memory("u1", "query only", unit_vector(0.9))
    add_memory("u1", "both", [0.70710678, 0.70710678])
    add_memory("u1", "hyde only", [0.3, 0.95393920])
    engine = make_engine(store)

    results = asyncio.run(engine.hybrid_search("u1", [1.0, 0.0], [0.0, 1.0], limit=10, threshold=0.5))

    by_content = {r.memory.content: r for r in results}
    assert by_content["query only"].search_method == "query"
    assert by_content["query only"].hyde_score is None
    assert by_content["hyde only"].search_method == "hyde"
    assert by_content["hyde only"].combined_score == pytest.approx(0.9539, abs=1e-4)
    assert by_content["both"].search_method == "combined"
    assert by_content["both"].combined_score == pytest.approx(0.7071, abs=1e-4)
    assert [r.memory.content for r in results] == ["hyde only", "query only", "both"]


def test_hybrid_search_respects_limit(store, add_memory):
    for similarity in [0.6, 0.7, 0.8, 0.9]:
        add_memory("u1", f"memory {similarity}", unit_vector(similarity))
    engine = make_engine(store)

    results = asyncio.run(engine.hybrid_search("u1", [1.0, 0.0], [0.0, 1.0], limit=2))

    assert len(results) == 2


def test_search_uses_hyde_when_enabled(store, add_memory):
    add_memory("u1", "Switched to JetBrains Rider", [0.0, 1.0])
    engine = make_engine(store)

    outcome = asyncio.run(engine.search("u1", QUERY, limit=5, threshold=0.5, use_hyde=True))

    assert outcome.hyde_used is True
    assert outcome.hypothetical_document == HYDE_DOCUMENT
    assert outcome.result_count == 1
    assert outcome.results[0].search_method == "hyde"


def test_search_degrades_when_hyde_disabled(store, add_memory):
    add_memory("u1", "Switched to JetBrains Rider", [0.0, 1.0])
    engine = make_engine(store, hyde_enabled=False)

    outcome = asyncio.run(engine.search("u1", QUERY, limit=5, threshold=0.5, use_hyde=True))

    assert outcome.hyde_used is False
    assert outcome.hypothetical_document is None
    assert outcome.results == []


def test_search_propagates_provider_failure(store):
    engine = make_engine(store, provider=ScriptedEmbeddingProvider(fail=True))

    with pytest.raises(ProviderUnavailable):
        asyncio.run(engine.search("u1", QUERY, use_hyde=False))


def test_search_backfills_missing_embeddings(store):
    asyncio.run(store.create(Memory(user_id="u1", content="stored while offline")))
    provider = ScriptedEmbeddingProvider(vectors={QUERY: [1.0, 0.0], "stored while offline": [1.0, 0.0]})
    engine = make_engine(store, provider=provider)

    outcome = asyncio.run(engine.search("u1", QUERY, limit=5, threshold=0.5, use_hyde=False))

    assert [r.memory.content for r in outcome.results] == ["stored while offline"]
    assert asyncio.run(store.list_unembedded("u1")) == []
