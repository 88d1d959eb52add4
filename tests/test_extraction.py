"""
Tests for memory extraction from evaluation model output.
"""

import asyncio
import json

import pytest

from recall.core.config import ExtractionSettings
from recall.core.errors import MalformedInput
from recall.core.schema import Memory
from recall.pipeline.extraction import (
    EvaluatedMemory,
    MemoryExtractor,
    build_candidate,
    parse_evaluation
)
from recall.vector.embeddings import EmbeddingService
from recall.vector.search import VectorSearchEngine

from fakes import ScriptedEmbeddingProvider, unit_vector


def evaluation(*memories):
    return json.dumps({"memories": list(memories)})


def make_extractor(store, provider):
    service = EmbeddingService(provider)
    engine = VectorSearchEngine(store, service)
    return MemoryExtractor(store, service, engine, ExtractionSettings(min_confidence=0.5, duplicate_threshold=0.98))


def test_parse_accepts_code_fence():
    raw = '```json\n{"memories": [{"summary": "Uses Rider", "should_save": true}]}\n```'

    result = parse_evaluation(raw)

    assert len(result.memories) == 1
    assert result.memories[0].summary == "Uses Rider"


def test_parse_rejects_malformed_json():
    with pytest.raises(MalformedInput):
        parse_evaluation("not json at all")


def test_parse_rejects_wrong_field_types():
    with pytest.raises(MalformedInput):
        parse_evaluation(evaluation({"summary": "Uses Rider", "should_save": "yes"}))
    with pytest.raises(MalformedInput):
        parse_evaluation(evaluation({"summary": "Uses Rider", "confidence": "high"}))


def test_build_candidate_appends_distinct_source():
    candidate = build_candidate(EvaluatedMemory(
        summary="Uses JetBrains Rider for .NET",
        source_text="I switched to Rider last month",
        should_save=True,
        confidence=0.9
    ))

    assert candidate.content == "Uses JetBrains Rider for .NET\n\nSource: I switched to Rider last month"
    assert candidate.metadata["origin"] == "memory_evaluation"
    assert candidate.metadata["source_text"] == "I switched to Rider last month"
    assert candidate.metadata["confidence"] == 0.9


def test_build_candidate_skips_matching_source():
    candidate = build_candidate(EvaluatedMemory(summary="Likes tea", source_text="likes tea"))

    assert candidate.content == "Likes tea"


def test_build_candidate_truncates_long_title():
    summary = "x" * 120
    candidate = build_candidate(EvaluatedMemory(summary=summary))

    assert candidate.title == "x" * 80 + "..."
    assert candidate.content == summary


def test_build_candidate_clamps_confidence():
    assert build_candidate(EvaluatedMemory(summary="a", confidence=1.7)).confidence == 1.0
    assert build_candidate(EvaluatedMemory(summary="a", confidence=0.12345)).confidence == 0.123


def test_build_candidate_rejects_unsaveable():
    assert build_candidate(EvaluatedMemory(summary="a", should_save=False)) is None
    assert build_candidate(EvaluatedMemory(summary="   ")) is None
    assert build_candidate(EvaluatedMemory()) is None


def test_low_confidence_is_rejected(store):
    extractor = make_extractor(store, ScriptedEmbeddingProvider())

    report = asyncio.run(extractor.extract(evaluation(
        {"summary": "Maybe likes jazz", "should_save": True, "confidence": 0.4},
        {"summary": "Works in Berlin", "should_save": True, "confidence": 0.6}
    ), "u1"))

    assert report.parsed == 2
    assert report.rejected == 1
    assert report.saved == 1
    memories = asyncio.run(store.list_by_user("u1"))
    assert [m.content for m in memories] == ["Works in Berlin"]


def test_near_duplicate_is_skipped(store, add_memory):
    """Similarity 0.985 against an existing memory is a duplicate; 0.97 is new."""
    add_memory("u1", "Uses JetBrains Rider", [1.0, 0.0])
    provider = ScriptedEmbeddingProvider(vectors={
        "Uses Rider for .NET work": unit_vector(0.985),
        "Uses Rider at the office": unit_vector(0.97)
    })
    extractor = make_extractor(store, provider)

    report = asyncio.run(extractor.extract(evaluation(
        {"summary": "Uses Rider for .NET work", "should_save": True},
        {"summary": "Uses Rider at the office", "should_save": True}
    ), "u1"))

    assert report.duplicates == 1
    assert report.saved == 1
    assert asyncio.run(store.count_by_user("u1")) == 2


def test_repeated_candidates_in_one_batch(store):
    provider = ScriptedEmbeddingProvider()
    extractor = make_extractor(store, provider)

    report = asyncio.run(extractor.extract(evaluation(
        {"summary": "Has a dog named Rex"},
        {"summary": "Has a dog named Rex"}
    ), "u1"))

    assert report.rejected == 1
    assert report.saved == 1
    assert provider.calls == [["Has a dog named Rex"]]


def test_candidates_are_embedded_in_one_call(store):
    provider = ScriptedEmbeddingProvider(vectors={"A": [1.0, 0.0], "B": [0.0, 1.0]})
    extractor = make_extractor(store, provider)

    report = asyncio.run(extractor.extract(evaluation({"summary": "A"}, {"summary": "B"}), "u1"))

    assert report.saved == 2
    assert provider.calls == [["A", "B"]]
    assert report.summary_text == "A; B"


def test_saved_memory_carries_metadata(store):
    extractor = make_extractor(store, ScriptedEmbeddingProvider())

    report = asyncio.run(extractor.extract(evaluation(
        {"summary": "Prefers dark mode", "source_text": "always use dark themes", "confidence": 0.8}
    ), "u1"))

    memory = asyncio.run(store.get(report.saved_ids[0], "u1"))
    assert memory.title == "Prefers dark mode"
    assert memory.metadata["pipeline"] == "completion"
    assert memory.metadata["confidence"] == 0.8
    assert len(asyncio.run(store.fetch_embeddings("u1", 2))) == 1


def test_malformed_output_saves_nothing(store):
    extractor = make_extractor(store, ScriptedEmbeddingProvider())

    report = asyncio.run(extractor.extract("I could not find anything", "u1"))

    assert report.parsed == 0
    assert report.saved == 0
    assert report.summary_text is None


def test_provider_failure_counts_all_candidates_failed(store):
    extractor = make_extractor(store, ScriptedEmbeddingProvider(fail=True))

    report = asyncio.run(extractor.extract(evaluation({"summary": "A"}, {"summary": "B"}), "u1"))

    assert report.failed == 2
    assert report.saved == 0
    assert asyncio.run(store.count_by_user("u1")) == 0


def test_memory_without_embedding_is_recognized_as_duplicate(store):
    """Stored memories missing a vector are embedded before the duplicate check."""
    asyncio.run(store.create(Memory(user_id="u1", content="Works in Berlin")))
    provider = ScriptedEmbeddingProvider()
    extractor = make_extractor(store, provider)

    report = asyncio.run(extractor.extract(evaluation({"summary": "Works in Berlin"}), "u1"))

    assert report.duplicates == 1
    assert report.saved == 0
    assert asyncio.run(store.count_by_user("u1")) == 1
    assert provider.calls == [["Works in Berlin"]]
