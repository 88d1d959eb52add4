"""
Memory extraction from the evaluation model's output.

The evaluation model proposes memories as JSON. Proposals are validated
against a strict schema, filtered, embedded in one batch, checked against
the user's existing memories for near duplicates and persisted.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.config import ExtractionSettings
from ..core.dao import MemoryStore
from ..core.errors import MalformedInput, ProviderUnavailable, StorageFailure
from ..core.schema import Memory, MemoryCandidate, MemoryEmbedding
from ..util.logging import logger
from ..vector.embeddings import EmbeddingService
from ..vector.search import VectorSearchEngine

TITLE_MAX_LENGTH = 80

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class EvaluatedMemory(BaseModel):
    """One proposal from the evaluation model."""
    model_config = ConfigDict(strict=True, extra="ignore")

    summary: Optional[str] = None
    source_text: Optional[str] = None
    should_save: Optional[bool] = None
    confidence: Optional[float] = None


class MemoryEvaluationResult(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    memories: List[EvaluatedMemory] = Field(default_factory=list)


@dataclass
class ExtractionReport:
    parsed: int = 0
    saved_ids: List[str] = field(default_factory=list)
    duplicates: int = 0
    rejected: int = 0
    failed: int = 0
    summary_text: Optional[str] = None

    @property
    def saved(self) -> int:
        return len(self.saved_ids)


def parse_evaluation(raw_output: str) -> MemoryEvaluationResult:
    """Validate raw model output, tolerating a surrounding code fence.

    Raises:
        MalformedInput: the output is not valid JSON of the expected shape.
    """
    text = (raw_output or "").strip()
    match = _CODE_FENCE.match(text)
    if match:
        text = match.group(1)

    try:
        return MemoryEvaluationResult.model_validate_json(text)
    except ValidationError as e:
        raise MalformedInput(f"Memory evaluation output did not match the expected schema: {e.error_count()} errors") from e


def build_candidate(item: EvaluatedMemory) -> Optional[MemoryCandidate]:
    """Turn one proposal into a candidate, or None when it should not be saved."""
    if item.should_save is False:
        return None

    summary = (item.summary or "").strip()
    if not summary:
        return None

    source = (item.source_text or "").strip() or None

    content = summary
    if source and source.lower() != summary.lower():
        content = f"{summary}\n\nSource: {source}"

    title = summary if len(summary) <= TITLE_MAX_LENGTH else summary[:TITLE_MAX_LENGTH] + "..."

    metadata = {"origin": "memory_evaluation", "pipeline": "completion"}
    confidence = None
    if source:
        metadata["source_text"] = source
    if item.confidence is not None:
        confidence = round(min(max(item.confidence, 0.0), 1.0), 3)
        metadata["confidence"] = confidence

    return MemoryCandidate(
        summary=summary,
        title=title,
        content=content,
        metadata=metadata,
        source_text=source,
        confidence=confidence
    )


class MemoryExtractor:
    """Persists new memories proposed by the evaluation model."""

    def __init__(self, store: MemoryStore, embedding_service: EmbeddingService,
                 search_engine: VectorSearchEngine, settings: ExtractionSettings = None):
        self.store = store
        self.embedding_service = embedding_service
        self.search_engine = search_engine
        self.settings = settings or ExtractionSettings()

    def select_candidates(self, evaluation: MemoryEvaluationResult) -> Tuple[List[MemoryCandidate], int]:
        """Build candidates, dropping unsaveable, repeated and low-confidence ones.

        Returns the survivors and the number rejected.
        """
        candidates = []
        seen_content = set()
        rejected = 0

        for item in evaluation.memories:
            candidate = build_candidate(item)
            if candidate is None or candidate.content in seen_content:
                rejected += 1
                continue
            seen_content.add(candidate.content)

            if candidate.confidence is not None and candidate.confidence < self.settings.min_confidence:
                rejected += 1
                continue
            candidates.append(candidate)

        return candidates, rejected

    async def extract(self, raw_output: str, user_id: str) -> ExtractionReport:
        """Parse, filter, deduplicate and persist memories from ``raw_output``.

        Never raises for bad model output or provider trouble; failures are
        logged and reflected in the report.
        """
        report = ExtractionReport()

        try:
            evaluation = parse_evaluation(raw_output)
        except MalformedInput as e:
            logger.log_operation("extraction.parse", "failed", {"user_id": user_id, "error": str(e)})
            return report

        report.parsed = len(evaluation.memories)
        candidates, report.rejected = self.select_candidates(evaluation)
        if candidates:
            report.summary_text = "; ".join(candidate.summary for candidate in candidates)
        else:
            logger.log_extraction(user_id, report.parsed, 0, 0, report.rejected, 0)
            return report

        # memories stored without a vector must be searchable before the duplicate checks
        try:
            await self.search_engine.backfill_embeddings(user_id)
        except StorageFailure as e:
            logger.log_operation("extraction.backfill", "failed", {"user_id": user_id, "error": str(e)})

        try:
            vectors = await self.embedding_service.embed_batch([c.embedding_text for c in candidates])
        except (ProviderUnavailable, ValueError) as e:
            logger.log_operation("extraction.embed", "failed", {"user_id": user_id, "error": str(e)})
            report.failed = len(candidates)
            logger.log_extraction(user_id, report.parsed, 0, 0, report.rejected, report.failed)
            return report

        if len(vectors) != len(candidates):
            logger.log_operation("extraction.embed", "failed", {
                "user_id": user_id,
                "error": f"expected {len(candidates)} vectors, received {len(vectors)}"
            })
            report.failed = len(candidates)
            logger.log_extraction(user_id, report.parsed, 0, 0, report.rejected, report.failed)
            return report

        for candidate, vector in zip(candidates, vectors):
            await self._persist(candidate, vector, user_id, report)

        logger.log_extraction(user_id, report.parsed, report.saved, report.duplicates, report.rejected, report.failed)
        return report

    async def _persist(self, candidate: MemoryCandidate, vector: List[float], user_id: str,
                       report: ExtractionReport) -> None:
        threshold = self.settings.duplicate_threshold
        try:
            matches = await self.search_engine.search_similar(user_id, vector, limit=1, threshold=threshold)
            if matches and matches[0].similarity_score >= threshold:
                report.duplicates += 1
                logger.debug(f"Skipping near-duplicate memory (similarity {matches[0].similarity_score:.3f})")
                return

            memory = await self.store.create(
                Memory(
                    user_id=user_id,
                    content=candidate.content,
                    title=candidate.title,
                    content_type="text",
                    metadata=candidate.metadata
                ),
                MemoryEmbedding(memory_id="", vector=vector, model_name=self.embedding_service.model_name)
            )
        except StorageFailure as e:
            report.failed += 1
            logger.log_memory_operation("extract", None, user_id, status="failed", details={"error": str(e)})
            return

        report.saved_ids.append(memory.id)
