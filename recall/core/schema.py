"""
Record types for memories, their embeddings, search hits and extraction candidates.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

CONTENT_TYPES = ("text", "document", "note", "conversation")


@dataclass
class Memory:
    user_id: str
    content: str
    title: Optional[str] = None
    content_type: str = "text"
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def embedding_text(self) -> str:
        """Text that is sent to the embedding provider for this memory."""
        return self.content


@dataclass
class MemoryEmbedding:
    memory_id: str
    vector: List[float]
    model_name: str
    created_at: Optional[datetime] = None

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass
class SearchResult:
    """One ranked memory from a plain or hybrid similarity search."""
    memory: Memory
    similarity_score: float
    combined_score: float
    search_method: str = "query"  # "query", "hyde" or "combined"
    hyde_score: Optional[float] = None


@dataclass
class MemoryCandidate:
    """A memory proposed by the evaluation model, alive for one extraction pass."""
    summary: str
    title: str
    content: str
    metadata: Dict[str, Any]
    source_text: Optional[str] = None
    confidence: Optional[float] = None

    @property
    def embedding_text(self) -> str:
        return self.content
