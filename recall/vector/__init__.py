"""
Embedding providers, caches and similarity search over stored memories.
"""

# Package initialization for vector module
from .cache import TimedCache, EmbeddingCache, HydeCache, normalize_text
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    OpenAIEmbedding,
    OllamaEmbedding,
    SentenceTransformerEmbedding,
    EmbeddingService,
    create_embedding_provider
)
from .search import VectorSearchEngine, SearchOutcome, fuse_scores

__all__ = [
    'TimedCache',
    'EmbeddingCache',
    'HydeCache',
    'normalize_text',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'OpenAIEmbedding',
    'OllamaEmbedding',
    'SentenceTransformerEmbedding',
    'EmbeddingService',
    'create_embedding_provider',
    'VectorSearchEngine',
    'SearchOutcome',
    'fuse_scores'
]
