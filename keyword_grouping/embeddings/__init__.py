"""
Embedding utilities for the keyword grouping pipeline.

This package provides modular components for working with embeddings:

- cache: persistent and in-memory embedding caches keyed by (text, model)
- provider: adapter over LangChain / sentence-transformers embedding models
- keyword_embedder: KeywordEmbedder for cache-aware, chunked batch embedding
- io: streaming hand-off writers/readers and keyset pagination

Recommended usage:
    from keyword_grouping.embeddings import KeywordEmbedder, EmbeddingProvider
    from keyword_grouping.embeddings.io import JsonLinesWriter, iter_json_lines
"""

from .cache import EmbeddingCache, InMemoryEmbeddingCache, SQLiteEmbeddingCache
from .keyword_embedder import EmbeddingStats, FetchProgress, KeywordEmbedder
from .provider import EmbeddingProvider, classify_provider_error

__all__ = [
    "EmbeddingCache",
    "InMemoryEmbeddingCache",
    "SQLiteEmbeddingCache",
    "EmbeddingProvider",
    "classify_provider_error",
    "EmbeddingStats",
    "FetchProgress",
    "KeywordEmbedder",
]
