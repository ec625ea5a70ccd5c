"""
Keyword Grouping - Embedding pipeline and grouping engine for keyword sets.

This package embeds large keyword collections through a cache-aware batch
embedder and groups them, including:

- Embeddings: provider adapter, embedding cache, batch embedder and streaming
  hand-off I/O
- Clustering: connected components, DBSCAN, incremental assignment and
  reference-set classification
- Pipeline: job orchestration, NDJSON event stream, job registry and worker
  supervision
- Storage: keyword store interface with a SQLite adapter
"""

__version__ = "1.0.0"

from keyword_grouping.DEFAULT_CONSTS import (  # noqa: E402
    DEFAULT_EVENT_KEYS,
    DEFAULT_HANDOFF_KEYS,
    DEFAULT_STAGES,
    EventTypes,
    HandoffKeys,
    StageNames,
)
from keyword_grouping.config import PipelineConfig  # noqa: E402
from keyword_grouping.records import KeywordItem, ReferenceEntry  # noqa: E402

__all__ = [
    "StageNames",
    "EventTypes",
    "HandoffKeys",
    "DEFAULT_STAGES",
    "DEFAULT_EVENT_KEYS",
    "DEFAULT_HANDOFF_KEYS",
    "PipelineConfig",
    "KeywordItem",
    "ReferenceEntry",
]
