"""Shared key constants and defaults for the keyword grouping pipeline.

This module defines frozen-dataclass constants that act as the single source of
truth for string-keyed interfaces shared across sub-packages:

* :data:`DEFAULT_STAGES`: stage names carried by ``progress`` events.
* :data:`DEFAULT_EVENT_KEYS`: event ``type`` values of the NDJSON stream.
* :data:`DEFAULT_HANDOFF_KEYS`: top-level array fields of hand-off documents.
* :data:`RESULT_FIELDS`: storage columns written per job kind.

Overriding defaults
-------------------
All singletons are ``frozen=True`` dataclass instances. To use different names
for one run, create a modified copy with :func:`dataclasses.replace`::

    import dataclasses
    from keyword_grouping.DEFAULT_CONSTS import DEFAULT_HANDOFF_KEYS

    keys = dataclasses.replace(DEFAULT_HANDOFF_KEYS, references="classes")
"""

from dataclasses import dataclass
from typing import Dict

__all__ = [
    "StageNames",
    "EventTypes",
    "HandoffKeys",
    "DEFAULT_STAGES",
    "DEFAULT_EVENT_KEYS",
    "DEFAULT_HANDOFF_KEYS",
    "RESULT_FIELDS",
    "NOISE_LABEL",
    "DEFAULT_EMBEDDING_MODEL",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_INTER_CHUNK_DELAY",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_CLUSTER_THRESHOLD",
    "DEFAULT_INCREMENTAL_THRESHOLD",
    "DEFAULT_DUPLICATE_THRESHOLD",
    "DEFAULT_DBSCAN_EPS",
    "DEFAULT_DBSCAN_MIN_PTS",
    "MAX_ERROR_DETAIL_CHARS",
]


# ---------------------------------------------------------------------------
# Progress stage names
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageNames:
    """Stage names reported in ``progress`` events.

    Attributes
    ----------
    reference : str
        Embedding of the reference set (categories or class samples).
    items : str
        Embedding of target keywords and streaming them to the hand-off file.
    categorization : str
        Nearest-category assignment over the hand-off file.
    typing : str
        Class assignment over the hand-off file.
    clustering : str
        Similarity clustering over the hand-off file.
    """

    reference: str = "embeddings-reference"
    items: str = "embeddings"
    categorization: str = "categorization"
    typing: str = "typing"
    clustering: str = "clustering"


# ---------------------------------------------------------------------------
# Event stream types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventTypes:
    """Values of the ``type`` field in the NDJSON event stream.

    ``done``, ``stopped`` and ``error`` are terminal: exactly one of them closes
    a job's stream.
    """

    progress: str = "progress"
    result: str = "result"
    error: str = "error"
    done: str = "done"
    stopped: str = "stopped"


# ---------------------------------------------------------------------------
# Hand-off document fields
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HandoffKeys:
    """Top-level array fields of the categorization hand-off document."""

    references: str = "categories"
    items: str = "keywords"


DEFAULT_STAGES = StageNames()
DEFAULT_EVENT_KEYS = EventTypes()
DEFAULT_HANDOFF_KEYS = HandoffKeys()

# Storage columns written by ``write_assignment`` per job kind.
RESULT_FIELDS: Dict[str, Dict[str, str]] = {
    "categorization": {"label": "category_name", "similarity": "category_similarity"},
    "typing": {"label": "class_name", "similarity": "class_similarity"},
    "clustering": {"label": "cluster_label"},
}

NOISE_LABEL: str = "noise"

DEFAULT_EMBEDDING_MODEL: str = "text-embedding-3-small"

# Provider chunking; 64 inputs keeps single requests well under token limits.
DEFAULT_CHUNK_SIZE: int = 64
DEFAULT_INTER_CHUNK_DELAY: float = 0.05

# Keyset page size when reading keywords from storage.
DEFAULT_PAGE_SIZE: int = 1000

DEFAULT_CLUSTER_THRESHOLD: float = 0.5
DEFAULT_INCREMENTAL_THRESHOLD: float = 0.7
DEFAULT_DUPLICATE_THRESHOLD: float = 0.95
DEFAULT_DBSCAN_EPS: float = 0.5
DEFAULT_DBSCAN_MIN_PTS: int = 2

MAX_ERROR_DETAIL_CHARS: int = 1024
