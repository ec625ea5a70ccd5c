"""
Record types flowing between pipeline stages.

Items and reference entries are explicit dataclasses rather than loose dicts:
required fields are validated once, when a record enters a stage (from storage
or from a hand-off file), so algorithm code never probes for optional keys.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import numpy as np

from .utils.vector_math import as_vector

LOGGER = logging.getLogger(__name__)

# Text fields accepted from storage rows / hand-off records, in priority order.
_TEXT_FIELDS = ("text", "keyword", "category_name", "name")


@dataclass
class KeywordItem:
    """
    A text item to embed and group.

    Attributes
    ----------
    id : int
        Unique within a job.
    text : str
        Text sent to the embedding provider.
    source : Optional[str]
        Origin used by duplicate detection and pairing; ``None`` means unknown.
    embedding : Optional[np.ndarray]
        Attached by ``KeywordEmbedder``.
    embedding_source : str
        ``"cache"``, ``"provider"`` or ``"unknown"``.
    group : Optional[str]
        Assigned label or cluster id.
    duplicate : bool
        Set by incremental clustering when the item duplicates a member.
    extra : Dict[str, Any]
        Passthrough storage fields.
    """

    id: int
    text: str
    source: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    embedding_source: str = "unknown"
    group: Optional[str] = None
    duplicate: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0

    @property
    def source_key(self) -> str:
        return self.source or "unknown"

    def to_record(self) -> Dict[str, Any]:
        """Serializable dict for hand-off files."""
        record = dict(self.extra)
        record.update(
            {
                "id": self.id,
                "text": self.text,
                "source": self.source,
                "embedding": (
                    self.embedding.tolist() if self.embedding is not None else None
                ),
                "embeddingSource": self.embedding_source,
            }
        )
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "KeywordItem":
        """
        Build an item from a storage row or hand-off record.

        Raises
        ------
        ValueError
            If ``id`` is missing or not an integer.
        """
        if "id" not in record or record["id"] is None:
            raise ValueError(f"Record without id: {dict(record)!r:.200}")
        item_id = int(record["id"])
        text = ""
        for key in _TEXT_FIELDS:
            value = record.get(key)
            if isinstance(value, str):
                text = value
                break
        known = {"id", "source", "embedding", "vector", "embeddingSource"}
        known.update(_TEXT_FIELDS)
        embedding = record.get("embedding")
        if embedding is None:
            embedding = record.get("vector")
        return cls(
            id=item_id,
            text=text,
            source=record.get("source"),
            embedding=as_vector(embedding),
            embedding_source=record.get("embeddingSource") or "unknown",
            extra={k: v for k, v in record.items() if k not in known},
        )


@dataclass
class ReferenceEntry:
    """
    Entry of the reference set that items are matched against.

    Categories use the category name as both ``label`` and ``text``; typing
    samples carry a class ``label`` and an example ``text``.
    """

    id: int
    label: str
    text: str
    embedding: Optional[np.ndarray] = None
    embedding_source: str = "unknown"

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "text": self.text,
            "embedding": (
                self.embedding.tolist() if self.embedding is not None else None
            ),
            "embeddingSource": self.embedding_source,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ReferenceEntry":
        if record.get("id") is None:
            raise ValueError(f"Reference record without id: {dict(record)!r:.200}")
        label = record.get("label")
        if label is None:
            label = record.get("category_name") or record.get("name")
        text = record.get("text")
        if text is None:
            text = label
        if not isinstance(label, str) or not label.strip():
            raise ValueError(f"Reference record {record.get('id')} has no label")
        return cls(
            id=int(record["id"]),
            label=str(label),
            text=str(text or ""),
            embedding=as_vector(record.get("embedding")),
            embedding_source=record.get("embeddingSource") or "unknown",
        )
