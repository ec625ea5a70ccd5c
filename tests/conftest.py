"""Shared fixtures: deterministic fake embedding models and item builders."""

import zlib
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from keyword_grouping.records import KeywordItem, ReferenceEntry
from keyword_grouping.utils.text_utils import normalize_cache_key

DIM = 8


def text_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Stable pseudo-random vector for ``text`` (case and padding insensitive)."""
    seed = zlib.crc32(normalize_cache_key(text).encode("utf-8"))
    return np.random.default_rng(seed).normal(size=dim)


class FakeEmbeddingModel:
    """
    LangChain-style model with ``embed_documents``.

    ``vectors`` pins vectors for specific (normalized) texts; other texts get
    :func:`text_vector`. ``failures`` maps a 1-based call number to the
    exception raised by that call.
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        failures: Optional[Dict[int, BaseException]] = None,
        fail_from: Optional[int] = None,
        fail_with: Optional[BaseException] = None,
        dim: int = DIM,
    ):
        self.vectors = {normalize_cache_key(k): v for k, v in (vectors or {}).items()}
        self.failures = dict(failures or {})
        self.fail_from = fail_from
        self.fail_with = fail_with
        self.dim = dim
        self.calls: List[List[str]] = []

    def embed_documents(self, texts):
        self.calls.append(list(texts))
        call_no = len(self.calls)
        if call_no in self.failures:
            raise self.failures[call_no]
        if self.fail_from is not None and call_no >= self.fail_from:
            raise self.fail_with
        return [self._vector(t).tolist() for t in texts]

    def _vector(self, text: str) -> np.ndarray:
        key = normalize_cache_key(text)
        if key in self.vectors:
            return np.asarray(self.vectors[key], dtype=np.float64)
        return text_vector(text, self.dim)

    @property
    def texts_sent(self) -> List[str]:
        return [t for call in self.calls for t in call]


class StatusError(Exception):
    """Client exception carrying an HTTP status, like SDK errors do."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def no_sleep(_seconds: float) -> None:
    return None


def make_item(item_id: int, vector=None, text: Optional[str] = None, source=None) -> KeywordItem:
    return KeywordItem(
        id=item_id,
        text=text if text is not None else f"keyword {item_id}",
        source=source,
        embedding=None if vector is None else np.asarray(vector, dtype=np.float64),
    )


def make_reference(ref_id: int, label: str, vector=None, text: Optional[str] = None) -> ReferenceEntry:
    return ReferenceEntry(
        id=ref_id,
        label=label,
        text=text if text is not None else label,
        embedding=None if vector is None else np.asarray(vector, dtype=np.float64),
    )


def vector_with_similarity(base, similarity: float, orthogonal) -> np.ndarray:
    """Unit vector at cosine ``similarity`` to unit ``base`` inside span(base, orthogonal)."""
    base = np.asarray(base, dtype=np.float64)
    orthogonal = np.asarray(orthogonal, dtype=np.float64)
    return similarity * base + np.sqrt(1.0 - similarity ** 2) * orthogonal


@pytest.fixture
def fake_model():
    return FakeEmbeddingModel()


@pytest.fixture
def five_item_scenario():
    """Items 1-2 at similarity 0.9, items 3-4 at 0.85, item 5 isolated."""
    e = np.eye(6)
    items = [
        make_item(1, e[0]),
        make_item(2, vector_with_similarity(e[0], 0.9, e[1])),
        make_item(3, e[2]),
        make_item(4, vector_with_similarity(e[2], 0.85, e[3])),
        make_item(5, e[4]),
    ]
    return items
