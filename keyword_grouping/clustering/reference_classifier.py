"""
Assignment of items to labels of a reference set.

Strategies:
- ``nearest``: each reference entry is a candidate, the most similar entry's
  label wins (category assignment)
- ``centroid``: entries are grouped by label and compared through one
  centroid per label (class assignment)
- ``logreg``: logistic regression trained on the reference embeddings; the
  score is the predicted class probability
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
from sklearn.linear_model import LogisticRegression

from ..DEFAULT_CONSTS import RESULT_FIELDS
from ..errors import ValidationError
from ..records import KeywordItem, ReferenceEntry
from ..utils.text_utils import normalize_cache_key
from ..utils.vector_math import centroid, cosine_similarity, normalize_rows

LOGGER = logging.getLogger(__name__)

STRATEGIES = ("nearest", "centroid", "logreg")


def normalize_similarity(value: Optional[float]) -> Optional[float]:
    """
    Map a raw score onto [0, 1], rounded to 4 decimals.

    Values in (1, 100] are read as percentages. None and NaN stay None.

    Examples
    --------
    >>> normalize_similarity(0.87654)
    0.8765
    >>> normalize_similarity(87.5)
    0.875
    >>> normalize_similarity(-0.2)
    0.0
    """
    if value is None:
        return None
    value = float(value)
    if math.isnan(value):
        return None
    if 1.0 < value <= 100.0:
        value = value / 100.0
    return round(min(1.0, max(0.0, value)), 4)


@dataclass
class Assignment:
    """Label chosen for one item; ``label`` is None when the item has no vector."""

    item_id: int
    label: Optional[str]
    reference_id: Optional[int] = None
    similarity: Optional[float] = None

    def to_fields(self, kind: str) -> Dict[str, Optional[object]]:
        """Storage columns for job ``kind`` (see ``RESULT_FIELDS``)."""
        columns = RESULT_FIELDS[kind]
        fields = {columns["label"]: self.label}
        if "similarity" in columns:
            fields[columns["similarity"]] = self.similarity
        return fields


class ReferenceClassifier:
    """
    Classify embedded items against a reference set.

    Parameters
    ----------
    references : Sequence[ReferenceEntry]
        Entries with embeddings attached; entries without one are ignored.
    strategy : str
        'nearest', 'centroid' or 'logreg'.
    random_state : int
        Seed for the logistic regression solver.

    Raises
    ------
    ValidationError
        If fewer than two distinct labels have embeddings.
    ValueError
        On an unknown strategy.
    """

    def __init__(
        self,
        references: Sequence[ReferenceEntry],
        strategy: str = "nearest",
        random_state: int = 42,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(
                f"Unknown strategy: {strategy}. Choose one of {', '.join(STRATEGIES)}"
            )
        self.strategy = strategy
        self.random_state = random_state

        entries = [ref for ref in references if ref.has_embedding]
        if strategy == "nearest":
            entries = self._dedupe_by_label(entries)
        else:
            entries = self._canonical_labels(entries)
        labels = list(dict.fromkeys(ref.label for ref in entries))
        if len(labels) < 2:
            raise ValidationError(
                f"At least 2 distinct labels with embeddings are required, got {len(labels)}"
            )

        self.entries = entries
        self.labels = labels
        # first reference id per label, reported for label-level strategies
        self._label_ref_id = {}
        for ref in entries:
            self._label_ref_id.setdefault(ref.label, ref.id)

        if strategy == "nearest":
            self._candidates = [(ref.label, ref.id) for ref in entries]
            vectors = [ref.embedding for ref in entries]
        elif strategy == "centroid":
            self._candidates = [(label, self._label_ref_id[label]) for label in labels]
            vectors = [
                centroid(ref.embedding for ref in entries if ref.label == label)
                for label in labels
            ]
        else:
            vectors = [ref.embedding for ref in entries]
            self._fit_logreg(vectors, [ref.label for ref in entries])

        self.dim = min(v.size for v in vectors)
        if strategy != "logreg":
            self._matrix = normalize_rows(np.vstack([v[: self.dim] for v in vectors]))

        LOGGER.info(
            f"Reference classifier ({strategy}): {len(entries)} entries, "
            f"{len(labels)} labels, dim={self.dim}"
        )

    @staticmethod
    def _canonical_labels(entries: List[ReferenceEntry]) -> List[ReferenceEntry]:
        """Spell every label as its first occurrence, compared case-insensitively."""
        spelling: Dict[str, str] = {}
        canonical = []
        for ref in entries:
            label = spelling.setdefault(normalize_cache_key(ref.label), ref.label)
            canonical.append(ref if label == ref.label else replace(ref, label=label))
        return canonical

    @staticmethod
    def _dedupe_by_label(entries: List[ReferenceEntry]) -> List[ReferenceEntry]:
        seen = set()
        unique = []
        for ref in entries:
            key = normalize_cache_key(ref.label)
            if key in seen:
                continue
            seen.add(key)
            unique.append(ref)
        if len(unique) < len(entries):
            LOGGER.info(f"Ignored {len(entries) - len(unique)} duplicate reference labels")
        return unique

    def _fit_logreg(self, vectors: List[np.ndarray], labels: List[str]) -> None:
        dims = {v.size for v in vectors}
        if len(dims) != 1:
            raise ValidationError(
                f"Reference embeddings have inconsistent lengths: {sorted(dims)}"
            )
        X = normalize_rows(np.vstack(vectors))
        self._model = LogisticRegression(max_iter=1000, random_state=self.random_state)
        self._model.fit(X, labels)
        LOGGER.info(f"Trained logistic regression on {len(labels)} samples")

    def _classify_one(self, item: KeywordItem) -> Assignment:
        if not item.has_embedding:
            return Assignment(item.id, None)

        if self.strategy == "logreg":
            if item.embedding.size != self.dim:
                LOGGER.warning(
                    f"Item {item.id} has embedding length {item.embedding.size}, "
                    f"expected {self.dim}; not classified"
                )
                return Assignment(item.id, None)
            x = normalize_rows(item.embedding.reshape(1, -1))
            probs = self._model.predict_proba(x)[0]
            best = int(np.argmax(probs))
            label = str(self._model.classes_[best])
            return Assignment(
                item.id,
                label,
                self._label_ref_id.get(label),
                normalize_similarity(probs[best]),
            )

        if item.embedding.size >= self.dim:
            query = normalize_rows(item.embedding[: self.dim].reshape(1, -1))[0]
            sims = np.clip(self._matrix @ query, -1.0, 1.0)
        else:
            sims = np.array([cosine_similarity(item.embedding, row) for row in self._matrix])
        best = int(np.argmax(sims))
        label, ref_id = self._candidates[best]
        return Assignment(item.id, label, ref_id, normalize_similarity(sims[best]))

    def classify(self, items: Iterable[KeywordItem]) -> List[Assignment]:
        """
        Pick a label for every item.

        Returns
        -------
        List[Assignment]
            One assignment per item, in input order.
        """
        return [self._classify_one(item) for item in items]
