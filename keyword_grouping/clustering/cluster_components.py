"""
Similarity clustering of embedded keyword items.

This module groups items by cosine similarity of their embeddings:
- Connected components of the similarity graph (edges at ``sim >= threshold``)
- DBSCAN over cosine distance (scikit-learn, precomputed distance matrix)
- Incremental assignment of new items to existing clusters, with duplicate
  suppression and same-batch pairing

Batch builders first drop repeated (normalized text, source) pairs, keeping the
first occurrence, and never emit clusters with fewer than two members. Every
function is a pure function of its inputs apart from the cluster id generator,
which callers may inject.

Examples
--------
>>> clusters = build_components(items, threshold=0.8)
>>> labels = assign_cluster_labels(clusters)
>>> update = add_to_existing(new_items, clusters, threshold=0.7)
>>> update.created_ids
['cluster_3']
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set

import numpy as np
from sklearn.cluster import DBSCAN

from ..DEFAULT_CONSTS import (
    DEFAULT_CLUSTER_THRESHOLD,
    DEFAULT_DBSCAN_EPS,
    DEFAULT_DBSCAN_MIN_PTS,
    DEFAULT_DUPLICATE_THRESHOLD,
    DEFAULT_INCREMENTAL_THRESHOLD,
)
from ..records import KeywordItem
from ..utils.text_utils import normalize_cache_key
from ..utils.vector_math import (
    centroid,
    cosine_similarity,
    normalize_rows,
    similarity_matrix,
)

LOGGER = logging.getLogger(__name__)

# Rows of the similarity matrix computed at once.
SIMILARITY_BLOCK_ROWS = 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClusterIdGenerator:
    """Thread-safe, process-local generator of ``cluster_<n>`` ids."""

    def __init__(self, prefix: str = "cluster", start: int = 1):
        self.prefix = prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            return f"{self.prefix}_{next(self._counter)}"


_DEFAULT_ID_GENERATOR = ClusterIdGenerator()


@dataclass
class Cluster:
    """
    Group of similar items.

    Attributes
    ----------
    id : str
        Opaque identifier.
    items : List[KeywordItem]
        Members in insertion order, without repeats.
    centroid : Optional[np.ndarray]
        Renormalized mean of the normalized member vectors; None when no
        member has an embedding.
    created_at, updated_at : datetime
        UTC timestamps.
    """

    id: str
    items: List[KeywordItem] = field(default_factory=list)
    centroid: Optional[np.ndarray] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def size(self) -> int:
        return len(self.items)

    @property
    def item_ids(self) -> List[int]:
        return [item.id for item in self.items]

    def update_centroid(self) -> None:
        self.centroid = centroid(item.embedding for item in self.items)

    def add(self, item: KeywordItem) -> None:
        """Append ``item``, refresh the centroid and ``updated_at``."""
        self.items.append(item)
        self.update_centroid()
        self.updated_at = _utcnow()

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "items": self.item_ids,
            "centroid": self.centroid.tolist() if self.centroid is not None else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class IncrementalUpdate:
    """Outcome of :func:`add_to_existing`."""

    clusters: List[Cluster]
    updated_ids: List[str] = field(default_factory=list)
    created_ids: List[str] = field(default_factory=list)
    duplicate_ids: List[int] = field(default_factory=list)
    unassigned_ids: List[int] = field(default_factory=list)


def _dedupe(items: Sequence[KeywordItem]) -> List[KeywordItem]:
    """Keep the first item of each (normalized text, source) pair."""
    seen: Set = set()
    unique = []
    for item in items:
        key = (normalize_cache_key(item.text), item.source_key)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    if len(unique) < len(items):
        LOGGER.info(f"Dropped {len(items) - len(unique)} duplicate (text, source) items")
    return unique


def _make_cluster(
    members: List[KeywordItem], id_generator: ClusterIdGenerator
) -> Cluster:
    now = _utcnow()
    cluster = Cluster(id=id_generator.next_id(), items=members, created_at=now, updated_at=now)
    cluster.update_centroid()
    for member in members:
        member.group = cluster.id
    return cluster


def _embedded_matrix(items: List[KeywordItem]) -> Optional[np.ndarray]:
    """Stack embeddings into a matrix; None when vector lengths differ."""
    dims = {item.embedding.size for item in items}
    if len(dims) != 1:
        return None
    return np.vstack([item.embedding for item in items])


def _similarity_neighbors(
    embedded: List[KeywordItem], threshold: float
) -> Dict[int, Set[int]]:
    """Adjacency over positions in ``embedded`` for ``sim >= threshold``."""
    adjacency: Dict[int, Set[int]] = {}
    n = len(embedded)
    matrix = _embedded_matrix(embedded) if n else None

    def _link(i: int, j: int) -> None:
        adjacency.setdefault(i, set()).add(j)
        adjacency.setdefault(j, set()).add(i)

    if matrix is not None:
        unit = normalize_rows(matrix)
        for start in range(0, n, SIMILARITY_BLOCK_ROWS):
            block = np.clip(unit[start : start + SIMILARITY_BLOCK_ROWS] @ unit.T, -1.0, 1.0)
            for offset, row in enumerate(block):
                i = start + offset
                for j in np.nonzero(row >= threshold)[0]:
                    if j > i:
                        _link(i, int(j))
    else:
        LOGGER.warning("Embeddings have different lengths; comparing pairwise")
        for i in range(n):
            for j in range(i + 1, n):
                if cosine_similarity(embedded[i].embedding, embedded[j].embedding) >= threshold:
                    _link(i, j)
    return adjacency


def build_components(
    items: Sequence[KeywordItem],
    threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    id_generator: Optional[ClusterIdGenerator] = None,
) -> List[Cluster]:
    """
    Cluster items as connected components of the similarity graph.

    Two items are linked when both have embeddings and their cosine
    similarity is at least ``threshold``. Cost is quadratic in the number of
    items; similarities are computed in blocks of rows to bound memory.

    Parameters
    ----------
    items : Sequence[KeywordItem]
        Items to cluster.
    threshold : float
        Minimum similarity for an edge.
    id_generator : Optional[ClusterIdGenerator]
        Source of cluster ids.

    Returns
    -------
    List[Cluster]
        Components with at least two members, ordered by their first member;
        members keep input order. Isolated items are not returned.
    """
    id_generator = id_generator or _DEFAULT_ID_GENERATOR
    embedded = [item for item in _dedupe(items) if item.has_embedding]
    adjacency = _similarity_neighbors(embedded, threshold)

    visited: Set[int] = set()
    clusters = []
    for start in range(len(embedded)):
        if start in visited or start not in adjacency:
            continue
        stack = [start]
        component = []
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            component.append(node)
            stack.extend(nb for nb in adjacency[node] if nb not in visited)
        if len(component) > 1:
            members = [embedded[idx] for idx in sorted(component)]
            clusters.append(_make_cluster(members, id_generator))

    LOGGER.info(
        f"Connected components (threshold={threshold}): {len(clusters)} clusters "
        f"from {len(embedded)} embedded items"
    )
    return clusters


def _distance_matrix(embedded: List[KeywordItem]) -> np.ndarray:
    matrix = _embedded_matrix(embedded)
    if matrix is not None:
        similarities = similarity_matrix(matrix)
    else:
        n = len(embedded)
        similarities = np.eye(n)
        for i in range(n):
            for j in range(i + 1, n):
                sim = cosine_similarity(embedded[i].embedding, embedded[j].embedding)
                similarities[i, j] = similarities[j, i] = sim
    distances = 1.0 - similarities
    np.fill_diagonal(distances, 0.0)
    return np.clip(distances, 0.0, 2.0)


def build_dbscan(
    items: Sequence[KeywordItem],
    eps: float = DEFAULT_DBSCAN_EPS,
    min_pts: int = DEFAULT_DBSCAN_MIN_PTS,
    id_generator: Optional[ClusterIdGenerator] = None,
) -> List[Cluster]:
    """
    Density-based clustering over cosine distance.

    ``eps`` is a distance (``1 - similarity``), so a larger value merges
    more. A point is a core point when at least ``min_pts`` points, itself
    included, lie within ``eps``. Noise points are left out of the result.

    Raises
    ------
    ValueError
        If ``eps`` is not positive or ``min_pts`` is below 1.
    """
    if eps <= 0:
        raise ValueError(f"eps must be > 0, got {eps}")
    if min_pts < 1:
        raise ValueError(f"min_pts must be >= 1, got {min_pts}")
    id_generator = id_generator or _DEFAULT_ID_GENERATOR
    embedded = [item for item in _dedupe(items) if item.has_embedding]
    if not embedded:
        return []

    model = DBSCAN(eps=eps, min_samples=min_pts, metric="precomputed")
    labels = model.fit_predict(_distance_matrix(embedded))

    groups: Dict[int, List[KeywordItem]] = {}
    for item, label in zip(embedded, labels):
        if label == -1:
            continue
        groups.setdefault(int(label), []).append(item)

    clusters = [
        _make_cluster(members, id_generator)
        for _, members in sorted(groups.items())
        if len(members) > 1
    ]
    noise = int(np.sum(labels == -1))
    LOGGER.info(
        f"DBSCAN (eps={eps}, min_pts={min_pts}): {len(clusters)} clusters, "
        f"{noise} noise points out of {len(embedded)}"
    )
    return clusters


def add_to_existing(
    new_items: Sequence[KeywordItem],
    clusters: Sequence[Cluster],
    threshold: float = DEFAULT_INCREMENTAL_THRESHOLD,
    duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
    id_generator: Optional[ClusterIdGenerator] = None,
) -> IncrementalUpdate:
    """
    Greedily place new items into an existing clustering.

    Items are processed in input order:

    1. An item whose similarity to a member of any cluster with the same
       source exceeds ``duplicate_threshold`` is flagged ``duplicate`` and
       skipped.
    2. Otherwise it joins the cluster with the most similar centroid, if that
       similarity is at least ``threshold``.
    3. Otherwise it is paired with the first not yet placed item of this batch
       from a different source with similarity at least ``threshold``,
       forming a new two-member cluster.
    4. Otherwise it stays unassigned.

    Clusters passed in are updated in place; new clusters are appended to
    the returned list.

    Parameters
    ----------
    new_items : Sequence[KeywordItem]
        Batch to place.
    clusters : Sequence[Cluster]
        Existing clusters.
    threshold : float
        Minimum similarity to join a cluster or form a pair.
    duplicate_threshold : float
        Similarity above which a same-source item counts as a duplicate.
    id_generator : Optional[ClusterIdGenerator]
        Source of ids for new clusters.

    Returns
    -------
    IncrementalUpdate
        All clusters and the ids touched by this call.
    """
    id_generator = id_generator or _DEFAULT_ID_GENERATOR
    result = IncrementalUpdate(clusters=list(clusters))
    created: Set[str] = set()
    placed: Set[int] = set()

    for idx, item in enumerate(new_items):
        if idx in placed:
            continue
        if not item.has_embedding:
            result.unassigned_ids.append(item.id)
            continue

        if _is_duplicate(item, result.clusters, duplicate_threshold):
            item.duplicate = True
            placed.add(idx)
            result.duplicate_ids.append(item.id)
            continue

        best, best_sim = None, -1.0
        for cluster in result.clusters:
            if cluster.centroid is None:
                continue
            sim = cosine_similarity(item.embedding, cluster.centroid)
            if sim > best_sim:
                best, best_sim = cluster, sim
        if best is not None and best_sim >= threshold:
            best.add(item)
            item.group = best.id
            placed.add(idx)
            if best.id not in created and best.id not in result.updated_ids:
                result.updated_ids.append(best.id)
            continue

        partner_idx = _find_partner(
            idx, new_items, placed, threshold, result.clusters, duplicate_threshold
        )
        if partner_idx is None:
            result.unassigned_ids.append(item.id)
            continue
        partner = new_items[partner_idx]
        cluster = _make_cluster([item, partner], id_generator)
        result.clusters.append(cluster)
        created.add(cluster.id)
        result.created_ids.append(cluster.id)
        placed.update((idx, partner_idx))
        if partner.id in result.unassigned_ids:
            result.unassigned_ids.remove(partner.id)

    LOGGER.info(
        f"Incremental update: {len(result.updated_ids)} clusters updated, "
        f"{len(result.created_ids)} created, {len(result.duplicate_ids)} duplicates, "
        f"{len(result.unassigned_ids)} unassigned"
    )
    return result


def _is_duplicate(
    item: KeywordItem, clusters: Sequence[Cluster], duplicate_threshold: float
) -> bool:
    for cluster in clusters:
        for member in cluster.items:
            if member.source_key != item.source_key or not member.has_embedding:
                continue
            if cosine_similarity(member.embedding, item.embedding) > duplicate_threshold:
                return True
    return False


def _find_partner(
    idx: int,
    items: Sequence[KeywordItem],
    placed: Set[int],
    threshold: float,
    clusters: Sequence[Cluster],
    duplicate_threshold: float,
) -> Optional[int]:
    item = items[idx]
    for j, candidate in enumerate(items):
        if j == idx or j in placed or not candidate.has_embedding:
            continue
        if candidate.duplicate or candidate.source_key == item.source_key:
            continue
        # later duplicates are flagged when the main loop reaches them
        if _is_duplicate(candidate, clusters, duplicate_threshold):
            continue
        if cosine_similarity(item.embedding, candidate.embedding) >= threshold:
            return j
    return None


def assign_cluster_labels(clusters: Sequence[Cluster]) -> Dict[int, str]:
    """
    Map item ids to display labels ``cluster_1`` .. ``cluster_n``.

    Numbering follows the order of ``clusters``; items outside every cluster
    are absent from the mapping.
    """
    labels: Dict[int, str] = {}
    for number, cluster in enumerate(clusters, start=1):
        for item in cluster.items:
            labels.setdefault(item.id, f"cluster_{number}")
    return labels
