"""
Vector math helpers for embedding comparison.

Pure functions, no side effects:
- Cosine similarity / distance between two vectors
- L2 normalization with an epsilon floor
- Centroid as the renormalized mean of normalized vectors
- Vectorized row normalization and similarity matrices for the clustering and
  classification engines

Zero-norm vectors compare as similarity 0 everywhere. Vectors of different
length are compared over their overlapping prefix instead of raising.
"""

from typing import Iterable, Optional, Sequence, Union

import numpy as np

EPSILON = 1e-12

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector(v: Optional[VectorLike]) -> Optional[np.ndarray]:
    """Convert to a 1-D float64 array, or None for missing/empty input."""
    if v is None:
        return None
    arr = np.asarray(v, dtype=np.float64).ravel()
    if arr.size == 0:
        return None
    return arr


def cosine_similarity(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """
    Cosine similarity between two vectors.

    Parameters
    ----------
    a, b : array-like or None
        Vectors to compare. Missing vectors yield 0.

    Returns
    -------
    float
        ``dot(a, b) / (|a| * |b|)`` in [-1, 1]; 0 if either norm is zero.
        Only the overlapping prefix is used when lengths differ.

    Examples
    --------
    >>> cosine_similarity([1.0, 0.0], [1.0, 0.0])
    1.0
    >>> cosine_similarity([1.0, 0.0], [0.0, 0.0])
    0.0
    """
    va = as_vector(a)
    vb = as_vector(b)
    if va is None or vb is None:
        return 0.0
    n = min(va.size, vb.size)
    va = va[:n]
    vb = vb[:n]
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(va, vb) / (na * nb))
    return max(-1.0, min(1.0, sim))


def cosine_distance(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """``1 - cosine_similarity(a, b)``."""
    return 1.0 - cosine_similarity(a, b)


def normalize(v: VectorLike) -> np.ndarray:
    """L2-normalize a vector; the norm is floored at ``EPSILON``."""
    arr = np.asarray(v, dtype=np.float64).ravel()
    norm = float(np.linalg.norm(arr))
    return arr / max(norm, EPSILON)


def centroid(vectors: Iterable[Optional[VectorLike]]) -> Optional[np.ndarray]:
    """
    Centroid of a set of vectors.

    Each vector is L2-normalized, the results are averaged component-wise and
    the mean is normalized again. Missing vectors are ignored.

    Returns
    -------
    np.ndarray or None
        None when no usable vector is given.
    """
    normalized = [normalize(v) for v in vectors if as_vector(v) is not None]
    if not normalized:
        return None
    dim = min(v.size for v in normalized)
    mean = np.mean([v[:dim] for v in normalized], axis=0)
    return normalize(mean)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalization; zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return np.where(norms == 0.0, 0.0, matrix / safe)


def similarity_matrix(a: np.ndarray, b: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Pairwise cosine similarities between the rows of ``a`` and ``b``.

    Parameters
    ----------
    a : np.ndarray
        Shape (n, dim).
    b : np.ndarray, optional
        Shape (m, dim); defaults to ``a``.

    Returns
    -------
    np.ndarray
        Shape (n, m), clipped to [-1, 1]. Rows with zero norm give 0.
    """
    an = normalize_rows(a)
    bn = an if b is None else normalize_rows(b)
    return np.clip(an @ bn.T, -1.0, 1.0)
