from .cancellation import CancellationToken, check_cancelled
from .text_utils import is_empty_text, normalize_cache_key
from .vector_math import (
    centroid,
    cosine_distance,
    cosine_similarity,
    normalize,
    normalize_rows,
    similarity_matrix,
)

__all__ = [
    "CancellationToken",
    "check_cancelled",
    "is_empty_text",
    "normalize_cache_key",
    "centroid",
    "cosine_distance",
    "cosine_similarity",
    "normalize",
    "normalize_rows",
    "similarity_matrix",
]
