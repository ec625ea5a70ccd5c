"""Similarity grouping and reference-set classification of embedded items."""

from .cluster_components import (
    Cluster,
    ClusterIdGenerator,
    IncrementalUpdate,
    add_to_existing,
    assign_cluster_labels,
    build_components,
    build_dbscan,
)
from .reference_classifier import Assignment, ReferenceClassifier, normalize_similarity

__all__ = [
    "Cluster",
    "ClusterIdGenerator",
    "IncrementalUpdate",
    "add_to_existing",
    "assign_cluster_labels",
    "build_components",
    "build_dbscan",
    "Assignment",
    "ReferenceClassifier",
    "normalize_similarity",
]
