"""
Configuration dataclass for pipeline runs.

Values come from, in increasing priority: defaults, a JSON or YAML file,
environment variables (``EMBEDDING_MODEL``, ``DB_PATH``,
``EMBEDDING_CACHE_PATH``) and command-line overrides.
"""

import json
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .DEFAULT_CONSTS import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CLUSTER_THRESHOLD,
    DEFAULT_DBSCAN_EPS,
    DEFAULT_DBSCAN_MIN_PTS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_INTER_CHUNK_DELAY,
    DEFAULT_PAGE_SIZE,
)

CLUSTERING_ALGORITHMS = ("components", "dbscan")
TYPING_STRATEGIES = ("centroid", "nearest", "logreg")

ENV_OVERRIDES = {
    "EMBEDDING_MODEL": "embedding_model",
    "DB_PATH": "db_path",
    "EMBEDDING_CACHE_PATH": "cache_path",
}


@dataclass
class PipelineConfig:
    """Configuration for embedding and grouping jobs.

    Parameters
    ----------
    embedding_model : str
        Provider model name; also namespaces cache entries.
    chunk_size : int
        Texts per provider request.
    inter_chunk_delay : float
        Seconds between provider requests.
    max_attempts : int
        Attempts per chunk before a provider error is surfaced.
    backoff_multiplier : float
        Base of the exponential backoff between attempts, in seconds.
    backoff_max : float
        Upper bound of one backoff wait, in seconds.
    request_timeout : float
        Timeout of one provider request, in seconds.
    page_size : int
        Keywords read from storage per page.
    db_path : str
        Keyword database.
    cache_path : str, optional
        Embedding cache database; None keeps the cache in memory.
    clustering_algorithm : str
        "components" (similarity threshold) or "dbscan" (distance eps).
    clustering_threshold : float
        Minimum similarity for a components edge.
    dbscan_eps : float
        DBSCAN neighborhood radius as cosine distance.
    dbscan_min_pts : int
        DBSCAN core point density, the point itself included.
    typing_strategy : str
        "centroid", "nearest" or "logreg".
    work_dir : str
        Parent directory of per-job temporary hand-off directories.

    Examples
    --------
    >>> config = PipelineConfig.from_yaml("pipeline.yaml")
    >>> config.clustering_threshold
    0.5
    >>> config.save("run/config.json")
    """

    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    chunk_size: int = DEFAULT_CHUNK_SIZE
    inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY
    max_attempts: int = 4
    backoff_multiplier: float = 1.0
    backoff_max: float = 30.0
    request_timeout: float = 60.0
    page_size: int = DEFAULT_PAGE_SIZE
    db_path: str = "keywords.db"
    cache_path: Optional[str] = "embeddings_cache.db"
    clustering_algorithm: str = "components"
    clustering_threshold: float = DEFAULT_CLUSTER_THRESHOLD
    dbscan_eps: float = DEFAULT_DBSCAN_EPS
    dbscan_min_pts: int = DEFAULT_DBSCAN_MIN_PTS
    typing_strategy: str = "centroid"
    work_dir: str = tempfile.gettempdir()

    def __post_init__(self):
        """Validate configuration values."""
        if not self.embedding_model:
            raise ValueError("embedding_model must not be empty")

        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

        if self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

        for name in ("inter_chunk_delay", "backoff_multiplier", "backoff_max"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

        if self.request_timeout <= 0:
            raise ValueError(
                f"request_timeout must be positive, got {self.request_timeout}"
            )

        if self.clustering_algorithm not in CLUSTERING_ALGORITHMS:
            raise ValueError(
                f"clustering_algorithm must be one of {CLUSTERING_ALGORITHMS}, "
                f"got {self.clustering_algorithm}"
            )

        if not -1.0 <= self.clustering_threshold <= 1.0:
            raise ValueError(
                f"clustering_threshold must be in [-1, 1], got {self.clustering_threshold}"
            )

        if not 0.0 < self.dbscan_eps <= 2.0:
            raise ValueError(f"dbscan_eps must be in (0, 2], got {self.dbscan_eps}")

        if self.dbscan_min_pts < 1:
            raise ValueError(f"dbscan_min_pts must be >= 1, got {self.dbscan_min_pts}")

        if self.typing_strategy not in TYPING_STRATEGIES:
            raise ValueError(
                f"typing_strategy must be one of {TYPING_STRATEGIES}, "
                f"got {self.typing_strategy}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        """Build from a mapping, rejecting unknown keys.

        Raises
        ------
        ValueError
            If ``data`` contains keys that are not configuration fields.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**dict(data))

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load configuration from JSON file."""
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load configuration from a YAML file (an empty file gives defaults)."""
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load from ``.json`` or ``.yaml``/``.yml`` by extension."""
        if Path(path).suffix.lower() == ".json":
            return cls.load(path)
        return cls.from_yaml(path)

    def with_env_overrides(
        self, environ: Optional[Mapping[str, str]] = None
    ) -> "PipelineConfig":
        """Copy with ``EMBEDDING_MODEL``/``DB_PATH``/``EMBEDDING_CACHE_PATH`` applied."""
        environ = os.environ if environ is None else environ
        data = self.to_dict()
        for env_name, field_name in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value:
                data[field_name] = value
        return PipelineConfig.from_dict(data)

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Copy with the given non-None values replaced."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return PipelineConfig.from_dict(data)
