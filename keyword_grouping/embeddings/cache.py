"""Embedding cache keyed by (normalized text, model).

Two backends share one contract:

- ``SQLiteEmbeddingCache``: persistent, shared by every pipeline run on the host
- ``InMemoryEmbeddingCache``: process-local, used for tests and one-off runs

Both are safe for concurrent get/put from several jobs. Writes use
``INSERT OR REPLACE`` semantics, so same-key races resolve last-write-wins.
Backend failures surface as :class:`CacheUnavailable`; callers degrade to an
always-miss cache.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

from ..errors import CacheUnavailable

LOGGER = logging.getLogger(__name__)


class EmbeddingCache(ABC):
    """
    Key/value store mapping (text, model) to a float64 vector.

    Keys are used verbatim: callers pass the same normalized text to ``get``
    and ``put`` (see :func:`keyword_grouping.utils.normalize_cache_key`).
    Vectors stored under one model must all have the same length.
    """

    @abstractmethod
    def get(self, text: str, model: str) -> Optional[np.ndarray]:
        """Return the cached vector or None."""

    @abstractmethod
    def put(self, text: str, model: str, vector) -> None:
        """Store ``vector`` for (text, model), replacing any previous value."""

    @abstractmethod
    def prune(self, model: Optional[str] = None) -> int:
        """Delete entries for ``model`` (all entries if None); returns count."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _as_float64(vector) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64).ravel()
    if arr.size == 0:
        raise ValueError("Cannot cache an empty vector")
    return arr


class InMemoryEmbeddingCache(EmbeddingCache):
    """Dictionary-backed cache guarded by a lock."""

    def __init__(self):
        self._data: Dict[Tuple[str, str], np.ndarray] = {}
        self._dims: Dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, text: str, model: str) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._data.get((text, model))
        return None if vector is None else vector.copy()

    def put(self, text: str, model: str, vector) -> None:
        arr = _as_float64(vector)
        with self._lock:
            dim = self._dims.setdefault(model, arr.size)
            if dim != arr.size:
                raise ValueError(
                    f"Vector length {arr.size} does not match cached length {dim} "
                    f"for model {model}"
                )
            self._data[(text, model)] = arr.copy()

    def prune(self, model: Optional[str] = None) -> int:
        with self._lock:
            keys = [k for k in self._data if model is None or k[1] == model]
            for key in keys:
                del self._data[key]
            if model is None:
                self._dims.clear()
            else:
                self._dims.pop(model, None)
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class SQLiteEmbeddingCache(EmbeddingCache):
    """
    Persistent cache in a SQLite database.

    Schema:
    - embeddings_cache: (key, vector_model) primary key, vector length and the
      raw float64 bytes of the vector

    One connection is shared between threads and guarded by a lock; WAL mode
    lets other processes read while a job writes.

    Parameters
    ----------
    db_path : Union[str, Path]
        Path to the SQLite database file (created if missing).
    timeout : float
        Seconds to wait on a locked database before failing.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.Lock()
        self._dims: Dict[str, int] = {}
        self.conn: Optional[sqlite3.Connection] = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_database()
        except (sqlite3.Error, OSError) as e:
            raise CacheUnavailable(
                f"Cannot open embedding cache at {self.db_path}: {e}"
            ) from e

    def _init_database(self):
        """Initialize database schema if not exists."""
        self.conn = sqlite3.connect(
            str(self.db_path), timeout=self.timeout, check_same_thread=False
        )
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS embeddings_cache (
                key TEXT NOT NULL,
                vector_model TEXT NOT NULL,
                dim INTEGER NOT NULL,
                embedding BLOB NOT NULL,  -- raw float64 bytes
                created_at TEXT NOT NULL,
                PRIMARY KEY (key, vector_model)
            )
        """
        )
        self.conn.commit()
        LOGGER.info(f"Initialized embedding cache at {self.db_path}")

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise CacheUnavailable("Embedding cache is closed")
        return self.conn

    def get(self, text: str, model: str) -> Optional[np.ndarray]:
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT dim, embedding FROM embeddings_cache "
                    "WHERE key = ? AND vector_model = ?",
                    (text, model),
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheUnavailable(f"Embedding cache read failed: {e}") from e
        if row is None:
            return None
        dim, payload = row
        vector = np.frombuffer(payload, dtype=np.float64)
        if vector.size != dim:
            LOGGER.warning(
                f"Corrupt cache entry for model {model} (dim {vector.size} != {dim}); "
                "treating as miss"
            )
            return None
        return vector.copy()

    def _model_dim(self, model: str) -> Optional[int]:
        """Vector length already stored for ``model``; caller holds the lock."""
        if model in self._dims:
            return self._dims[model]
        row = self._connection().execute(
            "SELECT dim FROM embeddings_cache WHERE vector_model = ? LIMIT 1",
            (model,),
        ).fetchone()
        if row is not None:
            self._dims[model] = int(row[0])
            return self._dims[model]
        return None

    def put(self, text: str, model: str, vector) -> None:
        arr = _as_float64(vector)
        try:
            with self._lock:
                dim = self._model_dim(model)
                if dim is not None and dim != arr.size:
                    raise ValueError(
                        f"Vector length {arr.size} does not match cached length {dim} "
                        f"for model {model}"
                    )
                conn = self._connection()
                conn.execute(
                    "INSERT OR REPLACE INTO embeddings_cache "
                    "(key, vector_model, dim, embedding, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        text,
                        model,
                        int(arr.size),
                        arr.tobytes(),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
                self._dims[model] = int(arr.size)
        except sqlite3.Error as e:
            raise CacheUnavailable(f"Embedding cache write failed: {e}") from e

    def prune(self, model: Optional[str] = None) -> int:
        try:
            with self._lock:
                conn = self._connection()
                if model is None:
                    cursor = conn.execute("DELETE FROM embeddings_cache")
                    self._dims.clear()
                else:
                    cursor = conn.execute(
                        "DELETE FROM embeddings_cache WHERE vector_model = ?", (model,)
                    )
                    self._dims.pop(model, None)
                conn.commit()
        except sqlite3.Error as e:
            raise CacheUnavailable(f"Embedding cache prune failed: {e}") from e
        LOGGER.info(f"Pruned {cursor.rowcount} cache entries (model={model})")
        return cursor.rowcount

    def __len__(self) -> int:
        try:
            with self._lock:
                row = self._connection().execute(
                    "SELECT COUNT(*) FROM embeddings_cache"
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheUnavailable(f"Embedding cache read failed: {e}") from e
        return int(row[0])

    def close(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
