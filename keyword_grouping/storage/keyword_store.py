"""Keyword storage consumed by the pipeline, with a SQLite reference adapter."""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd
from tqdm import tqdm

from ..DEFAULT_CONSTS import RESULT_FIELDS
from ..records import KeywordItem, ReferenceEntry
from ..utils.text_utils import is_empty_text

LOGGER = logging.getLogger(__name__)

# Keywords without an explicit flag count as targets.
TARGET_FILTER = "(target_query IS NULL OR target_query = 1)"


class KeywordStore(ABC):
    """
    Storage operations the pipeline needs.

    Items are read in ascending id order through keyset pagination; results
    are written one item at a time and made durable by ``flush``.
    """

    @abstractmethod
    def count_targets(self, scope: int) -> int:
        """Number of target keywords in ``scope``."""

    @abstractmethod
    def page_items(
        self, scope: int, after_id: Optional[int], limit: int
    ) -> List[KeywordItem]:
        """Up to ``limit`` target keywords with ``id > after_id``, by id."""

    @abstractmethod
    def clear_prior_results(self, scope: int, kind: str) -> int:
        """Reset result columns of ``kind`` for ``scope``; returns rows touched."""

    @abstractmethod
    def write_assignment(self, item_id: int, kind: str, fields: Mapping[str, Any]) -> None:
        """Store result columns for one keyword."""

    @abstractmethod
    def list_categories(self, scope: int) -> List[ReferenceEntry]:
        """Categories of ``scope`` as reference entries."""

    @abstractmethod
    def list_typing_samples(self, scope: int) -> List[ReferenceEntry]:
        """Labelled class samples of ``scope`` as reference entries."""

    def flush(self) -> None:
        """Make written assignments durable."""


class SQLiteKeywordStore(KeywordStore):
    """
    Keyword store backed by SQLite.

    Schema:
    - keywords: project keywords with their result columns
    - categories: category names per project
    - typing_samples: (label, text) training samples per project
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = None
        self._init_database()

    def _init_database(self):
        """Initialize database schema if not exists."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS keywords (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                keyword TEXT NOT NULL,
                source TEXT,
                target_query INTEGER,  -- NULL or 1: target, 0: excluded
                category_name TEXT,
                category_similarity REAL,
                class_name TEXT,
                class_similarity REAL,
                cluster_label TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                category_name TEXT NOT NULL
            )
        """
        )

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS typing_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                label TEXT NOT NULL,
                text TEXT NOT NULL
            )
        """
        )

        self.conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_keywords_project
            ON keywords(project_id, id)
        """
        )

        self.conn.commit()
        LOGGER.info(f"Initialized keyword store at {self.db_path}")

    # ------------------------------------------------------------------
    # Pipeline interface
    # ------------------------------------------------------------------

    def count_targets(self, scope: int) -> int:
        with self._lock:
            cursor = self.conn.execute(
                f"SELECT COUNT(*) FROM keywords WHERE project_id = ? AND {TARGET_FILTER}",
                (scope,),
            )
            return cursor.fetchone()[0]

    def page_items(
        self, scope: int, after_id: Optional[int], limit: int
    ) -> List[KeywordItem]:
        with self._lock:
            cursor = self.conn.execute(
                f"""
                SELECT id, keyword, source FROM keywords
                WHERE project_id = ? AND {TARGET_FILTER} AND id > ?
                ORDER BY id LIMIT ?
                """,
                (scope, after_id if after_id is not None else -1, limit),
            )
            rows = cursor.fetchall()
        return [
            KeywordItem(
                id=row["id"],
                text=row["keyword"],
                source=row["source"] or f"kw_{row['id']}",
            )
            for row in rows
        ]

    def clear_prior_results(self, scope: int, kind: str) -> int:
        columns = self._result_columns(kind)
        assignments = ", ".join(f"{col} = NULL" for col in columns)
        with self._lock:
            cursor = self.conn.execute(
                f"UPDATE keywords SET {assignments} WHERE project_id = ?", (scope,)
            )
            self.conn.commit()
        LOGGER.info(f"Cleared previous {kind} results: {cursor.rowcount} rows")
        return cursor.rowcount

    def write_assignment(self, item_id: int, kind: str, fields: Mapping[str, Any]) -> None:
        allowed = self._result_columns(kind)
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Columns {sorted(unknown)} are not results of {kind}")
        if not fields:
            return
        columns = list(fields)
        assignments = ", ".join(f"{col} = ?" for col in columns)
        with self._lock:
            self.conn.execute(
                f"UPDATE keywords SET {assignments} WHERE id = ?",
                [fields[col] for col in columns] + [item_id],
            )

    def flush(self) -> None:
        with self._lock:
            self.conn.commit()

    def list_categories(self, scope: int) -> List[ReferenceEntry]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT id, category_name FROM categories WHERE project_id = ? ORDER BY id",
                (scope,),
            )
            rows = cursor.fetchall()
        return [
            ReferenceEntry(id=row["id"], label=row["category_name"], text=row["category_name"])
            for row in rows
            if not is_empty_text(row["category_name"])
        ]

    def list_typing_samples(self, scope: int) -> List[ReferenceEntry]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT id, label, text FROM typing_samples WHERE project_id = ? ORDER BY id",
                (scope,),
            )
            rows = cursor.fetchall()
        return [
            ReferenceEntry(id=row["id"], label=row["label"], text=row["text"])
            for row in rows
            if not is_empty_text(row["label"]) and not is_empty_text(row["text"])
        ]

    @staticmethod
    def _result_columns(kind: str) -> List[str]:
        if kind not in RESULT_FIELDS:
            raise ValueError(f"Unknown job kind: {kind}")
        return list(RESULT_FIELDS[kind].values())

    # ------------------------------------------------------------------
    # Loading data
    # ------------------------------------------------------------------

    def add_keywords(
        self,
        scope: int,
        keywords: Iterable[Union[str, Mapping[str, Any]]],
        target: Optional[bool] = None,
    ) -> List[int]:
        """
        Insert keywords.

        Args:
            scope: Project id
            keywords: Keyword strings, or dicts with ``keyword`` and optional
                ``source`` / ``target_query``
            target: Default ``target_query`` flag (None means target)

        Returns:
            Ids of inserted rows, in input order
        """
        ids = []
        with self._lock:
            for entry in keywords:
                if isinstance(entry, str):
                    entry = {"keyword": entry}
                text = entry.get("keyword")
                if is_empty_text(text):
                    continue
                flag = entry.get("target_query", target)
                cursor = self.conn.execute(
                    "INSERT INTO keywords (project_id, keyword, source, target_query) "
                    "VALUES (?, ?, ?, ?)",
                    (scope, text.strip(), entry.get("source"), None if flag is None else int(flag)),
                )
                ids.append(cursor.lastrowid)
            self.conn.commit()
        return ids

    def add_categories(self, scope: int, names: Iterable[str]) -> List[int]:
        """Insert category names; blank names are skipped."""
        ids = []
        with self._lock:
            for name in names:
                if is_empty_text(name):
                    continue
                cursor = self.conn.execute(
                    "INSERT INTO categories (project_id, category_name) VALUES (?, ?)",
                    (scope, name.strip()),
                )
                ids.append(cursor.lastrowid)
            self.conn.commit()
        return ids

    def add_typing_samples(self, scope: int, samples: Iterable[Tuple[str, str]]) -> List[int]:
        """Insert (label, text) class samples."""
        ids = []
        with self._lock:
            for label, text in samples:
                if is_empty_text(label) or is_empty_text(text):
                    continue
                cursor = self.conn.execute(
                    "INSERT INTO typing_samples (project_id, label, text) VALUES (?, ?, ?)",
                    (scope, label.strip(), text.strip()),
                )
                ids.append(cursor.lastrowid)
            self.conn.commit()
        return ids

    def import_keywords_csv(
        self,
        scope: int,
        csv_path: Union[str, Path],
        column: str = "keyword",
        chunksize: int = 1000,
        show_progress: bool = True,
    ) -> int:
        """
        Load keywords from a CSV file (supports large files).

        Args:
            scope: Project id
            csv_path: Path to the CSV file
            column: Column holding the keyword text
            chunksize: Number of rows to process at a time
            show_progress: Whether to show a progress bar

        Returns:
            Number of keywords inserted

        Raises:
            ValueError: If ``column`` is missing from the CSV
        """
        LOGGER.info(f"Importing keywords from {csv_path}")

        total_rows = None
        if show_progress:
            with open(csv_path, "r", encoding="utf-8") as f:
                total_rows = sum(1 for _ in f) - 1  # Exclude header

        chunk_iterator = pd.read_csv(csv_path, chunksize=chunksize, dtype=str)
        if show_progress and total_rows:
            chunk_iterator = tqdm(
                chunk_iterator,
                total=(total_rows // chunksize) + 1,
                desc="Importing keywords",
            )

        inserted = 0
        for chunk_df in chunk_iterator:
            if column not in chunk_df.columns:
                raise ValueError(f"Column '{column}' not found in CSV")
            rows = []
            for _, row in chunk_df.iterrows():
                text = row[column]
                if pd.isna(text):
                    continue
                entry: Dict[str, Any] = {"keyword": text}
                if "source" in chunk_df.columns and not pd.isna(row["source"]):
                    entry["source"] = row["source"]
                rows.append(entry)
            inserted += len(self.add_keywords(scope, rows))

        LOGGER.info(f"Imported {inserted} keywords into project {scope}")
        return inserted

    def get_keyword(self, item_id: int) -> Optional[Dict[str, Any]]:
        """
        Retrieve a keyword row by id.

        Args:
            item_id: Keyword id

        Returns:
            Dictionary with row data or None
        """
        with self._lock:
            row = self.conn.execute("SELECT * FROM keywords WHERE id = ?", (item_id,)).fetchone()
        return dict(row) if row is not None else None

    def close(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.commit()
                self.conn.close()
                self.conn = None

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and close connection."""
        self.close()
