"""
Streaming I/O for hand-off files between pipeline stages.

Collections of items with their vectors can be far larger than memory, so they
are never serialized in one piece:

- ``JsonArraysWriter`` appends records to one JSON object whose top-level
  fields are arrays, e.g. ``{"categories": [...], "keywords": [...]}``
- ``JsonLinesWriter`` appends one record per line
- ``iter_json_array`` yields the objects of one top-level array field while
  scanning the file in fixed-size blocks; sibling fields are skipped, never
  parsed
- ``iter_json_lines`` yields one record per line
- ``iter_pages`` walks storage with keyset pagination

Only these two document shapes are supported. Malformed individual records are
logged and skipped by the readers.
"""

import dataclasses
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import numpy as np

from ..DEFAULT_CONSTS import DEFAULT_PAGE_SIZE
from ..errors import StreamWriteError

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_BLOCK_SIZE = 64 * 1024


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def serialize_record(record: Any) -> str:
    """Serialize a dict, a ``to_record()`` item or a dataclass to one JSON line."""
    if hasattr(record, "to_record"):
        record = record.to_record()
    elif dataclasses.is_dataclass(record) and not isinstance(record, type):
        record = dataclasses.asdict(record)
    if not isinstance(record, Mapping):
        raise TypeError(f"Records must be JSON objects, got {type(record).__name__}")
    return json.dumps(record, default=_json_default, ensure_ascii=False)


class _StreamWriter:
    """File handle with byte accounting; ``OSError`` becomes ``StreamWriteError``."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self.bytes_written = 0
        self.records_written = 0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "w", encoding="utf-8")
        except OSError as e:
            raise StreamWriteError(
                f"Cannot open {self.path} for writing: {e}", str(self.path), 0
            ) from e

    @property
    def closed(self) -> bool:
        return self._fh is None

    def _write(self, text: str) -> None:
        if self._fh is None:
            raise StreamWriteError(
                f"Write to closed stream {self.path}", str(self.path), self.bytes_written
            )
        try:
            self._fh.write(text)
        except OSError as e:
            raise StreamWriteError(
                f"Writing {self.path} failed after {self.bytes_written} bytes: {e}",
                str(self.path),
                self.bytes_written,
            ) from e
        self.bytes_written += len(text.encode("utf-8"))

    def _close_handle(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.close()
        except OSError as e:
            raise StreamWriteError(
                f"Closing {self.path} failed: {e}", str(self.path), self.bytes_written
            ) from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
        else:
            self._close_handle()

    def close(self) -> None:
        self._close_handle()


class JsonArraysWriter(_StreamWriter):
    """
    Append-only writer for ``{"field_a": [...], "field_b": [...]}`` documents.

    Fields are written one after another; only one array is open at a time.

    Examples
    --------
    >>> with JsonArraysWriter("handoff.json") as writer:
    ...     writer.write_array("categories", categories)
    ...     writer.open_array("keywords")
    ...     for item in items:
    ...         writer.write_item(item)
    """

    def __init__(self, path: PathLike):
        super().__init__(path)
        self._fields: List[str] = []
        self._open_field: Optional[str] = None
        self._items_in_field = 0
        self._write("{")

    def open_array(self, field: str) -> None:
        if self._open_field is not None:
            raise ValueError(f"Array '{self._open_field}' is still open")
        if field in self._fields:
            raise ValueError(f"Field '{field}' was already written")
        prefix = "," if self._fields else ""
        self._write(f"{prefix}{json.dumps(field)}:[")
        self._open_field = field
        self._items_in_field = 0

    def write_item(self, record: Any) -> None:
        if self._open_field is None:
            raise ValueError("No array is open; call open_array() first")
        line = serialize_record(record)
        self._write(("," if self._items_in_field else "") + "\n" + line)
        self._items_in_field += 1
        self.records_written += 1

    def close_array(self) -> None:
        if self._open_field is None:
            raise ValueError("No array is open")
        self._write("\n]")
        self._fields.append(self._open_field)
        self._open_field = None

    def write_array(self, field: str, records) -> int:
        """Write a complete array field; returns the number of records."""
        self.open_array(field)
        count = 0
        for record in records:
            self.write_item(record)
            count += 1
        self.close_array()
        return count

    def close(self) -> None:
        """Finalize the document and close the file. Safe to call twice."""
        if self.closed:
            return
        if self._open_field is not None:
            self.close_array()
        self._write("}\n")
        self._close_handle()
        LOGGER.debug(
            f"Wrote {self.records_written} records in fields {self._fields} "
            f"to {self.path} ({self.bytes_written} bytes)"
        )


class JsonLinesWriter(_StreamWriter):
    """One serialized record per line."""

    def write_item(self, record: Any) -> None:
        self._write(serialize_record(record) + "\n")
        self.records_written += 1

    def write_all(self, records) -> int:
        count = 0
        for record in records:
            self.write_item(record)
            count += 1
        return count


def _parse_record(text: str, where: str) -> Optional[Dict[str, Any]]:
    try:
        record = json.loads(text)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Skipping malformed record in {where}: {e}")
        return None
    if not isinstance(record, dict):
        LOGGER.warning(f"Skipping non-object record in {where}")
        return None
    return record


# Outside strings at the top level every separator matters; deeper down only
# nesting and string boundaries do.
_TOP_LEVEL_TOKENS = re.compile(r'[{}\[\]",:]')
_NESTED_TOKENS = re.compile(r'[{}\[\]"]')
_STRING_TOKENS = re.compile(r'["\\]')

_SEEK, _AWAIT_ARRAY, _IN_ARRAY = range(3)


def iter_json_array(
    path: PathLike, key: str, block_size: int = DEFAULT_BLOCK_SIZE
) -> Iterator[Dict[str, Any]]:
    """
    Lazily yield the objects of the top-level array field ``key``.

    The file is read in ``block_size`` character blocks. The scanner tracks
    string literals (with escapes) and nesting depth, locates ``key`` among
    the fields of the top-level object, then captures one element at a time
    and yields it as soon as its closing brace is read. Reading stops at the
    end of the array, so later sibling fields are never touched.

    Parameters
    ----------
    path : PathLike
        Document of the ``{"field": [...], ...}`` shape.
    key : str
        Top-level field to read.
    block_size : int
        Characters per read.

    Yields
    ------
    Dict[str, Any]
        One record per array element; malformed elements are skipped.
    """
    where = f"{path}:{key}"
    phase = _SEEK
    depth = 0
    in_string = False
    escape = False
    expect_key = False
    last_key: Optional[str] = None
    capture: Optional[List[str]] = None
    capture_is_key = False

    with open(path, "r", encoding="utf-8") as fh:
        while True:
            block = fh.read(block_size)
            if not block:
                break
            n = len(block)
            pos = 0
            capture_start = 0
            while pos < n:
                if in_string:
                    if escape:
                        escape = False
                        pos += 1
                        continue
                    m = _STRING_TOKENS.search(block, pos)
                    if m is None:
                        pos = n
                        break
                    pos = m.end()
                    if m.group() == "\\":
                        escape = True
                        continue
                    in_string = False
                    if capture is not None and capture_is_key:
                        capture.append(block[capture_start:pos])
                        try:
                            last_key = json.loads("".join(capture))
                        except json.JSONDecodeError:
                            last_key = None
                        capture = None
                    continue

                if phase == _AWAIT_ARRAY:
                    while pos < n and block[pos].isspace():
                        pos += 1
                    if pos == n:
                        break
                    if block[pos] != "[":
                        LOGGER.warning(f"Field '{key}' in {path} is not an array")
                        return
                    depth += 1
                    phase = _IN_ARRAY
                    pos += 1
                    continue

                pattern = _TOP_LEVEL_TOKENS if depth <= 1 else _NESTED_TOKENS
                m = pattern.search(block, pos)
                if m is None:
                    pos = n
                    break
                ch = m.group()
                start = m.start()
                pos = m.end()

                if ch == '"':
                    in_string = True
                    if phase == _SEEK and depth == 1 and expect_key:
                        capture = []
                        capture_is_key = True
                        capture_start = start
                        expect_key = False
                elif ch == "{" or ch == "[":
                    depth += 1
                    if phase == _SEEK and depth == 1:
                        if ch != "{":
                            LOGGER.warning(f"{path} is not a JSON object document")
                            return
                        expect_key = True
                    elif phase == _IN_ARRAY and depth == 3 and ch == "{":
                        capture = []
                        capture_is_key = False
                        capture_start = start
                else:
                    if ch == "}" or ch == "]":
                        depth -= 1
                        if phase == _IN_ARRAY:
                            if depth == 1:
                                return
                            if depth == 2 and capture is not None:
                                capture.append(block[capture_start:pos])
                                text = "".join(capture)
                                capture = None
                                record = _parse_record(text, where)
                                if record is not None:
                                    yield record
                        elif depth <= 0:
                            LOGGER.warning(f"Field '{key}' not found in {path}")
                            return
                    elif ch == ",":
                        if phase == _SEEK and depth == 1:
                            expect_key = True
                    elif ch == ":":
                        if phase == _SEEK and depth == 1:
                            if last_key == key:
                                phase = _AWAIT_ARRAY
                            last_key = None

            if capture is not None:
                capture.append(block[capture_start:])

    if phase == _IN_ARRAY:
        LOGGER.warning(f"Unexpected end of {path} inside field '{key}'")
    else:
        LOGGER.warning(f"Field '{key}' not found in {path}")


def iter_json_lines(path: PathLike) -> Iterator[Dict[str, Any]]:
    """Yield one record per non-blank line, skipping malformed lines."""
    with open(path, "r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            record = _parse_record(line, f"{path}:{line_no}")
            if record is not None:
                yield record


def read_handoff(path: PathLike, key: Optional[str] = None) -> Iterator[Dict[str, Any]]:
    """Read a hand-off file: array field ``key`` if given, JSON lines otherwise."""
    if key is not None:
        return iter_json_array(path, key)
    return iter_json_lines(path)


def _record_id(record: Any) -> Any:
    if isinstance(record, Mapping):
        return record["id"]
    return getattr(record, "id")


def iter_pages(
    fetch_page: Callable[[Optional[int], int], Sequence[Any]],
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Iterator[Sequence[Any]]:
    """
    Keyset pagination over an id-ordered source.

    Parameters
    ----------
    fetch_page : Callable[[Optional[int], int], Sequence]
        ``fetch_page(after_id, limit)`` returns up to ``limit`` records with
        ``id > after_id`` in ascending id order (``after_id=None`` for the
        first page).
    page_size : int
        Records per page.

    Yields
    ------
    Sequence
        Non-empty pages, in id order.

    Raises
    ------
    ValueError
        If the source returns ids that do not increase.
    """
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")
    after_id = None
    while True:
        page = fetch_page(after_id, page_size)
        if not page:
            return
        last_id = _record_id(page[-1])
        if after_id is not None and last_id <= after_id:
            raise ValueError(
                f"Pagination did not advance (after_id={after_id}, last id={last_id})"
            )
        yield page
        if len(page) < page_size:
            return
        after_id = last_id
