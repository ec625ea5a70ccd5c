"""Tests for streaming hand-off writers and readers."""

import json

import numpy as np
import pytest

from conftest import make_item, make_reference
from keyword_grouping.embeddings.io import (
    JsonArraysWriter,
    JsonLinesWriter,
    iter_json_array,
    iter_json_lines,
    iter_pages,
    read_handoff,
    serialize_record,
)
from keyword_grouping.errors import StreamWriteError
from keyword_grouping.records import KeywordItem


def _write_keywords(path, records, block_fields=None):
    with JsonArraysWriter(path) as writer:
        for field, field_records in (block_fields or {}).items():
            writer.write_array(field, field_records)
        writer.write_array("keywords", records)
    return path


class TestJsonArraysWriter:
    """Document shape produced by the writer."""

    def test_output_is_valid_json(self, tmp_path):
        path = tmp_path / "handoff.json"
        with JsonArraysWriter(path) as writer:
            writer.write_array("categories", [{"id": 1, "label": "fruit"}])
            writer.open_array("keywords")
            writer.write_item({"id": 7, "text": "apple"})
            writer.write_item({"id": 8, "text": "pear"})

        document = json.loads(path.read_text(encoding="utf-8"))
        assert document == {
            "categories": [{"id": 1, "label": "fruit"}],
            "keywords": [{"id": 7, "text": "apple"}, {"id": 8, "text": "pear"}],
        }
        assert writer.records_written == 3

    def test_empty_document(self, tmp_path):
        path = tmp_path / "empty.json"
        JsonArraysWriter(path).close()
        assert json.loads(path.read_text(encoding="utf-8")) == {}

    def test_bytes_written_matches_file_size(self, tmp_path):
        path = tmp_path / "h.json"
        with JsonArraysWriter(path) as writer:
            writer.write_array("keywords", [{"id": 1, "text": "żółw"}])
        assert writer.bytes_written == path.stat().st_size

    def test_field_written_once(self, tmp_path):
        with JsonArraysWriter(tmp_path / "h.json") as writer:
            writer.write_array("keywords", [])
            with pytest.raises(ValueError, match="already written"):
                writer.open_array("keywords")

    def test_item_requires_open_array(self, tmp_path):
        with JsonArraysWriter(tmp_path / "h.json") as writer:
            with pytest.raises(ValueError, match="No array is open"):
                writer.write_item({"id": 1})

    def test_unwritable_path_raises_stream_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(StreamWriteError) as exc_info:
            JsonArraysWriter(blocker / "handoff.json")
        assert exc_info.value.bytes_written == 0

    def test_write_after_close_raises(self, tmp_path):
        writer = JsonLinesWriter(tmp_path / "h.jsonl")
        writer.write_item({"id": 1})
        writer.close()
        with pytest.raises(StreamWriteError) as exc_info:
            writer.write_item({"id": 2})
        assert exc_info.value.bytes_written == writer.bytes_written


class TestIterJsonArray:
    """Block-wise reader of one top-level array field."""

    @pytest.mark.parametrize("count", [0, 1, 10_000])
    def test_round_trip_counts(self, tmp_path, count):
        records = ({"id": i, "text": f"kw {i}", "embedding": [i, 0.5]} for i in range(count))
        path = _write_keywords(tmp_path / "h.json", records)
        read = list(iter_json_array(path, "keywords", block_size=4096))
        assert len(read) == count
        if count:
            assert read[-1] == {"id": count - 1, "text": f"kw {count - 1}", "embedding": [count - 1, 0.5]}

    @pytest.mark.parametrize("block_size", [1, 3, 7, 64, 65536])
    def test_tricky_strings_any_block_size(self, tmp_path, block_size):
        records = [
            {"id": 1, "text": 'brace { inside ] and "quotes"'},
            {"id": 2, "text": "back\\slash\\", "nested": {"a": [1, {"b": "}"}]}},
            {"id": 3, "text": "keywords", "emoji": "☃ 😀"},
        ]
        path = _write_keywords(tmp_path / "h.json", records)
        assert list(iter_json_array(path, "keywords", block_size=block_size)) == records

    def test_reads_selected_field_among_siblings(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text(
            '{"title": "keywords", "categories": [{"id": 1, "name": "keywords"}],'
            ' "keywords": [{"id": 5}, {"id": 6}], "tail": [{"id": 99}]}',
            encoding="utf-8",
        )
        assert [r["id"] for r in iter_json_array(path, "keywords", block_size=5)] == [5, 6]
        assert [r["id"] for r in iter_json_array(path, "categories")] == [1]
        assert [r["id"] for r in iter_json_array(path, "tail")] == [99]

    def test_malformed_record_skipped(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text('{"keywords": [{"id": 1}, {"id": 2,,}, 17, {"id": 3}]}', encoding="utf-8")
        assert [r["id"] for r in iter_json_array(path, "keywords")] == [1, 3]

    def test_missing_field_yields_nothing(self, tmp_path):
        path = _write_keywords(tmp_path / "h.json", [{"id": 1}])
        assert list(iter_json_array(path, "categories")) == []

    def test_truncated_file_yields_complete_records(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text('{"keywords": [{"id": 1}, {"id": 2}, {"id": 3, "te', encoding="utf-8")
        assert [r["id"] for r in iter_json_array(path, "keywords")] == [1, 2]

    def test_field_that_is_not_an_array(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text('{"keywords": {"id": 1}}', encoding="utf-8")
        assert list(iter_json_array(path, "keywords")) == []

    def test_items_survive_round_trip(self, tmp_path):
        items = [make_item(1, [0.1, 0.2], text="apple", source="s1"), make_item(2, None, text="pear")]
        refs = [make_reference(10, "fruit", [1.0, 0.0])]
        path = _write_keywords(tmp_path / "h.json", items, {"categories": refs})
        restored = [KeywordItem.from_record(r) for r in iter_json_array(path, "keywords")]
        assert [i.text for i in restored] == ["apple", "pear"]
        np.testing.assert_allclose(restored[0].embedding, [0.1, 0.2])
        assert restored[0].source == "s1"
        assert restored[1].embedding is None


class TestJsonLines:
    """JSON lines writer and reader."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "h.jsonl"
        with JsonLinesWriter(path) as writer:
            assert writer.write_all({"id": i} for i in range(3)) == 3
        assert [r["id"] for r in iter_json_lines(path)] == [0, 1, 2]
        assert [r["id"] for r in read_handoff(path)] == [0, 1, 2]

    def test_blank_and_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "h.jsonl"
        path.write_text('{"id": 1}\n\nnot json\n[1, 2]\n{"id": 2}\n', encoding="utf-8")
        assert [r["id"] for r in iter_json_lines(path)] == [1, 2]

    def test_serialize_numpy_values(self):
        line = serialize_record({"id": np.int64(3), "v": np.array([1.5, 2.0])})
        assert json.loads(line) == {"id": 3, "v": [1.5, 2.0]}

    def test_serialize_rejects_non_objects(self):
        with pytest.raises(TypeError, match="JSON objects"):
            serialize_record([1, 2])


class TestIterPages:
    """Keyset pagination."""

    @staticmethod
    def _source(ids):
        calls = []

        def fetch(after_id, limit):
            calls.append(after_id)
            start = -1 if after_id is None else after_id
            return [{"id": i} for i in ids if i > start][:limit]

        return fetch, calls

    def test_pages_in_order(self):
        fetch, calls = self._source([2, 4, 6, 8, 10, 12, 14])
        pages = list(iter_pages(fetch, page_size=3))
        assert [[r["id"] for r in p] for p in pages] == [[2, 4, 6], [8, 10, 12], [14]]
        assert calls == [None, 6, 12], "Short page must end pagination"

    def test_exact_multiple_ends_on_empty_page(self):
        fetch, calls = self._source([1, 2, 3, 4])
        pages = list(iter_pages(fetch, page_size=2))
        assert len(pages) == 2
        assert calls == [None, 2, 4]

    def test_empty_source(self):
        fetch, _ = self._source([])
        assert list(iter_pages(fetch, page_size=5)) == []

    def test_non_advancing_source_raises(self):
        def fetch(after_id, limit):
            return [{"id": 1}, {"id": 1}]

        with pytest.raises(ValueError, match="did not advance"):
            list(iter_pages(fetch, page_size=2))

    def test_invalid_page_size(self):
        with pytest.raises(ValueError, match="page_size"):
            list(iter_pages(lambda after_id, limit: [], page_size=0))
