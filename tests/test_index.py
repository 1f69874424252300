"""Tests for the global memory index."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from bozly.memory.index import INDEX_VERSION, MemoryIndex
from bozly.memory.models import MemoryRecord, QualityScore


def make_record(session_id: str, timestamp: str, **kwargs) -> MemoryRecord:
    defaults = dict(
        node_id="node-1",
        node_name="Music",
        command="daily",
        summary=f"summary {session_id}",
        tags=[],
    )
    defaults.update(kwargs)
    return MemoryRecord(session_id=session_id, timestamp=timestamp, **defaults)


@pytest.fixture
def index_path(tmp_path: Path) -> Path:
    return tmp_path / "memory-index.json"


@pytest.fixture
def index(index_path: Path) -> MemoryIndex:
    return MemoryIndex(index_path)


class TestLoad:
    def test_missing_file_gives_empty_index(self, index: MemoryIndex):
        assert index.all_entries() == []
        assert index.version == INDEX_VERSION

    def test_deleted_index_file_rebuilds_empty(self, index: MemoryIndex, index_path: Path):
        index.add_entry(make_record("s1", "2025-01-01T00:00:00.000Z"), "/x/memory.md")
        index_path.unlink()
        assert MemoryIndex(index_path).all_entries() == []

    def test_corrupt_file_is_reset(self, index_path: Path):
        index_path.write_text("{not json", encoding="utf-8")
        index = MemoryIndex(index_path)
        assert index.all_entries() == []

        index.add_entry(make_record("s1", "2025-01-01T00:00:00.000Z"), "/x/memory.md")
        data = json.loads(index_path.read_text(encoding="utf-8"))
        assert data["version"] == INDEX_VERSION
        assert len(data["entries"]) == 1

    def test_unexpected_shape_is_reset(self, index_path: Path):
        index_path.write_text(json.dumps(["not", "an", "index"]), encoding="utf-8")
        assert MemoryIndex(index_path).all_entries() == []

    def test_unversioned_index_is_migrated(self, index_path: Path):
        index_path.write_text(
            json.dumps({"entries": [{"sessionId": "s1", "nodeId": "n", "timestamp": "2025-01-01T00:00:00Z"}]}),
            encoding="utf-8",
        )
        index = MemoryIndex(index_path)
        assert [e.session_id for e in index.all_entries()] == ["s1"]
        assert index.version == INDEX_VERSION

    def test_other_major_version_is_reset(self, index_path: Path):
        index_path.write_text(
            json.dumps({"version": "2.0", "entries": [{"sessionId": "s1"}]}), encoding="utf-8"
        )
        assert MemoryIndex(index_path).all_entries() == []

    def test_malformed_entry_is_skipped(self, index_path: Path):
        index_path.write_text(
            json.dumps({"version": "1.0", "entries": [{"nodeId": "n"}, {"sessionId": "ok"}]}),
            encoding="utf-8",
        )
        assert [e.session_id for e in MemoryIndex(index_path).all_entries()] == ["ok"]

    def test_loaded_entries_are_newest_first(self, index_path: Path):
        index_path.write_text(
            json.dumps(
                {
                    "entries": [
                        {"sessionId": "old", "nodeId": "n", "timestamp": "2025-01-01T00:00:00Z"},
                        {"sessionId": "new", "nodeId": "n", "timestamp": "2025-06-01T00:00:00Z"},
                        {"sessionId": "mid", "nodeId": "m", "timestamp": "2025-03-01T00:00:00Z"},
                    ]
                }
            ),
            encoding="utf-8",
        )
        index = MemoryIndex(index_path)
        assert [e.session_id for e in index.all_entries()] == ["new", "mid", "old"]
        assert [e.session_id for e in index.query_by_node("n")] == ["new", "old"]
        assert [e.session_id for e in index.all_entries(limit=1)] == ["new"]


class TestMutation:
    def test_add_entry_persists(self, index: MemoryIndex, index_path: Path):
        quality = QualityScore(overall=0.8)
        index.add_entry(make_record("s1", "2025-01-01T00:00:00.000Z", tags=["a"]), "/x/memory.md", quality)

        reloaded = MemoryIndex(index_path)
        entry = reloaded.get_entry("s1")
        assert entry is not None
        assert entry.file_path == "/x/memory.md"
        assert entry.tags == ["a"]
        assert entry.quality.overall == 0.8

    def test_add_entry_is_idempotent(self, index: MemoryIndex):
        record = make_record("s1", "2025-01-01T00:00:00.000Z")
        index.add_entry(record, "/x/memory.md")
        record.summary = "updated"
        index.add_entry(record, "/x/memory.md")

        entries = index.all_entries()
        assert len(entries) == 1
        assert entries[0].summary == "updated"

    def test_entries_are_newest_first(self, index: MemoryIndex):
        index.add_entry(make_record("mid", "2025-02-01T00:00:00.000Z"), "/m")
        index.add_entry(make_record("old", "2025-01-01T00:00:00.000Z"), "/o")
        index.add_entry(make_record("new", "2025-03-01T00:00:00.000Z"), "/n")
        assert [e.session_id for e in index.all_entries()] == ["new", "mid", "old"]

    def test_remove_entry(self, index: MemoryIndex):
        index.add_entry(make_record("s1", "2025-01-01T00:00:00.000Z"), "/x")
        assert index.remove_entry("s1")
        assert not index.remove_entry("s1")
        assert index.get_entry("s1") is None

    def test_remove_entries(self, index: MemoryIndex):
        for sid in ["a", "b", "c"]:
            index.add_entry(make_record(sid, "2025-01-01T00:00:00.000Z"), "/x")
        assert index.remove_entries(["a", "c", "missing"]) == 2
        assert [e.session_id for e in index.all_entries()] == ["b"]

    def test_clear(self, index: MemoryIndex, index_path: Path):
        index.add_entry(make_record("s1", "2025-01-01T00:00:00.000Z"), "/x")
        index.clear()
        assert MemoryIndex(index_path).all_entries() == []


class TestQueries:
    @pytest.fixture(autouse=True)
    def populate(self, index: MemoryIndex):
        index.add_entry(
            make_record("s1", "2025-01-10T00:00:00.000Z", command="daily", tags=["Music", "mix"]),
            "/1",
        )
        index.add_entry(
            make_record(
                "s2",
                "2025-01-20T00:00:00.000Z",
                node_id="node-2",
                node_name="Journal",
                command="weekly-review",
                summary="Reviewed the week",
                tags=["review"],
            ),
            "/2",
        )
        index.add_entry(make_record("s3", "2025-02-01T00:00:00.000Z", tags=["mix"]), "/3")

    def test_query_by_node(self, index: MemoryIndex):
        assert [e.session_id for e in index.query_by_node("node-1")] == ["s3", "s1"]
        assert [e.session_id for e in index.query_by_node("node-1", limit=1)] == ["s3"]

    def test_query_by_tags(self, index: MemoryIndex):
        assert [e.session_id for e in index.query_by_tags(["mix"])] == ["s3", "s1"]
        assert [e.session_id for e in index.query_by_tags(["review", "Music"])] == ["s2", "s1"]

    def test_query_by_command(self, index: MemoryIndex):
        assert [e.session_id for e in index.query_by_command("WEEKLY")] == ["s2"]

    def test_query_by_time_range(self, index: MemoryIndex):
        found = index.query_by_time_range(
            datetime(2025, 1, 15, tzinfo=timezone.utc), datetime(2025, 2, 15)
        )
        assert [e.session_id for e in found] == ["s3", "s2"]

    def test_search_is_case_insensitive(self, index: MemoryIndex):
        result = index.search("journal")
        assert [e.session_id for e in result.entries] == ["s2"]
        assert result.total == 1
        assert [e.session_id for e in index.search("MUSIC").entries] == ["s3", "s1"]

    def test_search_matches_tags(self, index: MemoryIndex):
        assert [e.session_id for e in index.search("mi").entries] == ["s3", "s1"]

    def test_get_stats(self, index: MemoryIndex):
        stats = index.get_stats()
        assert stats.total_memories == 3
        assert stats.newest_memory == "2025-02-01T00:00:00.000Z"
        assert stats.oldest_memory == "2025-01-10T00:00:00.000Z"
        assert stats.tag_counts == {"Music": 1, "mix": 2, "review": 1}

    def test_get_stats_for_node(self, index: MemoryIndex):
        stats = index.get_stats("node-2")
        assert stats.total_sessions == 3
        assert stats.total_memories == 1
        assert stats.tag_counts == {"review": 1}

    def test_index_stats(self, index: MemoryIndex):
        stats = index.get_index_stats()
        assert stats["totalEntries"] == 3
        assert stats["newestEntry"] == "s3"
        assert stats["fileSize"] > 0
