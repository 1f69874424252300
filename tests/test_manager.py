"""Tests for the memory manager and the CLI on top of it."""

from __future__ import annotations

import json
import shutil
import sys
from datetime import timedelta
from pathlib import Path

import pytest

from bozly import __main__ as cli
from bozly.config import BozlyConfig, MemoryConfig
from bozly.memory.extractor import SessionOutcome
from bozly.memory.loader import CONTEXT_HEADER
from bozly.memory.manager import MemoryManager
from bozly.memory.models import utcnow
from bozly.memory.storage import archive_path, month_key


def outcome(session_id: str, days_ago: float = 0, node_id: str = "node-1", output: str = "") -> SessionOutcome:
    ended = utcnow() - timedelta(days=days_ago)
    return SessionOutcome(
        session_id=session_id,
        node_id=node_id,
        node_name="Music",
        command="daily mix",
        provider="claude",
        started_at=ended - timedelta(minutes=12),
        ended_at=ended,
        output=output or f"Worked on {session_id}.\n- result for {session_id}\n",
    )


@pytest.fixture
def config(tmp_path: Path) -> BozlyConfig:
    return BozlyConfig(home=tmp_path / "home", memory=MemoryConfig(auto_archive=False))


@pytest.fixture
def manager(config: BozlyConfig) -> MemoryManager:
    return MemoryManager(config)


class TestSave:
    def test_writes_documents_index_and_metric(self, manager: MemoryManager, config: BozlyConfig):
        record = manager.save_session_memory(outcome("s1"))

        entry = manager.index.get_entry("s1")
        assert entry is not None
        memory_path = Path(entry.file_path)
        assert memory_path.name == "memory.md"
        assert memory_path.parent.name == "s1"
        assert memory_path.is_relative_to(config.sessions_dir / "node-1")

        metadata = json.loads((memory_path.parent / "metadata.json").read_text(encoding="utf-8"))
        assert metadata["sessionId"] == "s1"
        assert metadata["usage"]["lastUsed"] == record.timestamp
        assert entry.quality is not None
        assert entry.quality.overall == metadata["quality"]["overall"]

        metrics = manager.metrics.get_all_metrics()
        assert len(metrics) == 1
        assert metrics[0].file_path == str(memory_path)
        assert metrics[0].file_size_mb > 0

    def test_load_memory(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1"))
        record = manager.load_memory("s1", "node-1")
        assert record is not None
        assert record.summary == "Worked on s1."
        assert record.key_results == "- result for s1"
        assert manager.load_memory("s1", "other-node") is None
        assert manager.load_memory("missing", "node-1") is None

    def test_metrics_write_failure_does_not_block_save(self, manager: MemoryManager, monkeypatch):
        def disk_full(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("bozly.memory.metrics.write_json_atomic", disk_full)
        manager.save_session_memory(outcome("s1"))

        assert manager.index.get_entry("s1") is not None
        assert manager.load_memory("s1", "node-1") is not None
        assert len(manager.metrics.get_all_metrics()) == 1

    def test_auto_archive_runs_after_save(self, config: BozlyConfig):
        config.memory.auto_archive = True
        manager = MemoryManager(config, size_probe=lambda: 50.0)
        manager.save_session_memory(outcome("old", days_ago=200))
        manager.save_session_memory(outcome("new"))

        assert manager.index.get_entry("old") is None
        assert manager.index.get_entry("new") is not None
        assert manager.load_archived_memory("node-1", "old") is not None


class TestQueries:
    @pytest.fixture(autouse=True)
    def populate(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1", days_ago=3))
        manager.save_session_memory(outcome("s2", days_ago=2, node_id="node-2"))
        manager.save_session_memory(outcome("s3", days_ago=1, output="Fixed the kafka consumer"))

    def test_list_memories(self, manager: MemoryManager):
        assert [e.session_id for e in manager.list_memories()] == ["s3", "s2", "s1"]
        assert [e.session_id for e in manager.list_memories("node-1")] == ["s3", "s1"]

    def test_search_memories(self, manager: MemoryManager):
        assert [e.session_id for e in manager.search_memories("KAFKA")] == ["s3"]

    def test_memories_by_tags(self, manager: MemoryManager):
        assert len(manager.get_memories_by_tags(["daily"])) == 3
        assert manager.get_memories_by_tags(["nope"]) == []

    def test_stats(self, manager: MemoryManager):
        stats = manager.get_memory_stats("node-1")
        assert stats.total_memories == 2
        assert stats.total_sessions == 3
        assert stats.tag_counts["claude"] == 2

    def test_quality_ranking(self, manager: MemoryManager):
        # s1 carries a key result, s3 does not
        top = manager.load_top_memories_by_quality("node-1", limit=1)
        assert [e.session_id for e in top] == ["s1"]
        assert len(manager.get_ranked_memories("node-1")) == 2
        assert len(manager.get_high_quality_memories("node-1", min_quality=0.0)) == 2

    def test_delete_memory(self, manager: MemoryManager):
        directory = Path(manager.index.get_entry("s1").file_path).parent
        assert manager.delete_memory("s1", "node-1")
        assert not directory.exists()
        assert manager.index.get_entry("s1") is None
        assert not manager.delete_memory("s1", "node-1")


class TestSessionContext:
    def test_injects_and_tracks_usage(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1", output="Tuned reverb settings"))

        context = manager.build_session_context("node-1", "BASE")
        assert context.startswith(CONTEXT_HEADER)
        assert "Tuned reverb settings" in context
        assert context.endswith("BASE")

        entry = manager.index.get_entry("s1")
        metadata = json.loads((Path(entry.file_path).parent / "metadata.json").read_text())
        assert metadata["usage"]["timesUsed"] == 1
        assert entry.usage is not None
        assert entry.usage.times_used == 1

        manager.build_session_context("node-1", "BASE")
        assert manager.index.get_entry("s1").usage.times_used == 2

    def test_no_memories(self, manager: MemoryManager):
        assert manager.build_session_context("empty-node", "BASE") == "BASE"


class TestArchival:
    def test_archive_old_memories(self, manager: MemoryManager):
        manager.save_session_memory(outcome("old", days_ago=120, output="Archived kafka notes"))
        manager.save_session_memory(outcome("new"))

        result = manager.archive_old_memories(90)
        assert result.archived == 1
        assert manager.index.get_entry("old") is None
        assert [e.session_id for e in manager.search_archived_memories("kafka")] == ["old"]
        assert manager.get_archive_stats().total_archived_count == 1

    def test_check_respects_threshold(self, config: BozlyConfig):
        manager = MemoryManager(config, size_probe=lambda: 1.0)
        manager.save_session_memory(outcome("old", days_ago=120))
        assert not manager.check_and_archive_if_needed().triggered
        assert manager.index.get_entry("old") is not None

    def test_cache_size(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1"))
        size = manager.get_cache_size()
        assert size.file_count == 2
        assert set(size.by_node) == {"node-1"}


class TestRestore:
    @pytest.fixture
    def archived(self, manager: MemoryManager) -> MemoryManager:
        manager.save_session_memory(outcome("old-a", days_ago=120, output="Kafka lag fix"))
        manager.save_session_memory(outcome("old-b", days_ago=125, output="Docs rewrite"))
        manager.archive_old_memories(90)
        return manager

    def test_restore_all(self, archived: MemoryManager):
        result = archived.restore_archived("node-1")
        assert result.restored == 2
        assert sorted(result.session_ids) == ["old-a", "old-b"]

        record = archived.load_memory("old-a", "node-1")
        assert record is not None
        assert "Kafka lag fix" in record.content

    def test_restore_leaves_archive_untouched(self, archived: MemoryManager):
        entry_month = month_key(utcnow() - timedelta(days=120))
        path = archive_path(archived.sessions_dir, "node-1", entry_month)
        before = path.read_text(encoding="utf-8")

        archived.restore_archived("node-1", session_ids=["old-a"])
        assert path.read_text(encoding="utf-8") == before

    def test_restore_by_query(self, archived: MemoryManager):
        result = archived.restore_archived("node-1", query="kafka")
        assert result.session_ids == ["old-a"]
        assert archived.index.get_entry("old-b") is None

    def test_restored_memory_is_not_rearchived(self, archived: MemoryManager):
        archived.restore_archived("node-1")
        assert archived.archive_old_memories(90).archived == 0

    def test_restore_twice_skips_active(self, archived: MemoryManager):
        archived.restore_archived("node-1", session_ids=["old-a"])
        result = archived.restore_archived("node-1", session_ids=["old-a"])
        assert result.restored == 0
        assert result.skipped == 1

    def test_restore_by_month(self, archived: MemoryManager):
        assert archived.restore_archived("node-1", month="1999-01").restored == 0


class TestReconcile:
    def test_removes_orphaned_entries(self, manager: MemoryManager):
        manager.save_session_memory(outcome("gone"))
        manager.save_session_memory(outcome("kept"))
        shutil.rmtree(Path(manager.index.get_entry("gone").file_path).parent)

        report = manager.reconcile()
        assert report.removed == ["gone"]
        assert report.added == []
        assert manager.index.get_entry("kept") is not None

    def test_indexes_unknown_sessions(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1"))
        manager.index.remove_entry("s1")

        report = manager.reconcile()
        assert report.added == ["s1"]
        entry = manager.index.get_entry("s1", "node-1")
        assert entry is not None
        assert Path(entry.file_path).name == "memory.md"
        assert entry.quality is not None

    def test_consistent_index_is_unchanged(self, manager: MemoryManager):
        manager.save_session_memory(outcome("s1"))
        report = manager.reconcile()
        assert report.removed == [] and report.added == []


class TestCli:
    def test_unknown_command_exits(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["bozly", "frobnicate"])
        with pytest.raises(SystemExit) as exc:
            cli.main()
        assert exc.value.code == 1
        assert "Usage" in capsys.readouterr().out

    def test_reconcile_command(self, tmp_path: Path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BOZLY_HOME", str(tmp_path / "home"))
        monkeypatch.setattr(sys, "argv", ["bozly", "reconcile"])
        cli.main()
        assert "Removed 0 orphaned entries, added 0 missing" in capsys.readouterr().out

    def test_search_command(self, tmp_path: Path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BOZLY_HOME", str(tmp_path / "home"))
        config = BozlyConfig(home=tmp_path / "home", memory=MemoryConfig(auto_archive=False))
        MemoryManager(config).save_session_memory(outcome("s1", output="Mastered the album"))

        monkeypatch.setattr(sys, "argv", ["bozly", "search", "album"])
        cli.main()
        out = capsys.readouterr().out
        assert "s1" in out
        assert "Mastered the album" in out
