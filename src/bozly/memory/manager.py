"""Memory manager — one entry point over store, index, metrics, archiver and loader.

Session runners call `save_session_memory` when a session ends and
`build_session_context` when a new one starts. Everything else here serves
the CLI and maintenance jobs.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from bozly.config import BozlyConfig
from bozly.memory import loader
from bozly.memory.archiver import MemoryArchiver
from bozly.memory.extractor import (
    SessionOutcome,
    build_metadata,
    extract_record,
    record_from_metadata,
    render_memory_markdown,
)
from bozly.memory.index import MemoryIndex
from bozly.memory.metrics import MemoryMetricsRecorder
from bozly.memory.models import (
    ArchiveCheckResult,
    ArchivedMemoryEntry,
    ArchiveResult,
    ArchiveStats,
    CacheSize,
    IndexEntry,
    MemoryFileMetric,
    MemoryRecord,
    MemoryStats,
    QualityScore,
    UsageTracking,
    format_timestamp,
    utcnow,
)
from bozly.memory.quality import (
    DEFAULT_QUALITY_CONFIG,
    QualityScoringConfig,
    auto_calculate_quality_score,
    filter_by_quality,
    load_top_memories,
    rank_memories_by_quality,
    update_usage_tracking,
)
from bozly.memory.storage import (
    BYTES_PER_MB,
    MEMORY_FILENAME,
    METADATA_FILENAME,
    iter_node_ids,
    read_json,
    session_path,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

# Enough to rank every memory of a node
_RANKING_POOL = 1000


@dataclass
class ReconcileReport:
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    restored: int = 0
    failed: int = 0
    skipped: int = 0
    session_ids: list[str] = field(default_factory=list)


def _entry_from_metadata(metadata: dict, file_path: Path) -> IndexEntry:
    return IndexEntry.from_dict({**metadata, "filePath": str(file_path)})


class MemoryManager:
    """Read/write access to session memories."""

    def __init__(
        self,
        config: BozlyConfig,
        clock: Callable[[], datetime] = utcnow,
        size_probe: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self.sessions_dir = config.sessions_dir
        self._clock = clock
        self.index = MemoryIndex(config.index_path)
        self.metrics = MemoryMetricsRecorder(config.metrics_path, clock=clock)
        self.archiver = MemoryArchiver(
            self.sessions_dir,
            index=self.index,
            clock=clock,
            size_probe=size_probe,
            unused_threshold_days=config.memory.unused_days,
        )

    # ── Writing ──────────────────────────────────────────────

    def save_session_memory(self, outcome: SessionOutcome) -> MemoryRecord:
        """Extract, store, index and meter the memory of a finished session."""
        record = extract_record(outcome)
        self.save_record(record)
        return record

    def save_record(self, record: MemoryRecord) -> Path:
        """Write a record into the active tree. Returns the path of its memory file.

        Raises OSError if the session documents cannot be written.
        """
        quality = auto_calculate_quality_score(record)
        directory = session_path(self.sessions_dir, record.node_id, record.timestamp, record.session_id)
        directory.mkdir(parents=True, exist_ok=True)

        memory_path = directory / MEMORY_FILENAME
        memory_path.write_text(render_memory_markdown(record), encoding="utf-8")
        write_json_atomic(directory / METADATA_FILENAME, build_metadata(record, quality))
        logger.info("Saved memory for session %s (%s)", record.session_id, record.node_name)

        self.index.add_entry(record, memory_path, quality)
        self._record_metric(record, directory, memory_path, quality)

        if self.config.memory.auto_archive:
            self.check_and_archive_if_needed()
        return memory_path

    def _record_metric(
        self, record: MemoryRecord, directory: Path, memory_path: Path, quality: QualityScore
    ) -> None:
        size = sum(p.stat().st_size for p in directory.iterdir() if p.is_file())
        metric = MemoryFileMetric(
            timestamp=format_timestamp(self._clock()),
            node_id=record.node_id,
            file_path=str(memory_path),
            file_size_mb=size / BYTES_PER_MB,
            entry_count=1,
            average_entry_size=float(size),
            oldest_entry=record.timestamp,
            newest_entry=record.timestamp,
            usage_frequency=0,
            quality_score=quality.overall,
        )
        self.metrics.record_metric(metric)

    # ── Reading ──────────────────────────────────────────────

    def load_memory(self, session_id: str, node_id: str) -> MemoryRecord | None:
        entry = self.index.get_entry(session_id, node_id)
        if entry is None:
            logger.debug("Memory entry not found in index: %s / %s", session_id, node_id)
            return None

        memory_path = Path(entry.file_path)
        try:
            content = memory_path.read_text(encoding="utf-8")
        except OSError:
            logger.debug("Memory file not found at: %s", memory_path)
            return None

        try:
            metadata = read_json(memory_path.parent / METADATA_FILENAME)
        except (OSError, ValueError):
            metadata = {}
        if not isinstance(metadata, dict) or "sessionId" not in metadata:
            metadata = entry.to_dict()
        return record_from_metadata(metadata, content)

    def list_memories(self, node_id: str | None = None, limit: int = 50) -> list[IndexEntry]:
        if node_id:
            return self.index.query_by_node(node_id, limit)
        return self.index.all_entries(limit)

    def search_memories(self, query: str, limit: int = 20) -> list[IndexEntry]:
        return self.index.search(query, limit).entries

    def get_memories_by_tags(self, tags: list[str], limit: int = 20) -> list[IndexEntry]:
        return self.index.query_by_tags(tags, limit)

    def get_memory_stats(self, node_id: str | None = None) -> MemoryStats:
        return self.index.get_stats(node_id)

    def delete_memory(self, session_id: str, node_id: str) -> bool:
        """Remove a memory from the active tree and the index."""
        entry = self.index.get_entry(session_id, node_id)
        directory = Path(entry.file_path).parent if entry else self._find_session_dir(session_id, node_id)
        if directory is not None and directory.is_dir():
            try:
                shutil.rmtree(directory)
                logger.debug("Deleted memory directory: %s", directory)
            except OSError as e:
                logger.warning("Failed to delete memory directory %s: %s", directory, e)
        removed = self.index.remove_entry(session_id)
        return removed or directory is not None

    def _find_session_dir(self, session_id: str, node_id: str) -> Path | None:
        for memory in self.archiver.find_memories(node_id):
            if memory.session_id == session_id:
                return Path(memory.file_path)
        return None

    # ── Quality ranking ──────────────────────────────────────

    def load_top_memories_by_quality(
        self, node_id: str, limit: int = 3, config: QualityScoringConfig = DEFAULT_QUALITY_CONFIG
    ) -> list[IndexEntry]:
        entries = self.index.query_by_node(node_id, _RANKING_POOL)
        return load_top_memories(entries, limit, config, self._clock())

    def get_ranked_memories(
        self, node_id: str, config: QualityScoringConfig = DEFAULT_QUALITY_CONFIG
    ) -> list[IndexEntry]:
        entries = self.index.query_by_node(node_id, _RANKING_POOL)
        return rank_memories_by_quality(entries, config, self._clock())

    def get_high_quality_memories(self, node_id: str, min_quality: float = 0.5) -> list[IndexEntry]:
        return filter_by_quality(self.index.query_by_node(node_id, _RANKING_POOL), min_quality)

    # ── Context injection ────────────────────────────────────

    def build_session_context(
        self,
        node_id: str,
        base_context: str = "",
        limit: int | None = None,
        max_age: int | None = None,
        sort_by: loader.SortBy | None = None,
    ) -> str:
        """Prefix `base_context` with the node's most relevant past memories."""
        settings = self.config.loader
        loaded = loader.load_ranked_memories(
            self.sessions_dir,
            node_id,
            limit=limit if limit is not None else settings.limit,
            max_age=max_age if max_age is not None else settings.max_age_days,
            sort_by=sort_by or settings.sort_by,
            now=self._clock(),
        )
        for path, _ in loaded:
            self._mark_used(path.parent)

        memories = [content for _, content in loaded]
        logger.debug(loader.memory_summary(memories))
        return loader.inject_memories_into_context(base_context, memories)

    def _mark_used(self, directory: Path) -> None:
        """Bump `usage` in a session's metadata and its index entry."""
        metadata_path = directory / METADATA_FILENAME
        try:
            metadata = read_json(metadata_path)
        except (OSError, ValueError) as e:
            logger.debug("Cannot update usage for %s: %s", directory, e)
            return
        if not isinstance(metadata, dict):
            return

        previous = metadata.get("usage")
        usage = update_usage_tracking(
            UsageTracking.from_dict(previous) if isinstance(previous, dict) else None,
            self._clock(),
        )
        metadata["usage"] = usage.to_dict()
        try:
            write_json_atomic(metadata_path, metadata)
        except OSError as e:
            logger.warning("Failed to update usage for %s: %s", directory, e)
            return

        entry = self.index.get_entry(directory.name)
        if entry is not None:
            entry.usage = usage
            self.index.save()

    # ── Archival ─────────────────────────────────────────────

    def get_cache_size(self) -> CacheSize:
        return self.archiver.detect_cache_size()

    def check_and_archive_if_needed(self) -> ArchiveCheckResult:
        result = self.archiver.check_and_archive_if_needed(self.config.memory.cache_threshold_mb)
        if result.triggered:
            logger.info(
                "Memory archival triggered: archived %d memories, cache reduced to %.2fMB",
                result.archived,
                result.final_cache_size_mb,
            )
        return result

    def archive_old_memories(self, unused_days: int | None = None) -> ArchiveResult:
        days = unused_days if unused_days is not None else self.config.memory.unused_days
        return self.archiver.archive_old_memories(days)

    def search_archived_memories(
        self, query: str, node_id: str | None = None
    ) -> list[ArchivedMemoryEntry]:
        return self.archiver.search_archives(query, node_id)

    def load_archived_memory(self, node_id: str, session_id: str) -> str | None:
        return self.archiver.load_archived_memory(node_id, session_id)

    def get_archive_stats(self, node_id: str | None = None) -> ArchiveStats:
        return self.archiver.get_archive_stats(node_id)

    def restore_archived(
        self,
        node_id: str,
        session_ids: list[str] | None = None,
        month: str | None = None,
        query: str | None = None,
    ) -> RestoreResult:
        """Copy archived memories back into the active tree and re-index them.

        Archive files are left untouched. Restored records are marked as used
        now so they are not selected again by the next archival pass.
        """
        result = RestoreResult()
        wanted = set(session_ids) if session_ids else None
        q = query.lower() if query else None

        for _, entry in self.archiver.list_archived(node_id, month):
            if wanted is not None and entry.session_id not in wanted:
                continue
            if q is not None and q not in entry.search_text():
                continue
            existing = self.index.get_entry(entry.session_id, node_id)
            if existing is not None and Path(existing.file_path).exists():
                result.skipped += 1
                continue
            try:
                self._restore_entry(node_id, entry)
            except (OSError, ValueError) as e:
                logger.warning("Failed to restore %s: %s", entry.session_id, e)
                result.failed += 1
                continue
            result.restored += 1
            result.session_ids.append(entry.session_id)

        logger.info("Restored %d archived memories for %s", result.restored, node_id)
        return result

    def _restore_entry(self, node_id: str, entry: ArchivedMemoryEntry) -> None:
        metadata = dict(entry.metadata)
        metadata.setdefault("sessionId", entry.session_id)
        metadata.setdefault("nodeId", node_id)
        metadata.setdefault("timestamp", entry.archived_at)
        if entry.summary is not None:
            metadata.setdefault("summary", entry.summary)
        if entry.tags is not None:
            metadata.setdefault("tags", entry.tags)

        previous = metadata.get("usage")
        metadata["usage"] = update_usage_tracking(
            UsageTracking.from_dict(previous) if isinstance(previous, dict) else None,
            self._clock(),
        ).to_dict()

        directory = session_path(self.sessions_dir, node_id, metadata["timestamp"], entry.session_id)
        directory.mkdir(parents=True, exist_ok=True)
        memory_path = directory / MEMORY_FILENAME
        memory_path.write_text(entry.content, encoding="utf-8")
        write_json_atomic(directory / METADATA_FILENAME, metadata)
        self.index.put_entry(_entry_from_metadata(metadata, memory_path))

    # ── Maintenance ──────────────────────────────────────────

    def reconcile(self) -> ReconcileReport:
        """Bring the index back in line with the active tree.

        Drops entries whose memory file is gone (e.g. a crash between deleting
        an archived session and saving the index) and indexes active sessions
        the index does not know about.
        """
        report = ReconcileReport()

        orphaned = [e.session_id for e in self.index.all_entries() if not Path(e.file_path).exists()]
        if orphaned:
            self.index.remove_entries(orphaned)
            report.removed.extend(orphaned)

        known = {e.session_id for e in self.index.all_entries()}
        for node_id in iter_node_ids(self.sessions_dir):
            for memory in self.archiver.find_memories(node_id):
                if memory.session_id in known:
                    continue
                metadata = dict(memory.metadata)
                metadata.setdefault("sessionId", memory.session_id)
                metadata.setdefault("nodeId", node_id)
                metadata.setdefault("timestamp", memory.last_used)
                try:
                    entry = _entry_from_metadata(metadata, Path(memory.file_path) / MEMORY_FILENAME)
                except (TypeError, ValueError) as e:
                    logger.warning("Cannot index session %s: %s", memory.session_id, e)
                    continue
                self.index.put_entry(entry)
                report.added.append(memory.session_id)

        if report.removed or report.added:
            logger.info(
                "Reconciled memory index: removed %d orphaned, added %d missing",
                len(report.removed),
                len(report.added),
            )
        return report
