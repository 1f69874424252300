"""Memory archiver — keeps the active cache under a soft size cap.

Stale sessions are moved out of the active tree into one JSON bucket per
(node, calendar month) under `<node>/.archives/`. Archive files are permanent
history: entries are appended, never removed.

Every scan is lossy but safe. A session that cannot be read, archived or
deleted is recorded as a failed `ScanOutcome` and skipped; the rest of the
run continues.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from bozly.memory.models import (
    ArchivableMemory,
    ArchiveCheckResult,
    ArchivedMemoryEntry,
    ArchiveFile,
    ArchiveResult,
    ArchiveStats,
    BucketStats,
    CacheSize,
    ScanOutcome,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from bozly.memory.storage import (
    BYTES_PER_MB,
    SessionLocation,
    archive_month,
    archive_path,
    directory_size,
    iter_archive_files,
    iter_node_ids,
    iter_sessions,
    month_key,
    read_json,
    write_json_atomic,
)

if TYPE_CHECKING:
    from bozly.memory.index import MemoryIndex

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MB = 5.0
DEFAULT_UNUSED_DAYS = 90


def _mb(text: str) -> float:
    return len(text.encode("utf-8")) / BYTES_PER_MB


class MemoryArchiver:
    """Moves stale memories from the active tree into monthly archive files."""

    def __init__(
        self,
        sessions_dir: Path,
        index: MemoryIndex | None = None,
        clock: Callable[[], datetime] = utcnow,
        size_probe: Callable[[], float] | None = None,
        unused_threshold_days: int = DEFAULT_UNUSED_DAYS,
    ) -> None:
        self.sessions_dir = sessions_dir
        self.index = index
        self.unused_threshold_days = unused_threshold_days
        self._clock = clock
        self._size_probe = size_probe or (lambda: self.detect_cache_size().total_size_mb)

    # ── Size probing ─────────────────────────────────────────

    def detect_cache_size(self) -> CacheSize:
        """Active-cache size per node; `.archives` is not counted."""
        by_node: dict[str, float] = {}
        total_mb = 0.0
        file_count = 0
        for node_id in iter_node_ids(self.sessions_dir):
            size, count = directory_size(self.sessions_dir / node_id)
            node_mb = size / BYTES_PER_MB
            by_node[node_id] = node_mb
            total_mb += node_mb
            file_count += count
        return CacheSize(total_size_mb=round(total_mb, 2), file_count=file_count, by_node=by_node)

    # ── Candidate selection ──────────────────────────────────

    def _read_session(self, location: SessionLocation) -> ArchivableMemory:
        """Load one session. Raises OSError or ValueError on unreadable data."""
        metadata = read_json(location.metadata_path)
        if not isinstance(metadata, dict):
            raise ValueError("metadata is not an object")
        content = location.memory_path.read_text(encoding="utf-8")

        usage = metadata.get("usage")
        last_used = (usage.get("lastUsed") if isinstance(usage, dict) else None) or metadata.get(
            "timestamp"
        )
        if not last_used:
            mtime = location.metadata_path.stat().st_mtime
            last_used = format_timestamp(datetime.fromtimestamp(mtime, tz=timezone.utc))
        parse_timestamp(str(last_used))

        return ArchivableMemory(
            session_id=location.session_id,
            node_id=location.node_id,
            file_path=str(location.path),
            days_old=0,
            last_used=str(last_used),
            memory_content=content,
            metadata=metadata,
        )

    def find_memories(
        self, node_id: str, outcomes: list[ScanOutcome] | None = None
    ) -> list[ArchivableMemory]:
        """Every readable session of a node that has both metadata and content."""
        memories = []
        for location in iter_sessions(self.sessions_dir, node_id, outcomes):
            if not (location.metadata_path.is_file() and location.memory_path.is_file()):
                continue
            try:
                memories.append(self._read_session(location))
            except (OSError, ValueError) as e:
                logger.debug("Skipping unreadable session %s: %s", location.path, e)
                if outcomes is not None:
                    outcomes.append(ScanOutcome(str(location.path), False, str(e)))
        return memories

    def find_archivable_candidates(
        self, unused_days: int, outcomes: list[ScanOutcome] | None = None
    ) -> list[ArchivableMemory]:
        """Sessions last used before `now - unused_days`, oldest first."""
        now = self._clock()
        cutoff = now - timedelta(days=unused_days)
        candidates = []
        for node_id in iter_node_ids(self.sessions_dir):
            for memory in self.find_memories(node_id, outcomes):
                last_used = parse_timestamp(memory.last_used)
                if last_used < cutoff:
                    memory.days_old = int((now - last_used).total_seconds() // 86400)
                    candidates.append(memory)
        candidates.sort(key=lambda m: parse_timestamp(m.last_used))
        return candidates

    # ── Archival ─────────────────────────────────────────────

    def _load_archive(self, path: Path) -> ArchiveFile:
        if not path.exists():
            now = format_timestamp(self._clock())
            return ArchiveFile(entries=[], created_at=now, last_updated=now)
        data = read_json(path)
        if not isinstance(data, dict):
            raise ValueError(f"archive {path.name} is not an object")
        try:
            return ArchiveFile.from_dict(data)
        except (KeyError, TypeError) as e:
            raise ValueError(f"archive {path.name} has a malformed entry: {e}") from e

    def _archive_to_month(self, node_id: str, month: str, memories: list[ArchivableMemory]) -> float:
        """Append memories to a monthly archive file. Returns archived MB.

        Raises OSError or ValueError; an existing archive that cannot be read
        is never overwritten.
        """
        path = archive_path(self.sessions_dir, node_id, month)
        archive = self._load_archive(path)
        present = {e.session_id for e in archive.entries}
        archived_at = format_timestamp(self._clock())

        total_mb = 0.0
        for memory in memories:
            if memory.session_id not in present:
                tags = memory.metadata.get("tags")
                archive.entries.append(
                    ArchivedMemoryEntry(
                        session_id=memory.session_id,
                        node_id=memory.node_id,
                        title=memory.metadata.get("title"),
                        summary=memory.metadata.get("summary"),
                        tags=list(tags) if isinstance(tags, list) else None,
                        archived_at=archived_at,
                        content=memory.memory_content,
                        metadata=memory.metadata,
                    )
                )
                present.add(memory.session_id)
            total_mb += _mb(memory.memory_content)

        archive.last_updated = archived_at
        write_json_atomic(path, archive.to_dict())
        logger.debug("Archived %d memories to %s", len(memories), path)
        return total_mb

    def _delete_from_cache(self, memory: ArchivableMemory) -> ScanOutcome:
        path = Path(memory.file_path)
        try:
            if path.is_dir():
                shutil.rmtree(path)
        except OSError as e:
            logger.warning("Failed to delete archived session %s: %s", path, e)
            return ScanOutcome(str(path), False, f"delete failed: {e}")
        return ScanOutcome(str(path), True)

    def _forget(self, session_ids: list[str]) -> None:
        if self.index is not None and session_ids:
            self.index.remove_entries(session_ids)

    def archive_old_memories(self, unused_days: int = DEFAULT_UNUSED_DAYS) -> ArchiveResult:
        """Archive every session unused for `unused_days`, grouped by node and month."""
        result = ArchiveResult()
        candidates = self.find_archivable_candidates(unused_days, result.outcomes)

        groups: dict[str, dict[str, list[ArchivableMemory]]] = {}
        for memory in candidates:
            groups.setdefault(memory.node_id, {}).setdefault(month_key(memory.last_used), []).append(
                memory
            )

        for node_id, months in groups.items():
            result.by_node.setdefault(node_id, 0)
            for month, memories in months.items():
                try:
                    self._archive_to_month(node_id, month, memories)
                except (OSError, ValueError) as e:
                    logger.warning("Failed to archive %s/%s: %s", node_id, month, e)
                    result.outcomes.extend(
                        ScanOutcome(m.file_path, False, f"archive failed: {e}") for m in memories
                    )
                    continue

                removed = []
                for memory in memories:
                    outcome = self._delete_from_cache(memory)
                    result.outcomes.append(outcome)
                    if not outcome.ok:
                        continue
                    removed.append(memory.session_id)
                    result.total_archived_mb += _mb(memory.memory_content)
                result.archived += len(removed)
                result.by_node[node_id] += len(removed)
                result.archived_session_ids.extend(removed)
                self._forget(removed)

        if result.archived:
            logger.info(
                "Archived %d memories (%.3fMB) unused for %d days",
                result.archived,
                result.total_archived_mb,
                unused_days,
            )
        return result

    def archive_until_below_threshold(
        self, threshold_mb: float = DEFAULT_THRESHOLD_MB
    ) -> ArchiveCheckResult:
        """Evict one candidate at a time, re-measuring after each, until under `threshold_mb`.

        Each iteration is select -> archive -> delete -> re-measure. The loop
        runs at most once per candidate found at the start.
        """
        result = ArchiveCheckResult()
        current = self._size_probe()
        result.final_cache_size_mb = current
        if current <= threshold_mb:
            return result

        result.triggered = True
        candidates = self.find_archivable_candidates(self.unused_threshold_days, result.outcomes)

        for candidate in candidates:
            if current <= threshold_mb:
                break
            try:
                self._archive_to_month(candidate.node_id, month_key(candidate.last_used), [candidate])
            except (OSError, ValueError) as e:
                logger.warning("Failed to archive %s: %s", candidate.session_id, e)
                result.outcomes.append(
                    ScanOutcome(candidate.file_path, False, f"archive failed: {e}")
                )
                continue

            outcome = self._delete_from_cache(candidate)
            result.outcomes.append(outcome)
            if not outcome.ok:
                continue
            self._forget([candidate.session_id])
            result.archived += 1
            result.archived_session_ids.append(candidate.session_id)

            current = self._size_probe()
            result.final_cache_size_mb = current

        if result.archived:
            logger.info(
                "Archived %d memories, active cache now %.2fMB (threshold %.2fMB)",
                result.archived,
                result.final_cache_size_mb,
                threshold_mb,
            )
        if result.final_cache_size_mb > threshold_mb:
            logger.warning(
                "Active cache still %.2fMB after archiving all eligible memories",
                result.final_cache_size_mb,
            )
        return result

    def check_and_archive_if_needed(
        self, threshold_mb: float = DEFAULT_THRESHOLD_MB
    ) -> ArchiveCheckResult:
        current = self._size_probe()
        if current <= threshold_mb:
            return ArchiveCheckResult(triggered=False, archived=0, final_cache_size_mb=current)
        return self.archive_until_below_threshold(threshold_mb)

    # ── Archive reads ────────────────────────────────────────

    def _read_archives(self, node_id: str) -> list[tuple[str, ArchiveFile]]:
        archives = []
        for path in iter_archive_files(self.sessions_dir, node_id):
            try:
                archives.append((archive_month(path), self._load_archive(path)))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable archive %s: %s", path, e)
        return archives

    def _scope(self, node_id: str | None) -> list[str]:
        return [node_id] if node_id else iter_node_ids(self.sessions_dir)

    def search_archives(self, query: str, node_id: str | None = None) -> list[ArchivedMemoryEntry]:
        """Case-insensitive substring match over summary, title, content and tags."""
        q = query.lower()
        results = []
        for node in self._scope(node_id):
            for _, archive in self._read_archives(node):
                results.extend(e for e in archive.entries if q in e.search_text())
        return results

    def load_archived_memory(self, node_id: str, session_id: str) -> str | None:
        entry = self.find_archived_entry(node_id, session_id)
        return entry.content if entry else None

    def find_archived_entry(self, node_id: str, session_id: str) -> ArchivedMemoryEntry | None:
        for _, archive in self._read_archives(node_id):
            for entry in archive.entries:
                if entry.session_id == session_id:
                    return entry
        return None

    def list_archived(
        self, node_id: str, month: str | None = None
    ) -> list[tuple[str, ArchivedMemoryEntry]]:
        """(month, entry) pairs of a node, optionally restricted to one YYYY-MM bucket."""
        return [
            (archive_month_key, entry)
            for archive_month_key, archive in self._read_archives(node_id)
            if month is None or archive_month_key == month
            for entry in archive.entries
        ]

    def get_archive_stats(self, node_id: str | None = None) -> ArchiveStats:
        stats = ArchiveStats()
        for node in self._scope(node_id):
            for month, archive in self._read_archives(node):
                for entry in archive.entries:
                    size = _mb(entry.content)
                    for bucket in (
                        stats.by_node.setdefault(node, BucketStats()),
                        stats.by_month.setdefault(month, BucketStats()),
                    ):
                        bucket.count += 1
                        bucket.size_mb += size
                    stats.total_archived_count += 1
                    stats.total_archived_mb += size
        return stats
