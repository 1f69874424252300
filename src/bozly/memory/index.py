"""Global memory index — a queryable catalog of active memory records.

Persisted as a single JSON document (`~/.bozly/memory-index.json`) so that
listing, searching and statistics never have to walk the session tree.
Entries are kept newest-first, one per session.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from bozly.memory.models import (
    IndexEntry,
    MemoryRecord,
    MemoryStats,
    QualityScore,
    QueryResult,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from bozly.memory.storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _timestamp_key(entry: IndexEntry) -> datetime:
    try:
        return parse_timestamp(entry.timestamp)
    except ValueError:
        return _EPOCH


def _major(version: str) -> int:
    try:
        return int(str(version).split(".", 1)[0])
    except ValueError:
        return -1


class MemoryIndex:
    """Durable index of memory records across all nodes."""

    def __init__(self, index_path: Path) -> None:
        self.index_path = index_path
        self.version = INDEX_VERSION
        self.created = ""
        self.last_updated = ""
        self._entries: list[IndexEntry] | None = None

    # ── Persistence ──────────────────────────────────────────

    def _reset(self) -> None:
        now = format_timestamp(utcnow())
        self.version = INDEX_VERSION
        self.created = now
        self.last_updated = now
        self._entries = []

    def load(self) -> None:
        """Read the index from disk. Missing or unreadable files give an empty index."""
        try:
            data = read_json(self.index_path)
        except FileNotFoundError:
            self._reset()
            logger.debug("Created new memory index")
            return
        except (OSError, ValueError) as e:
            logger.warning("Failed to load memory index %s: %s", self.index_path, e)
            self._reset()
            return

        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            logger.warning("Memory index %s has an unexpected shape, starting fresh", self.index_path)
            self._reset()
            return

        version = data.get("version")
        if version is None:
            logger.info("Migrating unversioned memory index to %s", INDEX_VERSION)
            version = INDEX_VERSION
        elif _major(version) != _major(INDEX_VERSION):
            logger.warning(
                "Unsupported memory index version %s (expected %s), starting fresh",
                version,
                INDEX_VERSION,
            )
            self._reset()
            return

        entries: list[IndexEntry] = []
        for raw in data["entries"]:
            try:
                entries.append(IndexEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed index entry: %s", e)
        entries.sort(key=_timestamp_key, reverse=True)

        now = format_timestamp(utcnow())
        self.version = INDEX_VERSION
        self.created = str(data.get("created") or now)
        self.last_updated = str(data.get("lastUpdated") or now)
        self._entries = entries
        logger.debug("Loaded memory index from %s (%d entries)", self.index_path, len(entries))

    def save(self) -> bool:
        """Atomically rewrite the index file. Returns False if the write failed."""
        entries = self._ensure_loaded()
        self.last_updated = format_timestamp(utcnow())
        try:
            write_json_atomic(self.index_path, self._to_document(entries))
        except OSError as e:
            logger.error("Failed to save memory index %s: %s", self.index_path, e)
            return False
        logger.debug("Saved memory index to %s", self.index_path)
        return True

    def _to_document(self, entries: list[IndexEntry]) -> dict:
        return {
            "version": self.version,
            "created": self.created,
            "lastUpdated": self.last_updated,
            "entries": [e.to_dict() for e in entries],
        }

    def _ensure_loaded(self) -> list[IndexEntry]:
        if self._entries is None:
            self.load()
        assert self._entries is not None
        return self._entries

    # ── Mutation ─────────────────────────────────────────────

    def add_entry(
        self,
        record: MemoryRecord,
        file_path: str | Path,
        quality: QualityScore | None = None,
    ) -> IndexEntry:
        """Insert or replace the entry for `record.session_id`, keeping newest-first order."""
        entries = self._ensure_loaded()
        entry = IndexEntry.from_record(record, str(file_path), quality)
        entries[:] = [e for e in entries if e.session_id != entry.session_id]
        entries.append(entry)
        entries.sort(key=_timestamp_key, reverse=True)
        self.save()
        logger.debug("Added memory index entry: %s", record.session_id)
        return entry

    def put_entry(self, entry: IndexEntry) -> None:
        """Insert or replace a prebuilt entry (used by reconciliation and restore)."""
        entries = self._ensure_loaded()
        entries[:] = [e for e in entries if e.session_id != entry.session_id]
        entries.append(entry)
        entries.sort(key=_timestamp_key, reverse=True)
        self.save()

    def remove_entry(self, session_id: str) -> bool:
        entries = self._ensure_loaded()
        before = len(entries)
        entries[:] = [e for e in entries if e.session_id != session_id]
        if len(entries) < before:
            self.save()
            logger.debug("Removed memory index entry: %s", session_id)
            return True
        return False

    def remove_entries(self, session_ids: list[str]) -> int:
        """Remove several entries with a single save. Returns the number removed."""
        entries = self._ensure_loaded()
        targets = set(session_ids)
        before = len(entries)
        entries[:] = [e for e in entries if e.session_id not in targets]
        removed = before - len(entries)
        if removed:
            self.save()
            logger.debug("Removed %d memory index entries", removed)
        return removed

    def clear(self) -> None:
        entries = self._ensure_loaded()
        entries.clear()
        self.save()
        logger.warning("Cleared all memory index entries")

    # ── Queries ──────────────────────────────────────────────

    def get_entry(self, session_id: str, node_id: str | None = None) -> IndexEntry | None:
        for e in self._ensure_loaded():
            if e.session_id == session_id and (node_id is None or e.node_id == node_id):
                return e
        return None

    def all_entries(self, limit: int | None = None) -> list[IndexEntry]:
        entries = self._ensure_loaded()
        return list(entries if limit is None else entries[:limit])

    def query_by_node(self, node_id: str, limit: int = 10) -> list[IndexEntry]:
        return [e for e in self._ensure_loaded() if e.node_id == node_id][:limit]

    def query_by_tags(self, tags: list[str], limit: int = 10) -> list[IndexEntry]:
        """Entries carrying any of `tags`."""
        wanted = set(tags)
        return [e for e in self._ensure_loaded() if wanted.intersection(e.tags)][:limit]

    def query_by_command(self, command: str, limit: int = 10) -> list[IndexEntry]:
        q = command.lower()
        return [
            e
            for e in self._ensure_loaded()
            if q in e.command.lower() or q in e.summary.lower()
        ][:limit]

    def query_by_time_range(
        self, start: datetime, end: datetime, limit: int = 10
    ) -> list[IndexEntry]:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        matching = []
        for e in self._ensure_loaded():
            try:
                ts = parse_timestamp(e.timestamp)
            except ValueError:
                continue
            if start <= ts <= end:
                matching.append(e)
        return matching[:limit]

    def search(self, query: str, limit: int = 10) -> QueryResult:
        """Case-insensitive substring search over node name, command, summary and tags."""
        q = query.lower()
        matching = [
            e
            for e in self._ensure_loaded()
            if q in e.node_name.lower()
            or q in e.command.lower()
            or q in e.summary.lower()
            or any(q in t.lower() for t in e.tags)
        ][:limit]
        return QueryResult(entries=matching, total=len(matching), query=query)

    def get_stats(self, node_id: str | None = None) -> MemoryStats:
        all_entries = self._ensure_loaded()
        entries = [e for e in all_entries if e.node_id == node_id] if node_id else all_entries

        tag_counts: dict[str, int] = {}
        for e in entries:
            for tag in e.tags:
                tag_counts[tag] = tag_counts.get(tag, 0) + 1

        return MemoryStats(
            total_sessions=len(all_entries),
            total_memories=len(entries),
            oldest_memory=entries[-1].timestamp if entries else None,
            newest_memory=entries[0].timestamp if entries else None,
            tag_counts=tag_counts,
        )

    def get_index_stats(self) -> dict:
        entries = self._entries or []
        return {
            "totalEntries": len(entries),
            "fileSize": len(json.dumps(self._to_document(entries))),
            "newestEntry": entries[0].session_id if entries else None,
        }
