"""Shared data shapes for the memory subsystem.

Persisted documents use camelCase keys so that files written by earlier
versions of the tool stay readable. Python attributes are snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Trend = Literal["increasing", "stable", "decreasing"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format as UTC ISO-8601 with millisecond precision, e.g. 2025-01-15T10:30:00.000Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


# ── Records ──────────────────────────────────────────────────


@dataclass
class MemoryRecord:
    """One session's distilled summary."""

    session_id: str
    node_id: str
    node_name: str
    timestamp: str
    command: str
    provider: str = "unknown"
    duration_minutes: float = 0.0
    token_count: int | None = None
    title: str = ""
    summary: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    current_state: str = ""
    task_spec: str = ""
    errors: str = ""
    learnings: str = ""
    key_results: str = ""


@dataclass
class QualityScore:
    overall: float = 0.65
    relevance_to_command: float = 0.7
    completeness: float = 0.65
    accuracy: float = 0.65

    def to_dict(self) -> dict[str, float]:
        return {
            "overall": self.overall,
            "relevanceToCommand": self.relevance_to_command,
            "completeness": self.completeness,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityScore:
        return cls(
            overall=float(data.get("overall", 0.65)),
            relevance_to_command=float(data.get("relevanceToCommand", 0.7)),
            completeness=float(data.get("completeness", 0.65)),
            accuracy=float(data.get("accuracy", 0.65)),
        )


@dataclass
class UsageTracking:
    last_used: str
    times_used: int = 0
    access_trend: Trend = "stable"

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastUsed": self.last_used,
            "timesUsed": self.times_used,
            "accessTrend": self.access_trend,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageTracking:
        return cls(
            last_used=str(data.get("lastUsed", "")),
            times_used=int(data.get("timesUsed", 0)),
            access_trend=data.get("accessTrend", "stable"),
        )


@dataclass
class IndexEntry:
    """Denormalized projection of a MemoryRecord kept in the global index."""

    session_id: str
    node_id: str
    node_name: str
    timestamp: str
    command: str
    summary: str
    tags: list[str]
    file_path: str
    quality: QualityScore | None = None
    usage: UsageTracking | None = None

    @classmethod
    def from_record(
        cls,
        record: MemoryRecord,
        file_path: str,
        quality: QualityScore | None = None,
    ) -> IndexEntry:
        return cls(
            session_id=record.session_id,
            node_id=record.node_id,
            node_name=record.node_name,
            timestamp=record.timestamp,
            command=record.command,
            summary=record.summary,
            tags=list(record.tags),
            file_path=file_path,
            quality=quality,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "timestamp": self.timestamp,
            "command": self.command,
            "summary": self.summary,
            "tags": list(self.tags),
            "filePath": self.file_path,
        }
        if self.quality is not None:
            data["quality"] = self.quality.to_dict()
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexEntry:
        quality = data.get("quality")
        usage = data.get("usage")
        return cls(
            session_id=str(data["sessionId"]),
            node_id=str(data.get("nodeId", "")),
            node_name=str(data.get("nodeName", "")),
            timestamp=str(data.get("timestamp", "")),
            command=str(data.get("command", "")),
            summary=str(data.get("summary", "")),
            tags=[str(t) for t in data.get("tags") or []],
            file_path=str(data.get("filePath", "")),
            quality=QualityScore.from_dict(quality) if isinstance(quality, dict) else None,
            usage=UsageTracking.from_dict(usage) if isinstance(usage, dict) else None,
        )


@dataclass
class QueryResult:
    entries: list[IndexEntry]
    total: int
    query: str


@dataclass
class MemoryStats:
    total_sessions: int
    total_memories: int
    oldest_memory: str | None
    newest_memory: str | None
    tag_counts: dict[str, int]
    average_duration_minutes: float = 0.0


# ── Metrics ──────────────────────────────────────────────────


@dataclass
class MemoryFileMetric:
    """Point-in-time snapshot of one memory file. Never mutated once logged."""

    timestamp: str
    node_id: str
    file_path: str
    file_size_mb: float
    entry_count: int
    quality_score: float
    usage_frequency: float
    oldest_entry: str
    newest_entry: str
    average_entry_size: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "nodeId": self.node_id,
            "filePath": self.file_path,
            "fileSizeMB": self.file_size_mb,
            "entryCount": self.entry_count,
            "averageEntrySize": self.average_entry_size,
            "oldestEntry": self.oldest_entry,
            "newestEntry": self.newest_entry,
            "usageFrequency": self.usage_frequency,
            "qualityScore": self.quality_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryFileMetric:
        return cls(
            timestamp=str(data["timestamp"]),
            node_id=str(data.get("nodeId", "")),
            file_path=str(data.get("filePath", "")),
            file_size_mb=float(data.get("fileSizeMB", 0.0)),
            entry_count=int(data.get("entryCount", 0)),
            quality_score=float(data.get("qualityScore", 0.0)),
            usage_frequency=float(data.get("usageFrequency", 0)),
            oldest_entry=str(data.get("oldestEntry", "")),
            newest_entry=str(data.get("newestEntry", "")),
            average_entry_size=float(data.get("averageEntrySize", 0.0)),
        )


@dataclass
class ArchiveScore:
    age_score: float
    quality_score: float
    usage_score: float
    final_score: float
    should_archive: bool
    reason: str


@dataclass
class ScoredMetric:
    metric: MemoryFileMetric
    archive_score: ArchiveScore


@dataclass
class SizeTrend:
    start: float
    end: float
    change: float


@dataclass
class TrendAnalysis:
    total_metrics: int
    growth_trend: Trend
    size_trend_mb: SizeTrend
    quality_trend: Trend
    usage_trend: Trend


@dataclass
class MetricsStatistics:
    total_memories: int
    total_size_mb: float
    average_quality: float
    average_usage_frequency: float
    largest_file_path: str
    largest_file_size_mb: float
    oldest_entry: str
    newest_entry: str


@dataclass
class SizeRecommendations:
    oversized_files: list[tuple[str, float]]
    recommendation: str


# ── Archives ─────────────────────────────────────────────────


@dataclass
class ArchivedMemoryEntry:
    session_id: str
    node_id: str
    archived_at: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    summary: str | None = None
    tags: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "nodeId": self.node_id,
            "archivedAt": self.archived_at,
            "content": self.content,
            "metadata": self.metadata,
        }
        if self.title is not None:
            data["title"] = self.title
        if self.summary is not None:
            data["summary"] = self.summary
        if self.tags is not None:
            data["tags"] = list(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivedMemoryEntry:
        tags = data.get("tags")
        return cls(
            session_id=str(data["sessionId"]),
            node_id=str(data.get("nodeId", "")),
            archived_at=str(data.get("archivedAt", "")),
            content=str(data.get("content", "")),
            metadata=dict(data.get("metadata") or {}),
            title=data.get("title"),
            summary=data.get("summary"),
            tags=[str(t) for t in tags] if isinstance(tags, list) else None,
        )

    def search_text(self) -> str:
        return " ".join(
            [
                self.summary or "",
                self.title or "",
                self.content,
                " ".join(self.tags or []),
            ]
        ).lower()


@dataclass
class ArchiveFile:
    entries: list[ArchivedMemoryEntry]
    created_at: str
    last_updated: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveFile:
        return cls(
            entries=[ArchivedMemoryEntry.from_dict(e) for e in data.get("entries", [])],
            created_at=str(data.get("createdAt", "")),
            last_updated=str(data.get("lastUpdated", "")),
        )


@dataclass
class ArchivableMemory:
    """An active session selected as an archive candidate."""

    session_id: str
    node_id: str
    file_path: str
    days_old: int
    last_used: str
    memory_content: str
    metadata: dict[str, Any]


@dataclass
class ScanOutcome:
    """Result of handling one entry during a walk; failures are kept, not raised."""

    path: str
    ok: bool
    reason: str = ""


@dataclass
class CacheSize:
    total_size_mb: float
    file_count: int
    by_node: dict[str, float]


@dataclass
class ArchiveResult:
    archived: int = 0
    total_archived_mb: float = 0.0
    by_node: dict[str, int] = field(default_factory=dict)
    archived_session_ids: list[str] = field(default_factory=list)
    outcomes: list[ScanOutcome] = field(default_factory=list)


@dataclass
class ArchiveCheckResult:
    triggered: bool = False
    archived: int = 0
    final_cache_size_mb: float = 0.0
    archived_session_ids: list[str] = field(default_factory=list)
    outcomes: list[ScanOutcome] = field(default_factory=list)


@dataclass
class BucketStats:
    count: int = 0
    size_mb: float = 0.0


@dataclass
class ArchiveStats:
    total_archived_count: int = 0
    total_archived_mb: float = 0.0
    by_node: dict[str, BucketStats] = field(default_factory=dict)
    by_month: dict[str, BucketStats] = field(default_factory=dict)
