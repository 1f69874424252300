"""Memory metrics — an append-only log of per-file size, quality and usage.

Archival decisions are made from this log rather than by re-reading memory
content. The log lives in `~/.bozly/memory-metrics.json`.

Archive score:
    age     = min(days_old / 90, 1)
    quality = 1 - quality_score          (low quality -> high score)
    usage   = max(1 - usage / 10, 0)     (unused -> high score)
    final   = 0.25*age + 0.35*quality + 0.40*usage
    archive when final > 0.6
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from bozly.memory.models import (
    ArchiveScore,
    MemoryFileMetric,
    MetricsStatistics,
    ScoredMetric,
    SizeRecommendations,
    SizeTrend,
    Trend,
    TrendAnalysis,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from bozly.memory.storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

AGE_WEIGHT = 0.25
QUALITY_WEIGHT = 0.35
USAGE_WEIGHT = 0.40
ARCHIVE_THRESHOLD = 0.6
OVERSIZED_MB = 5.0


def archive_reason(days_old: float, quality_score: float, usage_frequency: float) -> str:
    reasons = []
    if days_old > 60:
        reasons.append("old")
    if quality_score < 0.5:
        reasons.append("low quality")
    if usage_frequency == 0:
        reasons.append("unused")
    return ", ".join(reasons) if reasons else "candidate for review"


def calculate_archive_score(
    days_old: float, quality_score: float, usage_frequency: float
) -> ArchiveScore:
    age = min(days_old / 90, 1)
    quality = 1 - quality_score
    usage = max(1 - usage_frequency / 10, 0)
    final = age * AGE_WEIGHT + quality * QUALITY_WEIGHT + usage * USAGE_WEIGHT
    return ArchiveScore(
        age_score=age,
        quality_score=quality,
        usage_score=usage,
        final_score=final,
        should_archive=final > ARCHIVE_THRESHOLD,
        reason=archive_reason(days_old, quality_score, usage_frequency),
    )


def _classify(change: float, band: float) -> Trend:
    if change > band:
        return "increasing"
    if change < -band:
        return "decreasing"
    return "stable"


class MemoryMetricsRecorder:
    """Append-only metrics log with trend and archive-candidate analysis."""

    def __init__(
        self,
        metrics_path: Path,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.metrics_path = metrics_path
        self._clock = clock
        self._entries: list[MemoryFileMetric] | None = None
        self.last_calculated = ""

    def initialize(self) -> None:
        """Load the log. A missing or corrupt file yields an empty log."""
        try:
            data = read_json(self.metrics_path)
        except FileNotFoundError:
            self._entries = []
            return
        except (OSError, ValueError) as e:
            logger.warning("Failed to load memory metrics %s: %s", self.metrics_path, e)
            self._entries = []
            return

        raw_entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(raw_entries, list):
            logger.warning("Memory metrics %s has an unexpected shape, starting fresh", self.metrics_path)
            self._entries = []
            return

        entries = []
        for raw in raw_entries:
            try:
                entries.append(MemoryFileMetric.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed metric: %s", e)
        self._entries = entries
        self.last_calculated = str(data.get("lastCalculated", ""))

    def _metrics(self) -> list[MemoryFileMetric]:
        if self._entries is None:
            self.initialize()
        assert self._entries is not None
        return self._entries

    def record_metric(self, metric: MemoryFileMetric) -> bool:
        """Append a snapshot and rewrite the log. Returns False if the write failed.

        The snapshot stays in memory either way.
        """
        entries = self._metrics()
        entries.append(metric)
        self.last_calculated = format_timestamp(self._clock())
        try:
            write_json_atomic(
                self.metrics_path,
                {
                    "entries": [m.to_dict() for m in entries],
                    "lastCalculated": self.last_calculated,
                    "totalFiles": len(entries),
                    "totalSizeMB": sum(m.file_size_mb for m in entries),
                },
            )
        except OSError as e:
            logger.error("Failed to save memory metrics %s: %s", self.metrics_path, e)
            return False
        logger.debug("Recorded memory metric for %s", metric.file_path)
        return True

    def get_metrics_by_node(self, node_id: str) -> list[MemoryFileMetric]:
        return [m for m in self._metrics() if m.node_id == node_id]

    def get_all_metrics(self) -> list[MemoryFileMetric]:
        return list(self._metrics())

    def _days_old(self, metric: MemoryFileMetric) -> int:
        age = self._clock() - parse_timestamp(metric.timestamp)
        return int(age.total_seconds() // 86400)

    def get_archivable_candidates(
        self, threshold: float = ARCHIVE_THRESHOLD, node_id: str | None = None
    ) -> list[ScoredMetric]:
        """Metrics whose archive score reaches `threshold`, highest score first."""
        metrics = self._metrics()
        if node_id:
            metrics = [m for m in metrics if m.node_id == node_id]

        scored = []
        for m in metrics:
            try:
                days_old = self._days_old(m)
            except ValueError:
                logger.debug("Skipping metric with bad timestamp: %s", m.timestamp)
                continue
            score = calculate_archive_score(days_old, m.quality_score, m.usage_frequency)
            if score.final_score >= threshold:
                scored.append(ScoredMetric(metric=m, archive_score=score))

        scored.sort(key=lambda s: s.archive_score.final_score, reverse=True)
        return scored

    def get_trend_analysis(self, days: int = 30, node_id: str | None = None) -> TrendAnalysis:
        cutoff = self._clock() - timedelta(days=days)
        windowed: list[tuple[datetime, MemoryFileMetric]] = []
        for m in self._metrics():
            if node_id and m.node_id != node_id:
                continue
            try:
                ts = parse_timestamp(m.timestamp)
            except ValueError:
                continue
            if ts >= cutoff:
                windowed.append((ts, m))

        if len(windowed) < 2:
            size = windowed[0][1].file_size_mb if windowed else 0.0
            return TrendAnalysis(
                total_metrics=len(windowed),
                growth_trend="stable",
                size_trend_mb=SizeTrend(start=size, end=size, change=0.0),
                quality_trend="stable",
                usage_trend="stable",
            )

        windowed.sort(key=lambda pair: pair[0])
        first = windowed[0][1]
        last = windowed[-1][1]
        size_change = last.file_size_mb - first.file_size_mb

        return TrendAnalysis(
            total_metrics=len(windowed),
            growth_trend=_classify(size_change, 0.5),
            size_trend_mb=SizeTrend(
                start=first.file_size_mb, end=last.file_size_mb, change=size_change
            ),
            quality_trend=_classify(last.quality_score - first.quality_score, 0.1),
            usage_trend=_classify(last.usage_frequency - first.usage_frequency, 1),
        )

    def get_statistics(self) -> MetricsStatistics:
        metrics = self._metrics()
        if not metrics:
            return MetricsStatistics(
                total_memories=0,
                total_size_mb=0.0,
                average_quality=0.0,
                average_usage_frequency=0.0,
                largest_file_path="",
                largest_file_size_mb=0.0,
                oldest_entry="",
                newest_entry="",
            )

        largest = max(metrics, key=lambda m: m.file_size_mb)
        return MetricsStatistics(
            total_memories=len(metrics),
            total_size_mb=sum(m.file_size_mb for m in metrics),
            average_quality=sum(m.quality_score for m in metrics) / len(metrics),
            average_usage_frequency=sum(m.usage_frequency for m in metrics) / len(metrics),
            largest_file_path=largest.file_path,
            largest_file_size_mb=largest.file_size_mb,
            oldest_entry=min(m.oldest_entry for m in metrics),
            newest_entry=max(m.newest_entry for m in metrics),
        )

    def get_size_recommendations(self) -> SizeRecommendations:
        oversized = sorted(
            ((m.file_path, m.file_size_mb) for m in self._metrics() if m.file_size_mb > OVERSIZED_MB),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return SizeRecommendations(
            oversized_files=oversized,
            recommendation=(
                "Consider using local database for oversized files"
                if oversized
                else "All memory files within size limits"
            ),
        )
