"""Quality-weighted ranking of indexed memories.

    score = recency * 0.4 + min(quality + usage_weight * 0.1, 1) * 0.6

Older high-quality memories can outrank recent low-quality ones. Entries
without a quality score are ranked on recency alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from bozly.memory.models import (
    IndexEntry,
    MemoryRecord,
    QualityScore,
    UsageTracking,
    format_timestamp,
    parse_timestamp,
    utcnow,
)


@dataclass
class QualityScoringConfig:
    recency_weight: float = 0.4
    quality_weight: float = 0.6
    max_age_days: int = 365
    min_quality_score: float = 0.3


DEFAULT_QUALITY_CONFIG = QualityScoringConfig()


def calculate_recency_score(
    timestamp: str, max_age_days: int = 365, now: datetime | None = None
) -> float:
    """1.0 within a day, 0.1 at `max_age_days` or older, linear in between."""
    now = now or utcnow()
    age_days = (now - parse_timestamp(timestamp)).total_seconds() / 86400
    if age_days <= 1:
        return 1.0
    if age_days >= max_age_days:
        return 0.1
    return 1.0 - ((age_days - 1) / (max_age_days - 1)) * 0.9


def calculate_usage_weight(times_used: int) -> float:
    return min(times_used / 10, 1.0)


def calculate_memory_ranking_score(
    entry: IndexEntry,
    config: QualityScoringConfig = DEFAULT_QUALITY_CONFIG,
    now: datetime | None = None,
) -> float:
    recency = calculate_recency_score(entry.timestamp, config.max_age_days, now)
    if entry.quality is None:
        return recency

    usage = calculate_usage_weight(entry.usage.times_used) if entry.usage else 0.0
    boosted = min(entry.quality.overall + usage * 0.1, 1.0)
    return recency * config.recency_weight + boosted * config.quality_weight


def auto_calculate_quality_score(record: MemoryRecord) -> QualityScore:
    """Heuristic quality from how much of the record was filled in."""
    sections = [
        record.summary,
        record.current_state,
        record.task_spec,
        record.learnings,
        record.key_results,
    ]
    completeness = sum(1 for s in sections if s.strip()) / len(sections)
    accuracy = 0.5 if record.errors.strip() else 0.9
    relevance = min(0.4 + 0.15 * len(record.tags), 1.0)
    overall = round((completeness + accuracy + relevance) / 3, 2)
    return QualityScore(
        overall=overall,
        relevance_to_command=round(relevance, 2),
        completeness=round(completeness, 2),
        accuracy=accuracy,
    )


def update_usage_tracking(
    tracking: UsageTracking | None, now: datetime | None = None
) -> UsageTracking:
    """Record one more access."""
    previous = tracking.times_used if tracking else 0
    count = previous + 1
    trend = "increasing" if count > max(previous + 1, 2) else "stable"
    return UsageTracking(
        last_used=format_timestamp(now or utcnow()),
        times_used=count,
        access_trend=trend,
    )


def rank_memories_by_quality(
    entries: list[IndexEntry],
    config: QualityScoringConfig = DEFAULT_QUALITY_CONFIG,
    now: datetime | None = None,
) -> list[IndexEntry]:
    now = now or utcnow()
    return sorted(
        entries,
        key=lambda e: calculate_memory_ranking_score(e, config, now),
        reverse=True,
    )


def filter_by_quality(
    entries: list[IndexEntry], min_quality: float = DEFAULT_QUALITY_CONFIG.min_quality_score
) -> list[IndexEntry]:
    """Drop entries scored below `min_quality`; unscored entries are kept."""
    return [e for e in entries if e.quality is None or e.quality.overall >= min_quality]


def load_top_memories(
    entries: list[IndexEntry],
    limit: int = 3,
    config: QualityScoringConfig = DEFAULT_QUALITY_CONFIG,
    now: datetime | None = None,
) -> list[IndexEntry]:
    filtered = filter_by_quality(entries, config.min_quality_score)
    return rank_memories_by_quality(filtered, config, now)[:limit]
