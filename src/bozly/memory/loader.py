"""Load past session memories and inject them into a new session's context.

Discovery reads the active tree directly (not the index): every `memory.md`
under a node is a candidate, dated by its modification time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

from bozly.memory.models import utcnow
from bozly.memory.storage import ARCHIVES_DIRNAME, MEMORY_FILENAME

logger = logging.getLogger(__name__)

SortBy = Literal["recent", "relevance"]

CONTEXT_HEADER = "=== CONTEXT FROM PREVIOUS SESSIONS ==="
CONTEXT_FOOTER = "=========================================="


@dataclass
class MemoryFile:
    path: Path
    session_id: str
    timestamp: datetime


@dataclass
class RankedMemory:
    path: Path
    timestamp: datetime
    relevance_score: float


def discover_memories(sessions_base: Path, node_id: str) -> list[MemoryFile]:
    """Find every memory file of a node, newest first."""
    node_path = sessions_base / node_id
    if not node_path.is_dir():
        logger.debug("Sessions directory not found: %s", node_path)
        return []

    memories = []
    for root, dirs, files in os.walk(node_path):
        dirs[:] = [d for d in dirs if d != ARCHIVES_DIRNAME]
        if MEMORY_FILENAME not in files:
            continue
        path = Path(root) / MEMORY_FILENAME
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            logger.warning("Failed to stat memory file %s: %s", path, e)
            continue
        memories.append(
            MemoryFile(
                path=path,
                session_id=path.parent.name,
                timestamp=datetime.fromtimestamp(mtime, tz=timezone.utc),
            )
        )

    memories.sort(key=lambda m: m.timestamp, reverse=True)
    return memories


def rank_memories(
    memories: list[MemoryFile],
    limit: int = 3,
    max_age: int = 30,
    sort_by: SortBy = "recent",
    now: datetime | None = None,
) -> list[RankedMemory]:
    """Drop memories older than `max_age` days, keep the first `limit`, then sort.

    Truncation happens before scoring, so with newest-first input the result
    is always the `limit` most recent memories whatever `sort_by` is.
    Relevance decays linearly from 100 (brand new) to 0 (at `max_age`).
    """
    now = now or utcnow()
    max_age_span = timedelta(days=max_age)

    def relevance(timestamp: datetime) -> float:
        if not max_age_span:
            return 100.0
        return 100 - ((now - timestamp) / max_age_span) * 100

    kept = [m for m in memories if now - m.timestamp <= max_age_span][:limit]
    ranked = [
        RankedMemory(path=m.path, timestamp=m.timestamp, relevance_score=relevance(m.timestamp))
        for m in kept
    ]

    if sort_by == "recent":
        ranked.sort(key=lambda r: r.timestamp, reverse=True)
    else:
        ranked.sort(key=lambda r: r.relevance_score, reverse=True)
    return ranked


def load_memory_file(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to load memory file %s: %s", path, e)
        return None


def load_relevant_memories(
    sessions_base: Path,
    node_id: str,
    limit: int = 3,
    max_age: int = 30,
    sort_by: SortBy = "recent",
    now: datetime | None = None,
) -> list[str]:
    """Discover, rank and read past memories. Unreadable files are skipped."""
    loaded = load_ranked_memories(
        sessions_base, node_id, limit=limit, max_age=max_age, sort_by=sort_by, now=now
    )
    return [content for _, content in loaded]


def load_ranked_memories(
    sessions_base: Path,
    node_id: str,
    limit: int = 3,
    max_age: int = 30,
    sort_by: SortBy = "recent",
    now: datetime | None = None,
) -> list[tuple[Path, str]]:
    """Like `load_relevant_memories` but keeps the path next to each content."""
    memories = discover_memories(sessions_base, node_id)
    if not memories:
        logger.debug("No memories found for node: %s", node_id)
        return []

    loaded = []
    for ranked in rank_memories(memories, limit=limit, max_age=max_age, sort_by=sort_by, now=now):
        content = load_memory_file(ranked.path)
        if content:
            loaded.append((ranked.path, content))

    logger.debug("Loaded %d memories for node %s", len(loaded), node_id)
    return loaded


def inject_memories_into_context(base_context: str, memories: list[str]) -> str:
    """Prefix `base_context` with a numbered block of past memories."""
    if not memories:
        return base_context

    body = "\n---\n".join(f"[Session {i}]\n{mem}" for i, mem in enumerate(memories, start=1))
    return f"{CONTEXT_HEADER}\n\n{body}\n\n{CONTEXT_FOOTER}\n\n{base_context}"


def inject_memories_into_prompt(
    context_text: str, command_text: str, memories: list[str]
) -> tuple[str, str]:
    """Inject into the context half of a prompt; the command is returned unchanged."""
    if not memories:
        return context_text, command_text
    return inject_memories_into_context(context_text or "", memories), command_text


def memory_summary(memories: list[str]) -> str:
    return f"Loaded {len(memories)} past session memory/memories for context"
