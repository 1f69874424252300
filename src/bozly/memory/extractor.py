"""Turn a finished session into a memory record and its on-disk documents.

The session runner hands over a `SessionOutcome`; this module distills it
into a `MemoryRecord`, renders `memory.md` (YAML frontmatter + sections) and
builds the `metadata.json` document stored next to it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import frontmatter

from bozly.memory.models import (
    MemoryRecord,
    QualityScore,
    UsageTracking,
    format_timestamp,
)

logger = logging.getLogger(__name__)

SECTION_KEYS = {
    "Current State": "current_state",
    "Task Specification": "task_spec",
    "Errors": "errors",
    "Learnings": "learnings",
    "Key Results": "key_results",
}

SUMMARY_MAX_CHARS = 200
EXCERPT_MAX_CHARS = 2000
EXCERPT_HEADING = "Output Excerpt"
TITLE_MAX_CHARS = 80
MAX_KEY_RESULTS = 5

_ERROR_LINE = re.compile(r"^\s*(error|fatal|exception|traceback)\b", re.IGNORECASE)
_LEARNING_LINE = re.compile(r"^\s*(learning|lesson|note|til)\s*:\s*(.+)$", re.IGNORECASE)
_BULLET_LINE = re.compile(r"^\s*[-*]\s+(.+)$")
_TAG_WORD = re.compile(r"[^a-z0-9-]+")


@dataclass
class SessionOutcome:
    """What the session runner reports when a session ends."""

    session_id: str
    node_id: str
    node_name: str
    command: str
    provider: str
    started_at: datetime
    ended_at: datetime
    output: str = ""
    token_count: int | None = None
    status: str = "completed"
    error: str | None = None
    tags: list[str] = field(default_factory=list)


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _slug(word: str) -> str:
    return _TAG_WORD.sub("-", word.lower()).strip("-")


def _summary_line(output: str) -> str:
    in_fence = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence or not stripped or stripped.startswith("#"):
            continue
        return _truncate(stripped.lstrip("-* "), SUMMARY_MAX_CHARS)
    return ""


def extract_record(outcome: SessionOutcome) -> MemoryRecord:
    """Distill a session outcome into a memory record."""
    lines = outcome.output.splitlines()
    duration = (outcome.ended_at - outcome.started_at).total_seconds() / 60

    errors = [line.strip() for line in lines if _ERROR_LINE.match(line)]
    if outcome.error:
        errors.insert(0, outcome.error.strip())
    learnings = [m.group(2).strip() for m in map(_LEARNING_LINE.match, lines) if m]
    key_results = [m.group(1).strip() for m in map(_BULLET_LINE.match, lines) if m]

    command_word = _slug(outcome.command.split()[0]) if outcome.command.split() else ""
    tags: list[str] = []
    for tag in [command_word, _slug(outcome.provider), outcome.status, *outcome.tags]:
        if tag and tag not in tags:
            tags.append(tag)
    if errors and "errors" not in tags:
        tags.append("errors")

    summary = _summary_line(outcome.output) or f"{outcome.command} via {outcome.provider}"

    return MemoryRecord(
        session_id=outcome.session_id,
        node_id=outcome.node_id,
        node_name=outcome.node_name,
        timestamp=format_timestamp(outcome.ended_at),
        command=outcome.command,
        provider=outcome.provider,
        duration_minutes=round(duration, 2),
        token_count=outcome.token_count,
        title=_truncate(outcome.command.splitlines()[0] if outcome.command else "", TITLE_MAX_CHARS),
        summary=summary,
        content=_truncate(outcome.output, EXCERPT_MAX_CHARS),
        tags=tags,
        current_state=f"Session {outcome.status} after {duration:.1f} minutes.",
        task_spec=outcome.command.strip(),
        errors="\n".join(f"- {e}" for e in errors),
        learnings="\n".join(f"- {item}" for item in learnings),
        key_results="\n".join(f"- {item}" for item in key_results[:MAX_KEY_RESULTS]),
    )


def build_metadata(
    record: MemoryRecord,
    quality: QualityScore,
    usage: UsageTracking | None = None,
    trigger: str = "sessionEnd",
) -> dict[str, Any]:
    """The `metadata.json` document for a record."""
    return {
        "sessionId": record.session_id,
        "nodeId": record.node_id,
        "nodeName": record.node_name,
        "timestamp": record.timestamp,
        "command": record.command,
        "provider": record.provider,
        "durationMinutes": record.duration_minutes,
        "tokenCount": record.token_count,
        "title": record.title,
        "summary": record.summary,
        "tags": list(record.tags),
        "memoryAutoExtracted": True,
        "extractionTrigger": trigger,
        "quality": quality.to_dict(),
        "usage": (usage or UsageTracking(last_used=record.timestamp)).to_dict(),
    }


def record_from_metadata(metadata: dict[str, Any], content: str) -> MemoryRecord:
    """Rebuild a record from its two on-disk documents."""
    _, body = split_frontmatter(content)
    record = MemoryRecord(
        session_id=str(metadata["sessionId"]),
        node_id=str(metadata.get("nodeId", "")),
        node_name=str(metadata.get("nodeName", "")),
        timestamp=str(metadata.get("timestamp", "")),
        command=str(metadata.get("command", "")),
        provider=str(metadata.get("provider") or metadata.get("aiProvider") or "unknown"),
        duration_minutes=float(metadata.get("durationMinutes") or 0),
        token_count=metadata.get("tokenCount"),
        title=str(metadata.get("title") or metadata.get("summary") or ""),
        summary=str(metadata.get("summary", "")),
        content=body,
        tags=[str(t) for t in metadata.get("tags") or []],
    )
    for key, value in parse_memory_content(content).items():
        setattr(record, key, value)
    return record


def render_memory_markdown(record: MemoryRecord) -> str:
    """Render `memory.md`: frontmatter, title, summary, then the filled sections."""
    parts = [f"# {record.title or record.command}", record.summary]
    for heading, key in SECTION_KEYS.items():
        value = getattr(record, key)
        if value.strip():
            parts.append(f"## {heading}\n{value.strip()}")
    if record.content.strip():
        parts.append(f"## {EXCERPT_HEADING}\n{record.content.strip()}")

    post = frontmatter.Post(
        "\n\n".join(p for p in parts if p) + "\n",
        sessionId=record.session_id,
        node=record.node_name,
        timestamp=record.timestamp,
        provider=record.provider,
        command=record.command,
        tags=list(record.tags),
    )
    return frontmatter.dumps(post) + "\n"


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Parse YAML frontmatter from memory text. Unparsable headers leave the text as-is."""
    try:
        post = frontmatter.loads(text)
        return dict(post.metadata), post.content
    except Exception as e:
        logger.debug("Memory file has unreadable frontmatter: %s", e)
        return {}, text


def parse_memory_content(text: str) -> dict[str, str]:
    """Map `## Section` blocks of a memory file to record field names."""
    _, body = split_frontmatter(text)

    sections: dict[str, str] = {}
    current: str | None = None
    buffer: list[str] = []

    def flush() -> None:
        if current and current in SECTION_KEYS:
            sections[SECTION_KEYS[current]] = "\n".join(buffer).strip()

    for line in body.splitlines():
        if line.startswith("## "):
            flush()
            current = line[3:].strip()
            buffer = []
        elif current:
            buffer.append(line)
    flush()
    return sections
