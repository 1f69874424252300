"""On-disk layout of the active store and the archives.

    <sessions>/<nodeId>/<YYYY>/<MM>/<DD>/<sessionId>/metadata.json
    <sessions>/<nodeId>/<YYYY>/<MM>/<DD>/<sessionId>/memory.md
    <sessions>/<nodeId>/.archives/memories-archive-<YYYY-MM>.json

The session tree is always exactly four levels below a node directory.
`iter_sessions` walks those four levels explicitly instead of recursing.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from bozly.memory.models import ScanOutcome, parse_timestamp

logger = logging.getLogger(__name__)

MEMORY_FILENAME = "memory.md"
METADATA_FILENAME = "metadata.json"
ARCHIVES_DIRNAME = ".archives"
ARCHIVE_PREFIX = "memories-archive-"
ARCHIVE_SUFFIX = ".json"

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class SessionLocation:
    """One session directory in the active store."""

    node_id: str
    year: str
    month: str
    day: str
    session_id: str
    path: Path

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILENAME

    @property
    def memory_path(self) -> Path:
        return self.path / MEMORY_FILENAME


# ── Path builders ────────────────────────────────────────────


def _as_utc(timestamp: str | datetime) -> datetime:
    if isinstance(timestamp, str):
        return parse_timestamp(timestamp)
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def session_path(
    sessions_dir: Path, node_id: str, timestamp: str | datetime, session_id: str
) -> Path:
    """Build `<sessions>/<node>/<YYYY>/<MM>/<DD>/<session>` from a UTC timestamp."""
    when = _as_utc(timestamp)
    return (
        sessions_dir
        / node_id
        / f"{when.year:04d}"
        / f"{when.month:02d}"
        / f"{when.day:02d}"
        / session_id
    )


def month_key(timestamp: str | datetime) -> str:
    when = _as_utc(timestamp)
    return f"{when.year:04d}-{when.month:02d}"


def archives_dir(sessions_dir: Path, node_id: str) -> Path:
    return sessions_dir / node_id / ARCHIVES_DIRNAME


def archive_path(sessions_dir: Path, node_id: str, month: str) -> Path:
    return archives_dir(sessions_dir, node_id) / f"{ARCHIVE_PREFIX}{month}{ARCHIVE_SUFFIX}"


def archive_month(path: Path) -> str:
    """`memories-archive-2025-01.json` → `2025-01`."""
    return path.name[len(ARCHIVE_PREFIX) : -len(ARCHIVE_SUFFIX)]


# ── Iterators ────────────────────────────────────────────────


def _subdirs(path: Path, outcomes: list[ScanOutcome] | None) -> list[Path]:
    try:
        children = sorted(path.iterdir())
    except OSError as e:
        logger.debug("Cannot list %s: %s", path, e)
        if outcomes is not None:
            outcomes.append(ScanOutcome(str(path), False, f"unreadable directory: {e}"))
        return []
    return [c for c in children if c.name != ARCHIVES_DIRNAME and c.is_dir()]


def iter_node_ids(sessions_dir: Path) -> list[str]:
    """Node directories directly under the sessions root."""
    if not sessions_dir.is_dir():
        return []
    return [p.name for p in _subdirs(sessions_dir, None)]


def iter_sessions(
    sessions_dir: Path,
    node_id: str,
    outcomes: list[ScanOutcome] | None = None,
) -> Iterator[SessionLocation]:
    """Yield every session directory of a node, four levels deep."""
    node_dir = sessions_dir / node_id
    if not node_dir.is_dir():
        return
    for year in _subdirs(node_dir, outcomes):
        for month in _subdirs(year, outcomes):
            for day in _subdirs(month, outcomes):
                for session in _subdirs(day, outcomes):
                    yield SessionLocation(
                        node_id=node_id,
                        year=year.name,
                        month=month.name,
                        day=day.name,
                        session_id=session.name,
                        path=session,
                    )


def iter_archive_files(sessions_dir: Path, node_id: str) -> list[Path]:
    directory = archives_dir(sessions_dir, node_id)
    if not directory.is_dir():
        return []
    return sorted(
        p
        for p in directory.iterdir()
        if p.name.startswith(ARCHIVE_PREFIX) and p.name.endswith(ARCHIVE_SUFFIX)
    )


def directory_size(path: Path) -> tuple[int, int]:
    """Total bytes and file count under `path`, skipping `.archives` subtrees."""
    total = 0
    count = 0
    for root, dirs, files in os.walk(path):
        dirs[:] = [d for d in dirs if d != ARCHIVES_DIRNAME]
        for name in files:
            try:
                total += os.stat(os.path.join(root, name)).st_size
            except OSError:
                continue
            count += 1
    return total, count


# ── JSON documents ───────────────────────────────────────────


def read_json(path: Path) -> Any:
    """Read a JSON document. Raises FileNotFoundError or ValueError."""
    return json.loads(path.read_text(encoding="utf-8"))


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
