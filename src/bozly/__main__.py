"""Entry point: python -m bozly <command>

- status              Active cache size against the archive threshold
- stats               Index, metrics and archive statistics
- search <query>      Search active memories
- archive [--days N]  Archive memories unused for N days
- check               Archive until the cache is below the threshold
- reconcile           Repair the index against the session tree
- restore <node>      Bring archived memories back (--month YYYY-MM, --search q)
- archives <query>    Search archived memories
"""

from __future__ import annotations

import logging
import sys

from bozly.config import load_config
from bozly.memory.manager import MemoryManager

logger = logging.getLogger("bozly")

USAGE = """Usage: python -m bozly <command> [args]
  status              Active cache size against the archive threshold
  stats               Index, metrics and archive statistics
  search <query>      Search active memories
  archive [--days N]  Archive memories unused for N days
  check               Archive until the cache is below the threshold
  reconcile           Repair the index against the session tree
  restore <node> [--month YYYY-MM] [--search q]
  archives <query>    Search archived memories"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _option(args: list[str], name: str) -> str | None:
    """Value following `name` in args, removing both."""
    if name not in args:
        return None
    i = args.index(name)
    if i + 1 >= len(args):
        raise SystemExit(f"{name} needs a value")
    value = args[i + 1]
    del args[i : i + 2]
    return value


def _cmd_status(manager: MemoryManager, args: list[str]) -> None:
    size = manager.get_cache_size()
    threshold = manager.config.memory.cache_threshold_mb
    print(f"Active cache: {size.total_size_mb:.2f}MB in {size.file_count} files (threshold {threshold:.2f}MB)")
    for node_id, mb in sorted(size.by_node.items()):
        print(f"  {node_id}: {mb:.3f}MB")
    if size.total_size_mb > threshold:
        print("Over threshold, run `python -m bozly check` to archive.")


def _cmd_stats(manager: MemoryManager, args: list[str]) -> None:
    stats = manager.get_memory_stats()
    print(f"Indexed memories: {stats.total_memories}")
    if stats.total_memories:
        print(f"  oldest: {stats.oldest_memory}")
        print(f"  newest: {stats.newest_memory}")
        top_tags = sorted(stats.tag_counts.items(), key=lambda kv: kv[1], reverse=True)[:10]
        print("  tags: " + ", ".join(f"{tag} ({n})" for tag, n in top_tags))

    metrics = manager.metrics.get_statistics()
    print(f"Metrics: {metrics.total_memories} snapshots, {metrics.total_size_mb:.3f}MB")
    print(f"  average quality: {metrics.average_quality:.2f}")
    if metrics.largest_file_path:
        print(f"  largest: {metrics.largest_file_path} ({metrics.largest_file_size_mb:.3f}MB)")
    print(f"  {manager.metrics.get_size_recommendations().recommendation}")

    archives = manager.get_archive_stats()
    print(f"Archived: {archives.total_archived_count} memories, {archives.total_archived_mb:.3f}MB")
    for month, bucket in sorted(archives.by_month.items()):
        print(f"  {month}: {bucket.count} ({bucket.size_mb:.3f}MB)")


def _cmd_search(manager: MemoryManager, args: list[str]) -> None:
    if not args:
        raise SystemExit("search needs a query")
    for entry in manager.search_memories(" ".join(args)):
        print(f"{entry.timestamp}  {entry.node_name or entry.node_id}  {entry.session_id}")
        print(f"    {entry.summary}")


def _cmd_archive(manager: MemoryManager, args: list[str]) -> None:
    days = _option(args, "--days")
    result = manager.archive_old_memories(int(days) if days else None)
    print(f"Archived {result.archived} memories ({result.total_archived_mb:.3f}MB)")
    for outcome in result.outcomes:
        if not outcome.ok:
            print(f"  skipped {outcome.path}: {outcome.reason}")


def _cmd_check(manager: MemoryManager, args: list[str]) -> None:
    result = manager.check_and_archive_if_needed()
    if not result.triggered:
        print(f"Cache is {result.final_cache_size_mb:.2f}MB, nothing to do")
        return
    print(f"Archived {result.archived} memories, cache now {result.final_cache_size_mb:.2f}MB")


def _cmd_reconcile(manager: MemoryManager, args: list[str]) -> None:
    report = manager.reconcile()
    print(f"Removed {len(report.removed)} orphaned entries, added {len(report.added)} missing")


def _cmd_restore(manager: MemoryManager, args: list[str]) -> None:
    month = _option(args, "--month")
    query = _option(args, "--search")
    if not args:
        raise SystemExit("restore needs a node id")
    node_id, session_ids = args[0], args[1:] or None
    result = manager.restore_archived(node_id, session_ids=session_ids, month=month, query=query)
    print(f"Restored {result.restored} memories ({result.skipped} already active, {result.failed} failed)")


def _cmd_archives(manager: MemoryManager, args: list[str]) -> None:
    if not args:
        raise SystemExit("archives needs a query")
    for entry in manager.search_archived_memories(" ".join(args)):
        print(f"{entry.archived_at}  {entry.node_id}  {entry.session_id}")
        if entry.summary:
            print(f"    {entry.summary}")


COMMANDS = {
    "status": _cmd_status,
    "stats": _cmd_stats,
    "search": _cmd_search,
    "archive": _cmd_archive,
    "check": _cmd_check,
    "reconcile": _cmd_reconcile,
    "restore": _cmd_restore,
    "archives": _cmd_archives,
}


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "status"
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(USAGE)
        sys.exit(1)

    config = load_config()
    _setup_logging(config.log_level)
    manager = MemoryManager(config)

    try:
        handler(manager, sys.argv[2:])
    except OSError as e:
        logger.error("%s failed: %s", cmd, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
