"""Session memory — per-session summaries, index, metrics and archives.

Layout:
    ~/.bozly/
    ├── memory-index.json              # Global index of active memories
    ├── memory-metrics.json            # Append-only size/quality snapshots
    └── sessions/
        └── <nodeId>/
            ├── 2025/01/15/<sessionId>/
            │   ├── metadata.json      # Session facts, quality, usage
            │   └── memory.md          # YAML frontmatter + summary sections
            └── .archives/
                └── memories-archive-2025-01.json   # Monthly buckets (append-only)

Everything under `.archives/` is permanent history and never counts toward
the active cache size.
"""
