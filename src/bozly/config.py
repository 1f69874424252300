"""Configuration loading from environment variables and bozly.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".bozly"
_CONFIG_FILENAME = "bozly.toml"


@dataclass
class MemoryConfig:
    """Active cache and archival settings."""

    cache_threshold_mb: float = 5.0
    unused_days: int = 90
    auto_archive: bool = True


@dataclass
class LoaderConfig:
    """How many past memories are injected into a new session."""

    limit: int = 3
    max_age_days: int = 30
    sort_by: str = "recent"


@dataclass
class BozlyConfig:
    """Top-level configuration."""

    home: Path = _DEFAULT_HOME
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def index_path(self) -> Path:
        return self.home / "memory-index.json"

    @property
    def metrics_path(self) -> Path:
        return self.home / "memory-metrics.json"


def load_config(config_path: Path | None = None) -> BozlyConfig:
    """Load configuration from environment variables and optional bozly.toml.

    Priority: environment variables > bozly.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.bozly/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    memory_data = file_data.get("memory", {})
    loader_data = file_data.get("loader", {})

    home = os.getenv("BOZLY_HOME", file_data.get("home"))

    config = BozlyConfig(
        home=Path(home).expanduser() if home else _DEFAULT_HOME,
        memory=MemoryConfig(
            cache_threshold_mb=float(
                os.getenv(
                    "BOZLY_CACHE_THRESHOLD_MB", memory_data.get("cache_threshold_mb", 5.0)
                )
            ),
            unused_days=int(os.getenv("BOZLY_UNUSED_DAYS", memory_data.get("unused_days", 90))),
            auto_archive=bool(memory_data.get("auto_archive", True)),
        ),
        loader=LoaderConfig(
            limit=int(os.getenv("BOZLY_MEMORY_LIMIT", loader_data.get("limit", 3))),
            max_age_days=int(os.getenv("BOZLY_MEMORY_MAX_AGE", loader_data.get("max_age_days", 30))),
            sort_by=loader_data.get("sort_by", "recent"),
        ),
        log_level=os.getenv("BOZLY_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
