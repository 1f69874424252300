"""Tests for configuration loading."""

from pathlib import Path

import pytest

from bozly.config import load_config

ENV_KEYS = [
    "BOZLY_HOME",
    "BOZLY_LOG_LEVEL",
    "BOZLY_CACHE_THRESHOLD_MB",
    "BOZLY_UNUSED_DAYS",
    "BOZLY_MEMORY_LIMIT",
    "BOZLY_MEMORY_MAX_AGE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfig:
    def test_defaults(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BOZLY_HOME", str(tmp_path / "home"))

        config = load_config()
        assert config.memory.cache_threshold_mb == 5.0
        assert config.memory.unused_days == 90
        assert config.memory.auto_archive is True
        assert config.loader.limit == 3
        assert config.loader.max_age_days == 30
        assert config.loader.sort_by == "recent"
        assert config.sessions_dir == tmp_path / "home" / "sessions"
        assert config.index_path.name == "memory-index.json"
        assert config.metrics_path.name == "memory-metrics.json"

    def test_env_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BOZLY_CACHE_THRESHOLD_MB", "2.5")
        monkeypatch.setenv("BOZLY_UNUSED_DAYS", "30")
        monkeypatch.setenv("BOZLY_MEMORY_LIMIT", "5")
        monkeypatch.setenv("BOZLY_LOG_LEVEL", "DEBUG")

        config = load_config()
        assert config.memory.cache_threshold_mb == 2.5
        assert config.memory.unused_days == 30
        assert config.loader.limit == 5
        assert config.log_level == "DEBUG"

    def test_toml_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        toml_path = tmp_path / "bozly.toml"
        toml_path.write_text(f"""
home = "{(tmp_path / 'data').as_posix()}"

[memory]
cache_threshold_mb = 10
auto_archive = false

[loader]
limit = 1
sort_by = "relevance"
""")
        config = load_config(toml_path)
        assert config.home == tmp_path / "data"
        assert config.memory.cache_threshold_mb == 10.0
        assert config.memory.auto_archive is False
        assert config.loader.limit == 1
        assert config.loader.sort_by == "relevance"

    def test_toml_in_cwd_is_found(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "bozly.toml").write_text("[memory]\nunused_days = 45\n")

        assert load_config().memory.unused_days == 45

    def test_env_overrides_toml(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BOZLY_UNUSED_DAYS", "7")

        toml_path = tmp_path / "bozly.toml"
        toml_path.write_text("""
[memory]
unused_days = 60
""")
        config = load_config(toml_path)
        assert config.memory.unused_days == 7  # env wins
