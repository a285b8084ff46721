"""Tests for the compiler-output cache."""

from pathlib import Path

import pytest

from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.toolchain.cache import (
    CacheStats,
    ToolchainCache,
    ToolchainCacheError,
    parse_print_stats,
    parse_summary,
)

PRINT_STATS = """\
stats_updated_timestamp\t1700000000
direct_cache_hit\t12
preprocessed_cache_hit\t3
cache_miss\t5
files_in_cache\t40
"""

SUMMARY = """\
Cacheable calls:   30 / 30 (100.0%)
  Hits:            10 / 30 (33.33%)
    Direct:         8 / 10 (80.00%)
    Preprocessed:   2 / 10 (20.00%)
  Misses:          20 / 30 (66.67%)
Local storage:
  Cache size (GB): 0.1 / 5.0 ( 2.00%)
  Hits:            10 / 30 (33.33%)
"""


class ScriptedRunner(CommandRunner):
    """Runner returning canned (exit_code, output) per ccache argument."""

    def __init__(self, responses: dict[str, tuple[int, str]]) -> None:
        super().__init__()
        self.responses = responses
        self.calls: list[tuple[list[str], dict | None]] = []

    def _execute(self, args, *, cwd, env, timeout, input):
        self.calls.append((args, env))
        return self.responses.get(args[1], (0, ""))


class TestCacheStats:
    """Tests for CacheStats arithmetic."""

    def test_hit_rate(self):
        stats = CacheStats(hits=3, misses=1)
        assert stats.total == 4
        assert stats.hit_rate == 0.75
        assert stats.describe() == "3 hits, 1 misses (75.0%)"

    def test_empty_hit_rate(self):
        assert CacheStats().hit_rate == 0.0

    def test_difference_is_clamped(self):
        """A cache cleared mid-build must not yield negative counts."""
        before = CacheStats(hits=10, misses=10)
        after = CacheStats(hits=4, misses=15)
        assert after - before == CacheStats(hits=0, misses=5)


class TestParsers:
    """Tests for ccache output parsers."""

    def test_print_stats(self):
        assert parse_print_stats(PRINT_STATS) == CacheStats(hits=15, misses=5)

    def test_print_stats_ignores_noise(self):
        assert parse_print_stats("garbage\ncache_miss\tn/a\n") == CacheStats()

    def test_summary_uses_first_lines(self):
        assert parse_summary(SUMMARY) == CacheStats(hits=10, misses=20)

    def test_legacy_summary(self):
        legacy = "cache hit (direct)   7\ncache miss          2\n"
        assert parse_summary(legacy).misses == 2


class TestToolchainCache:
    """Tests for ToolchainCache."""

    def test_env_and_wrap(self, tmp_path: Path):
        cache = ToolchainCache(CommandRunner(), tmp_path / "cc", max_size="2G")
        assert cache.env["CCACHE_DIR"] == str(tmp_path / "cc")
        assert cache.env["CCACHE_MAXSIZE"] == "2G"
        assert cache.wrap("aarch64-linux-gnu-") == "ccache aarch64-linux-gnu-"

    def test_disabled_is_transparent(self, tmp_path: Path):
        cache = ToolchainCache(CommandRunner(), tmp_path / "cc", enabled=False)
        assert cache.env == {}
        assert cache.wrap("aarch64-linux-gnu-") == "aarch64-linux-gnu-"
        assert cache.initialize(required=True) is False
        assert cache.stats() is None

    def test_initialize_sets_max_size(self, tmp_path: Path):
        runner = ScriptedRunner({})
        cache = ToolchainCache(runner, tmp_path / "cc", max_size="3G")
        assert cache.initialize() is True
        assert (tmp_path / "cc").is_dir()
        args, env = runner.calls[0]
        assert args == ["ccache", "--max-size", "3G"]
        assert env["CCACHE_DIR"] == str(tmp_path / "cc")

    def test_default_cache_failure_disables(self, tmp_path: Path):
        runner = ScriptedRunner({"--max-size": (127, "ccache: not found")})
        cache = ToolchainCache(runner, tmp_path / "cc")
        assert cache.initialize(required=False) is False
        assert cache.enabled is False
        assert cache.wrap("aarch64-linux-gnu-") == "aarch64-linux-gnu-"

    def test_requested_cache_failure_is_fatal(self, tmp_path: Path):
        runner = ScriptedRunner({"--max-size": (1, "permission denied")})
        cache = ToolchainCache(runner, tmp_path / "cc")
        with pytest.raises(ToolchainCacheError) as exc_info:
            cache.initialize(required=True)
        assert exc_info.value.code == "cache_init_failed"
        assert "permission denied" in exc_info.value.output

    def test_stats_machine_readable(self, tmp_path: Path):
        runner = ScriptedRunner({"--print-stats": (0, PRINT_STATS)})
        cache = ToolchainCache(runner, tmp_path / "cc")
        assert cache.stats() == CacheStats(hits=15, misses=5)

    def test_stats_falls_back_to_summary(self, tmp_path: Path):
        runner = ScriptedRunner(
            {"--print-stats": (1, "unknown option"), "-s": (0, SUMMARY)}
        )
        cache = ToolchainCache(runner, tmp_path / "cc")
        assert cache.stats() == CacheStats(hits=10, misses=20)

    def test_stats_unavailable(self, tmp_path: Path):
        runner = ScriptedRunner({"--print-stats": (1, ""), "-s": (1, "")})
        assert ToolchainCache(runner, tmp_path / "cc").stats() is None

    def test_describe_reads_config_file(self, tmp_path: Path):
        cache_dir = tmp_path / "cc"
        cache_dir.mkdir()
        (cache_dir / "ccache.conf").write_text("max_size = 5.0G\n")
        info = ToolchainCache(CommandRunner(), cache_dir).describe()
        assert info["enabled"] is True
        assert info["config_file"] == "max_size = 5.0G\n"
        assert ToolchainCache(CommandRunner(), tmp_path / "none").describe()[
            "config_file"
        ] is None
