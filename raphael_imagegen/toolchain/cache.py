"""Compiler-output cache around the cross compiler.

This module handles:
- Initializing the ccache directory and size limit
- Wrapping the CROSS_COMPILE prefix so every compiler call goes through ccache
- Reading hit/miss statistics before and after a build (reporting only)

The cache never changes build semantics, only elapsed time.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from raphael_imagegen.errors import CommandError, FatalError
from raphael_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

# --print-stats keys counted as hits / misses across ccache versions
HIT_KEYS = (
    "direct_cache_hit",
    "preprocessed_cache_hit",
    "cache_hit_direct",
    "cache_hit_preprocessed",
)
MISS_KEYS = ("cache_miss",)

SUMMARY_HITS_RE = re.compile(r"^\s*(?:cache\s+)?hits?(?:\s+\(total\))?:?\s+(\d+)", re.I)
SUMMARY_MISSES_RE = re.compile(r"^\s*(?:cache\s+)?miss(?:es)?:?\s+(\d+)", re.I)


class ToolchainCacheError(FatalError):
    """Raised when an explicitly requested cache cannot be initialized."""

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(
            message, code="cache_init_failed", operation="ccache init", output=output
        )


@dataclass(frozen=True)
class CacheStats:
    """Aggregate compiler cache counters."""

    hits: int = 0
    misses: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total if self.total else 0.0

    def __sub__(self, other: CacheStats) -> CacheStats:
        return CacheStats(
            hits=max(self.hits - other.hits, 0),
            misses=max(self.misses - other.misses, 0),
        )

    def describe(self) -> str:
        return f"{self.hits} hits, {self.misses} misses ({self.hit_rate:.1%})"


def parse_print_stats(output: str) -> CacheStats:
    """Parse machine-readable ``ccache --print-stats`` output."""
    hits = misses = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 2:
            continue
        key, value = parts[0].strip(), parts[1].strip()
        if not value.isdigit():
            continue
        if key in HIT_KEYS:
            hits += int(value)
        elif key in MISS_KEYS:
            misses += int(value)
    return CacheStats(hits=hits, misses=misses)


def parse_summary(output: str) -> CacheStats:
    """Parse human-readable ``ccache -s`` output (first Hits/Misses lines)."""
    hits: int | None = None
    misses: int | None = None
    for line in output.splitlines():
        if hits is None and (m := SUMMARY_HITS_RE.match(line)):
            hits = int(m.group(1))
        elif misses is None and (m := SUMMARY_MISSES_RE.match(line)):
            misses = int(m.group(1))
    return CacheStats(hits=hits or 0, misses=misses or 0)


class ToolchainCache:
    """ccache wrapper for the cross compiler.

    Args:
        runner: Command runner.
        cache_dir: ccache directory.
        max_size: ccache size limit (e.g. '5G').
        enabled: Whether caching is enabled at all.
    """

    def __init__(
        self,
        runner: CommandRunner,
        cache_dir: Path,
        max_size: str = "5G",
        enabled: bool = True,
    ) -> None:
        self.runner = runner
        self.cache_dir = cache_dir
        self.max_size = max_size
        self.enabled = enabled

    @property
    def env(self) -> dict[str, str]:
        """Environment applied to compiler invocations."""
        if not self.enabled:
            return {}
        return {
            "CCACHE_DIR": str(self.cache_dir),
            "CCACHE_MAXSIZE": self.max_size,
            "CCACHE_COMPRESS": "1",
            "CCACHE_COMPILERCHECK": "content",
        }

    def wrap(self, cross_compile: str) -> str:
        """Return the CROSS_COMPILE value routed through ccache."""
        if not self.enabled:
            return cross_compile
        return f"ccache {cross_compile}"

    def initialize(self, required: bool = False) -> bool:
        """Prepare the cache directory.

        Args:
            required: Caching was explicitly requested; failure is fatal.

        Returns:
            True if the cache is usable, False if it was disabled.

        Raises:
            ToolchainCacheError: If initialization fails and required is set.
        """
        if not self.enabled:
            logger.info("Compiler cache disabled")
            return False

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            probe = self.cache_dir / ".write-probe"
            probe.write_text("ok")
            probe.unlink()
            self.runner.run(["ccache", "--max-size", self.max_size], env=self.env)
        except (OSError, CommandError) as e:
            message = f"Cannot initialize compiler cache at {self.cache_dir}: {e}"
            if required:
                raise ToolchainCacheError(
                    message, output=getattr(e, "output", None)
                ) from e
            logger.warning("%s; continuing without cache", message)
            self.enabled = False
            return False

        logger.info("Compiler cache at %s (max %s)", self.cache_dir, self.max_size)
        return True

    def stats(self) -> CacheStats | None:
        """Return current counters, or None if unavailable."""
        if not self.enabled:
            return None
        try:
            result = self.runner.run(["ccache", "--print-stats"], env=self.env)
            stats = parse_print_stats(result.output)
            if stats.total == 0 and "\t" not in result.output:
                stats = parse_summary(result.output)
            return stats
        except CommandError:
            try:
                result = self.runner.run(["ccache", "-s"], env=self.env)
            except CommandError as e:
                logger.warning("Unable to read ccache statistics: %s", e)
                return None
            return parse_summary(result.output)

    def describe(self) -> dict[str, object]:
        """Describe cache configuration and the on-disk config file."""
        conf = self.cache_dir / "ccache.conf"
        return {
            "enabled": self.enabled,
            "cache_dir": str(self.cache_dir),
            "max_size": self.max_size,
            "env": self.env,
            "config_file": conf.read_text() if conf.is_file() else None,
        }


__all__ = [
    "CacheStats",
    "ToolchainCache",
    "ToolchainCacheError",
    "parse_print_stats",
    "parse_summary",
]
