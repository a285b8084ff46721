"""Cross-compiler toolchain helpers (compiler-output cache)."""

from raphael_imagegen.toolchain.cache import CacheStats, ToolchainCache

__all__ = ["CacheStats", "ToolchainCache"]
