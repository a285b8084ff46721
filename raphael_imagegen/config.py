"""Configuration settings for raphael_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

CLI flags are passed to ``get_settings()`` as keyword overrides, which
pydantic-settings ranks above the environment. The resulting Settings
instance is frozen and handed to every stage by reference.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KERNEL_VERSION_RE = re.compile(r"^\d+\.\d+(\.\d+)?$")
SIZE_RE = re.compile(r"^(\d+)([GM])$")

# Minimum root filesystem size in MiB
MIN_ROOTFS_SIZE_MIB = 2 * 1024


def _default_work_dir() -> Path:
    """Return the default working directory."""
    return Path.cwd() / "work"


def _default_output_dir() -> Path:
    """Return the default output directory."""
    return Path.cwd() / "output"


def _default_ccache_dir() -> Path:
    """Return the default compiler cache directory."""
    workspace = os.environ.get("GITHUB_WORKSPACE")
    base = Path(workspace) if workspace else Path.home()
    return base / ".ccache"


def _default_download_cache_dir() -> Path:
    """Return the default download cache directory."""
    return Path.home() / ".cache" / "raphael-imagegen" / "downloads"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "raphael-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


def size_to_mib(size: str) -> int:
    """Convert a size string such as '6G' or '4096M' to MiB.

    Args:
        size: Size string with a G or M suffix.

    Returns:
        Size in MiB.

    Raises:
        ValueError: If the size string is malformed.
    """
    match = SIZE_RE.match(size)
    if not match:
        raise ValueError(f"Invalid size format: {size} (expected e.g. 6G or 4096M)")
    value, unit = int(match.group(1)), match.group(2)
    return value * 1024 if unit == "G" else value


class Settings(BaseSettings):
    """Build configuration.

    Settings are loaded from environment variables with the RAPHAEL_ prefix.
    CLI flags override these at construction time; the instance is immutable
    afterwards.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAPHAEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Kernel
    kernel_version: str = Field(
        default="6.18",
        description="Requested kernel version (x.y or x.y.z)",
    )
    kernel_repo: str = Field(
        default="https://github.com/GengWei1997/linux.git",
        description="Kernel source repository",
    )
    kernel_branch_template: str = Field(
        default="raphael-{version}",
        description="Branch name template, one branch per kernel version",
    )
    cross_compile: str = Field(
        default="aarch64-linux-gnu-",
        description="Cross compiler prefix",
    )
    kernel_arch: str = Field(default="arm64", description="Kernel ARCH value")
    kernel_defconfig: str = Field(default="defconfig", description="Base config")
    kernel_config_fragment: str = Field(
        default="sm8150.config",
        description="Device config fragment merged on top of the base config",
    )
    image_relpath: str = Field(
        default="arch/arm64/boot/Image.gz",
        description="Kernel image path relative to the source tree",
    )
    dtb_relpath: str = Field(
        default="arch/arm64/boot/dts/qcom/sm8150-xiaomi-raphael.dtb",
        description="Device tree blob path relative to the source tree",
    )
    build_jobs: int = Field(
        default=0,
        ge=0,
        description="Parallel make jobs (0 = host core count)",
    )

    # Packages
    device: str = Field(default="xiaomi-raphael", description="Device name")
    package_arch: str = Field(default="arm64", description="Package architecture")
    payload_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory holding <component>-<device>/ package templates",
    )

    # Compiler cache
    cache_enabled: bool = Field(default=True, description="Enable ccache")
    ccache_dir: Path = Field(
        default_factory=_default_ccache_dir,
        description="ccache directory",
    )
    ccache_maxsize: str = Field(default="5G", description="ccache max size")

    # Distribution
    distribution: Literal["ubuntu", "armbian"] = Field(
        default="ubuntu",
        description="Base distribution",
    )
    ubuntu_version: str = Field(default="24.04.3", description="Ubuntu version")
    ubuntu_codename: str = Field(default="noble", description="Ubuntu codename")
    ubuntu_download_base: str = Field(
        default="https://cdimage.ubuntu.com/ubuntu-base/releases",
        description="Ubuntu base download root",
    )
    ubuntu_mirror: str | None = Field(
        default=None,
        description="Optional apt mirror written to the target sources",
    )
    armbian_base_url: str | None = Field(
        default=None,
        description="URL of an Armbian rootfs archive",
    )
    base_sha256: str | None = Field(
        default=None,
        description="Expected SHA-256 of the base archive (optional)",
    )
    hostname: str = Field(default="xiaomi-raphael", description="Target hostname")
    dns_server: str = Field(default="1.1.1.1", description="Target resolver")
    rootfs_size: str = Field(default="6G", description="Root filesystem size")
    rootfs_image: Path | None = Field(
        default=None,
        description="Explicit root filesystem image path",
    )

    # Foreign-binary shim
    qemu_static_url: str = Field(
        default=(
            "https://github.com/multiarch/qemu-user-static/releases/download/"
            "v7.2.0-1/qemu-aarch64-static"
        ),
        description="qemu-aarch64-static download URL",
    )

    # Boot image
    boot_template_url: str | None = Field(
        default=(
            "https://github.com/cuicanmx/ubuntu-xiaomi-raphael/releases/download/"
            "xiaomi-k20pro-boot/xiaomi-k20pro-boot.img"
        ),
        description=(
            "Prebuilt boot partition template URL; empty synthesizes a blank FAT image"
        ),
    )
    boot_image_size: str = Field(default="64M", description="Boot image size")
    output_path: Path | None = Field(
        default=None,
        description="Explicit boot image output path",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Working directory owned by one pipeline instance",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Output directory for packages and images",
    )
    download_cache_dir: Path = Field(
        default_factory=_default_download_cache_dir,
        description="Cache for downloaded archives",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Run ledger database URL",
    )

    # Retry policy
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=5.0, ge=0)
    retry_backoff: float = Field(default=2.0, ge=1.0)

    # Timeouts (in seconds)
    network_timeout: int = Field(default=600, ge=10)
    build_timeout: int = Field(default=4 * 3600, ge=60)
    command_timeout: int = Field(default=3600, ge=10)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("kernel_version")
    @classmethod
    def _check_kernel_version(cls, value: str) -> str:
        if not KERNEL_VERSION_RE.match(value):
            raise ValueError(
                f"Invalid kernel version: {value} (expected x.y or x.y.z, e.g. 6.18)"
            )
        return value

    @field_validator("rootfs_size")
    @classmethod
    def _check_rootfs_size(cls, value: str) -> str:
        if size_to_mib(value) < MIN_ROOTFS_SIZE_MIB:
            raise ValueError(f"Root filesystem size too small: {value} (minimum 2G)")
        return value

    @field_validator("boot_image_size")
    @classmethod
    def _check_boot_size(cls, value: str) -> str:
        size_to_mib(value)
        return value

    @property
    def kernel_branch(self) -> str:
        """Branch holding the requested kernel version."""
        return self.kernel_branch_template.format(version=self.kernel_version)

    @property
    def cache_requested(self) -> bool:
        """True when caching was asked for explicitly rather than by default."""
        return self.cache_enabled and "cache_enabled" in self.model_fields_set

    @property
    def kernel_output_dir(self) -> Path:
        return self.output_dir / "kernel"

    @property
    def default_rootfs_image(self) -> Path:
        return self.rootfs_image or (
            self.output_dir / f"root-{self.distribution}-{self.kernel_version}.img"
        )

    def jobs(self) -> int:
        """Return make job count bounded by the host core count."""
        cores = os.cpu_count() or 1
        if self.build_jobs <= 0:
            return cores
        return min(self.build_jobs, cores)

    def boot_output_path(self, release: str) -> Path:
        """Return the boot image output path for a kernel release."""
        if self.output_path is not None:
            return self.output_path
        return (
            self.output_dir / f"xiaomi-k20pro-boot-{self.distribution}-{release}.img"
        )


def get_settings(**overrides: Any) -> Settings:
    """Build the settings for one pipeline run.

    Args:
        **overrides: Explicit values (typically CLI flags). Keys whose value
            is None are ignored so that unset flags fall through to the
            environment and defaults.

    Returns:
        Frozen Settings instance.
    """
    explicit = {k: v for k, v in overrides.items() if v is not None}
    return Settings(**explicit)


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "Settings",
    "get_settings",
    "print_settings_json",
    "size_to_mib",
]
