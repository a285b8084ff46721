"""Host preflight checks.

Verifies that the host tools each stage shells out to are installed and
that stages needing mounts run with root privileges. Installing missing
tools is left to the operator.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from raphael_imagegen.config import Settings
from raphael_imagegen.errors import FatalError
from raphael_imagegen.types import StageName

logger = logging.getLogger(__name__)

STAGE_COMMANDS: dict[StageName, tuple[str, ...]] = {
    StageName.KERNEL: ("git", "make", "gcc", "bc", "bison", "flex"),
    StageName.PACKAGE: ("dpkg-deb",),
    StageName.ROOTFS: (
        "truncate",
        "mkfs.ext4",
        "mount",
        "umount",
        "chroot",
        "blkid",
    ),
    StageName.BOOT: ("truncate", "mkfs.vfat", "mount", "umount", "blkid"),
}

ROOT_STAGES = (StageName.ROOTFS, StageName.BOOT)


class PreflightError(FatalError):
    """Raised when the host is not ready to run the requested stages."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        """Initialize PreflightError.

        Args:
            message: What the host lacks.
            missing: Host commands that were not found.
        """
        super().__init__(message, code="preflight_failed", operation="preflight")
        self.missing = missing or []


@dataclass
class PreflightReport:
    """Result of a preflight check."""

    missing_commands: list[str] = field(default_factory=list)
    needs_root: bool = False
    is_root: bool = True

    @property
    def ok(self) -> bool:
        return not self.missing_commands and (self.is_root or not self.needs_root)


def required_commands(settings: Settings, stages: Iterable[StageName]) -> list[str]:
    """Return the host commands needed by the given stages."""
    commands: list[str] = []
    for stage in stages:
        for command in STAGE_COMMANDS.get(stage, ()):
            if command not in commands:
                commands.append(command)
        if stage == StageName.KERNEL:
            commands.append(f"{settings.cross_compile}gcc")
            # A default-on cache without ccache degrades to an uncached build
            if settings.cache_requested:
                commands.append("ccache")
    return commands


def check_host(
    settings: Settings,
    stages: Iterable[StageName],
    which: Callable[[str], str | None] = shutil.which,
    euid: int | None = None,
) -> PreflightReport:
    """Check the host for the requested stages.

    Args:
        settings: Build settings.
        stages: Stages that will run.
        which: Command lookup function.
        euid: Effective user id (defaults to the current process).

    Returns:
        PreflightReport describing what is missing.
    """
    stages = list(stages)
    missing = [c for c in required_commands(settings, stages) if which(c) is None]
    if euid is None:
        euid = os.geteuid()
    report = PreflightReport(
        missing_commands=missing,
        needs_root=any(s in ROOT_STAGES for s in stages),
        is_root=euid == 0,
    )
    for command in missing:
        logger.warning("Missing host command: %s", command)
    return report


def ensure_host(
    settings: Settings,
    stages: Iterable[StageName],
    which: Callable[[str], str | None] = shutil.which,
    euid: int | None = None,
) -> PreflightReport:
    """Like check_host, but raise PreflightError when the host is not ready."""
    report = check_host(settings, stages, which=which, euid=euid)
    if report.missing_commands:
        raise PreflightError(
            f"Missing required host commands: {', '.join(report.missing_commands)}",
            missing=report.missing_commands,
        )
    if report.needs_root and not report.is_root:
        raise PreflightError("Root filesystem and boot image stages must run as root")
    return report


__all__ = [
    "PreflightError",
    "PreflightReport",
    "STAGE_COMMANDS",
    "check_host",
    "ensure_host",
    "required_commands",
]
