"""System configuration files written directly into the target root.

This module handles:
- Identity files: /etc/hostname, /etc/hosts, /etc/resolv.conf
- The filesystem table, keyed by partition label
- Patching the GRUB defaults template
- Removing the laptop-only kernel condition from pd-mapper.service
- Optional apt mirror configuration
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

FSTAB_ENTRIES = (
    "PARTLABEL=linux / ext4 errors=remount-ro,x-systemd.growfs 0 1",
    "PARTLABEL=esp /boot/efi vfat umask=0077 0 1",
)

PD_MAPPER_UNIT = Path("lib/systemd/system/pd-mapper.service")
GRUB_DEFAULTS = Path("etc/default/grub")

# (pattern, replacement) applied line by line to /etc/default/grub
GRUB_PATCHES = (
    (re.compile(r"^#GRUB_DISABLE_OS_PROBER=false$"), "GRUB_DISABLE_OS_PROBER=false"),
    (
        re.compile(r'^GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"$'),
        'GRUB_CMDLINE_LINUX_DEFAULT=""',
    ),
)


def _etc(root: Path, name: str) -> Path:
    path = root / "etc" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_identity(root: Path, hostname: str, dns_server: str) -> None:
    """Write hostname, hosts and resolver configuration."""
    resolv = _etc(root, "resolv.conf")
    # resolv.conf is often a dangling symlink into /run in base images
    if resolv.is_symlink():
        resolv.unlink()
    resolv.write_text(f"nameserver {dns_server}\n")
    _etc(root, "hostname").write_text(f"{hostname}\n")
    _etc(root, "hosts").write_text(f"127.0.0.1 localhost\n127.0.1.1 {hostname}\n")
    logger.info("Configured identity for %s", hostname)


def write_fstab(root: Path) -> Path:
    """Write the filesystem table mounting root and ESP by partition label."""
    fstab = _etc(root, "fstab")
    fstab.write_text("\n".join(FSTAB_ENTRIES) + "\n")
    return fstab


def write_apt_mirror(root: Path, mirror: str, codename: str) -> Path:
    """Point apt at a specific mirror."""
    sources = _etc(root, "apt/sources.list")
    components = "main restricted universe multiverse"
    lines = [
        f"deb {mirror} {codename} {components}",
        f"deb {mirror} {codename}-updates {components}",
        f"deb {mirror} {codename}-security {components}",
    ]
    sources.parent.mkdir(parents=True, exist_ok=True)
    sources.write_text("\n".join(lines) + "\n")
    logger.info("Using apt mirror %s", mirror)
    return sources


def patch_pd_mapper(root: Path) -> bool:
    """Drop ConditionKernelVersion lines from pd-mapper.service.

    Returns:
        True if the unit existed and was rewritten.
    """
    unit = root / PD_MAPPER_UNIT
    if not unit.is_file():
        logger.warning("pd-mapper.service not present; skipping patch")
        return False
    lines = unit.read_text().splitlines(keepends=True)
    kept = [line for line in lines if "ConditionKernelVersion" not in line]
    unit.write_text("".join(kept))
    return len(kept) != len(lines)


def patch_grub_defaults(root: Path) -> bool:
    """Enable os-prober and clear the default kernel command line.

    Returns:
        True if the file existed.
    """
    grub = root / GRUB_DEFAULTS
    if not grub.is_file():
        logger.warning("%s not present; skipping GRUB patch", GRUB_DEFAULTS)
        return False
    patched = []
    for line in grub.read_text().splitlines():
        for pattern, replacement in GRUB_PATCHES:
            if pattern.match(line):
                line = replacement
        patched.append(line)
    grub.write_text("\n".join(patched) + "\n")
    return True


__all__ = [
    "FSTAB_ENTRIES",
    "patch_grub_defaults",
    "patch_pd_mapper",
    "write_apt_mirror",
    "write_fstab",
    "write_identity",
]
