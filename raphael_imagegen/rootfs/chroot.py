"""Package management inside the target root.

All commands run through ``CommandRunner.chroot`` with a
non-interactive environment.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from raphael_imagegen.errors import CommandError, RetryableError
from raphael_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

TOOLING_PACKAGES = {
    "ubuntu": (
        "bash-completion",
        "sudo",
        "ssh",
        "nano",
        "initramfs-tools",
        "u-boot-tools",
    ),
    "armbian": ("sudo", "ssh", "nano", "initramfs-tools"),
}

# Armbian ships the remote filesystem service as rmtfs-mgr
DEVICE_PACKAGES = {
    "ubuntu": ("rmtfs", "protection-domain-mapper", "tqftpserv"),
    "armbian": ("rmtfs-mgr", "protection-domain-mapper", "tqftpserv"),
}

# Armbian base images are already current
UPGRADED_DISTRIBUTIONS = ("ubuntu",)

BOOTLOADER_PACKAGES = {
    "ubuntu": ("grub-efi-arm64",),
    "armbian": ("u-boot-tools",),
}

APT_OPTIONS = ("-y", "-o", "Dpkg::Options::=--force-confnew")


class ChrootPackages:
    """apt/dpkg operations against a mounted target root.

    Args:
        runner: Command runner.
        root: Target root directory.
        timeout: Timeout applied to each command.
    """

    def __init__(
        self, runner: CommandRunner, root: Path, timeout: int | None = None
    ) -> None:
        self.runner = runner
        self.root = root
        self.timeout = timeout

    def update(self) -> None:
        """Refresh package lists.

        Raises:
            RetryableError: If the refresh failed (usually the network).
        """
        try:
            self.runner.chroot(self.root, ["apt-get", "update"], timeout=self.timeout)
        except CommandError as e:
            raise RetryableError(
                "Package list refresh failed", code="apt_update_failed", output=e.output
            ) from e

    def upgrade(self) -> None:
        self.runner.chroot(
            self.root, ["apt-get", "upgrade", *APT_OPTIONS], timeout=self.timeout
        )

    def install(self, packages: Iterable[str]) -> None:
        """Install packages in a single transaction."""
        names = list(packages)
        logger.info("Installing %s", " ".join(names))
        self.runner.chroot(
            self.root,
            ["apt-get", "install", *APT_OPTIONS, *names],
            timeout=self.timeout,
        )

    def install_each(self, packages: Iterable[str]) -> dict[str, str]:
        """Install packages one at a time, tolerating failures.

        Returns:
            Mapping of package name to error message for failed installs.
        """
        failed: dict[str, str] = {}
        for name in packages:
            try:
                self.install([name])
            except CommandError as e:
                logger.warning("Optional package %s not installed: %s", name, e)
                failed[name] = str(e)
        return failed

    def install_local(self, archives: Iterable[Path]) -> None:
        """Install local archives with dpkg -i.

        The archives are copied into the target's /tmp first and removed
        afterwards.
        """
        staged: list[Path] = []
        tmp = self.root / "tmp"
        tmp.mkdir(parents=True, exist_ok=True)
        try:
            for archive in archives:
                target = tmp / archive.name
                target.write_bytes(archive.read_bytes())
                staged.append(target)
            if not staged:
                return
            self.runner.chroot(
                self.root,
                ["dpkg", "-i", *[f"/tmp/{p.name}" for p in staged]],
                timeout=self.timeout,
            )
        finally:
            for path in staged:
                path.unlink(missing_ok=True)

    def update_initramfs(self, release: str | None = None) -> None:
        version = release or "all"
        self.runner.chroot(
            self.root,
            ["update-initramfs", "-c", "-k", version],
            timeout=self.timeout,
        )

    def clean(self) -> None:
        self.runner.chroot(self.root, ["apt-get", "clean"], timeout=self.timeout)


__all__ = [
    "BOOTLOADER_PACKAGES",
    "ChrootPackages",
    "DEVICE_PACKAGES",
    "TOOLING_PACKAGES",
    "UPGRADED_DISTRIBUTIONS",
]
