"""Root filesystem assembly stage.

This module handles:
- Creating and formatting the root filesystem image
- Installing the base distribution into the loop-mounted image
- Preparing the isolated environment (host binds, foreign-binary shim)
- Installing tooling, device support, the kernel packages and a boot loader
- Tearing the environment down in strict reverse order
- Compressing the finished image

Every acquisition is scoped, so a fatal error still releases all mounts
and shim registrations before it propagates.
"""

from __future__ import annotations

import logging
import lzma
import shutil
import time
from contextlib import ExitStack
from pathlib import Path

from raphael_imagegen.errors import FatalError, MissingArtifactError
from raphael_imagegen.mounts import host_needs_shim
from raphael_imagegen.pipeline.stage import (
    PipelineContext,
    Stage,
    StateMachine,
    step,
)
from raphael_imagegen.rootfs.chroot import (
    BOOTLOADER_PACKAGES,
    DEVICE_PACKAGES,
    TOOLING_PACKAGES,
    UPGRADED_DISTRIBUTIONS,
    ChrootPackages,
)
from raphael_imagegen.rootfs.fetch import (
    base_archive_url,
    extract_rootfs,
    fetch_cached,
    fetch_qemu_static,
)
from raphael_imagegen.rootfs.image import create_image, format_ext4
from raphael_imagegen.rootfs.system import (
    patch_grub_defaults,
    patch_pd_mapper,
    write_apt_mirror,
    write_fstab,
    write_identity,
)
from raphael_imagegen.types import (
    FilesystemImage,
    Package,
    PackageComponent,
    RootfsState,
    StageName,
    StageOutcome,
    StageStatus,
)

logger = logging.getLogger(__name__)

ROOTFS_STATES = [
    RootfsState.PENDING,
    RootfsState.IMAGE_CREATED,
    RootfsState.FORMATTED,
    RootfsState.MOUNTED,
    RootfsState.BASE_INSTALLED,
    RootfsState.BIND_MOUNTED,
    RootfsState.CONFIGURED,
    RootfsState.PACKAGES_INSTALLED,
    RootfsState.FINALIZED,
    RootfsState.UNMOUNTED,
]

COMPRESS_CHUNK_SIZE = 4 * 1024 * 1024


class RootfsStateMachine(StateMachine[RootfsState]):
    """Root filesystem assembly progress."""

    def __init__(self) -> None:
        super().__init__("rootfs", ROOTFS_STATES, RootfsState.FAILED)


def package_release(packages: list[Package]) -> str:
    """Return the kernel release carried by the linux package.

    Raises:
        MissingArtifactError: If there is no linux package.
    """
    for package in packages:
        if package.component == PackageComponent.LINUX:
            return package.version
    raise MissingArtifactError("linux package", "kernel package")


def compress_image(path: Path, preset: int = 6) -> Path:
    """Write an xz-compressed copy of an image next to it."""
    target = path.with_name(path.name + ".xz")
    logger.info("Compressing %s", path.name)
    try:
        with path.open("rb") as src, lzma.open(target, "wb", preset=preset) as dst:
            shutil.copyfileobj(src, dst, COMPRESS_CHUNK_SIZE)
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    logger.info("Wrote %s", target.name)
    return target


class RootfsAssemblyStage(Stage):
    """Assemble the root filesystem image."""

    name = StageName.ROOTFS

    def __init__(
        self, compress: bool = True, needs_shim: bool | None = None
    ) -> None:
        self.machine = RootfsStateMachine()
        self.compress = compress
        self.needs_shim = host_needs_shim() if needs_shim is None else needs_shim

    def run(self, context: PipelineContext) -> StageOutcome:
        settings = context.settings
        started = time.monotonic()

        packages = [p for p in context.packages if p.path is not None]
        with step(self.name, "resolve kernel release"):
            release = (
                context.kernel.release
                if context.kernel is not None
                else package_release(packages)
            )

        mount_point = settings.work_dir / "rootdir"
        tolerated: dict[str, str] = {}
        try:
            with step(self.name, "create image"):
                image = create_image(
                    context.runner, settings.default_rootfs_image, settings.rootfs_size
                )
            self.machine.advance(RootfsState.IMAGE_CREATED)

            with step(self.name, "format image"):
                format_ext4(context.runner, image)
            self.machine.advance(RootfsState.FORMATTED)

            with step(self.name, "unmount"), ExitStack() as scope:
                tolerated = self._assemble(
                    context, scope, image, mount_point, packages, release
                )
            image.mounted = False
            self.machine.advance(RootfsState.UNMOUNTED)
        except BaseException:
            self.machine.fail()
            raise

        if mount_point.is_dir() and not any(mount_point.iterdir()):
            mount_point.rmdir()

        context.rootfs = image
        artifacts = [image.path]
        if self.compress:
            with step(self.name, "compress image"):
                artifacts.append(compress_image(image.path))

        message = f"Root filesystem {image.path.name} (UUID {image.uuid})"
        return StageOutcome(
            stage=self.name,
            status=StageStatus.SUCCEEDED,
            message=message,
            duration=time.monotonic() - started,
            artifacts=artifacts,
            details={"uuid": image.uuid, "release": release, "tolerated": tolerated},
        )

    def _assemble(
        self,
        context: PipelineContext,
        scope: ExitStack,
        image: FilesystemImage,
        root: Path,
        packages: list[Package],
        release: str,
    ) -> dict[str, str]:
        settings = context.settings
        runner = context.stage_runner(self.name)

        with step(self.name, "mount image"):
            scope.enter_context(context.mounts.loop_mount(image.path, root))
        image.mounted = True
        self.machine.advance(RootfsState.MOUNTED)

        with step(self.name, "install base system"):
            url = base_archive_url(settings)
            download = context.retry(
                lambda: fetch_cached(
                    context.http,
                    url,
                    settings.download_cache_dir / "rootfs",
                    use_cache=settings.cache_enabled,
                    expected_checksum=settings.base_sha256,
                    timeout=settings.network_timeout,
                ),
                operation=f"download {url}",
            )
            extract_rootfs(download.path, root)
        self.machine.advance(RootfsState.BASE_INSTALLED)

        with step(self.name, "bind host filesystems"):
            scope.enter_context(context.mounts.host_binds(root))
        self.machine.advance(RootfsState.BIND_MOUNTED)

        if self.needs_shim:
            with step(self.name, "register foreign-binary shim"):
                qemu = context.retry(
                    lambda: fetch_qemu_static(
                        context.http,
                        settings.qemu_static_url,
                        settings.download_cache_dir / "qemu",
                        use_cache=settings.cache_enabled,
                        timeout=settings.network_timeout,
                    ),
                    operation="download qemu-aarch64-static",
                )
                scope.enter_context(context.mounts.foreign_binary_shim(root, qemu))

        with step(self.name, "configure system"):
            write_identity(root, settings.hostname, settings.dns_server)
            if settings.ubuntu_mirror and settings.distribution == "ubuntu":
                write_apt_mirror(root, settings.ubuntu_mirror, settings.ubuntu_codename)
        self.machine.advance(RootfsState.CONFIGURED)

        apt = ChrootPackages(runner, root, timeout=settings.command_timeout)
        with step(self.name, "refresh package lists"):
            context.retry(apt.update, operation="apt update")
        distribution = settings.distribution
        if distribution in UPGRADED_DISTRIBUTIONS:
            with step(self.name, "upgrade packages"):
                apt.upgrade()
        with step(self.name, "install tooling"):
            apt.install(TOOLING_PACKAGES[distribution])
        with step(self.name, "install device packages"):
            tolerated = apt.install_each(DEVICE_PACKAGES[distribution])
            patch_pd_mapper(root)
        with step(self.name, "install kernel packages"):
            if not packages:
                raise FatalError("No kernel packages to install", code="no_packages")
            apt.install_local(p.path for p in packages if p.path is not None)
        with step(self.name, "generate initramfs"):
            apt.update_initramfs(release)
        with step(self.name, "install boot loader"):
            apt.install(BOOTLOADER_PACKAGES[distribution])
            if distribution == "ubuntu":
                patch_grub_defaults(root)
        with step(self.name, "write fstab"):
            write_fstab(root)
        self.machine.advance(RootfsState.PACKAGES_INSTALLED)

        with step(self.name, "finalize"):
            apt.clean()
        self.machine.advance(RootfsState.FINALIZED)
        return tolerated


__all__ = [
    "RootfsAssemblyStage",
    "RootfsStateMachine",
    "compress_image",
    "package_release",
]
