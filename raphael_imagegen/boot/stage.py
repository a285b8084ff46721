"""Boot image stage.

This module handles:
- Resolving the root filesystem UUID (the only step of a dry run)
- Obtaining the boot partition template
- Copying the kernel, initramfs and device tree out of the root filesystem
- Pointing the loader entry at the root filesystem UUID
- Verifying the result and copying it to the output path
"""

from __future__ import annotations

import logging
import shutil
import time
from contextlib import ExitStack
from pathlib import Path

from raphael_imagegen.boot.entry import ENTRY_RELPATH, load_entry, write_entry
from raphael_imagegen.boot.template import download_template, synthesize_template
from raphael_imagegen.errors import FatalError, MissingArtifactError
from raphael_imagegen.pipeline.stage import PipelineContext, Stage, step
from raphael_imagegen.rootfs.image import read_uuid
from raphael_imagegen.types import (
    BootImage,
    PackageComponent,
    StageName,
    StageOutcome,
    StageStatus,
)

logger = logging.getLogger(__name__)

KERNEL_TARGET = "linux.efi"
INITRD_TARGET = "initramfs"

# Flattened device tree header magic (big endian 0xd00dfeed)
FDT_MAGIC = b"\xd0\x0d\xfe\xed"


class BootAssemblyError(FatalError):
    """Raised when the boot partition contents cannot be assembled."""

    def __init__(self, message: str, code: str = "boot_assembly_failed") -> None:
        """Initialize BootAssemblyError.

        Args:
            message: Error description.
            code: Narrower code, e.g. uuid_mismatch or boot_incomplete.
        """
        super().__init__(message, code=code)


def select_boot_file(boot_dir: Path, prefix: str, release: str | None) -> Path:
    """Pick ``<prefix>-<release>`` from a root filesystem's /boot.

    Without a release, exactly one ``<prefix>-*`` candidate must exist.

    Raises:
        MissingArtifactError: If no candidate exists.
        BootAssemblyError: If the choice is ambiguous.
    """
    if release is not None:
        path = boot_dir / f"{prefix}-{release}"
        if not path.is_file():
            raise MissingArtifactError(str(path), prefix)
        return path

    candidates = sorted(p for p in boot_dir.glob(f"{prefix}-*") if p.is_file())
    if not candidates:
        raise MissingArtifactError(str(boot_dir / f"{prefix}-*"), prefix)
    if len(candidates) > 1:
        names = ", ".join(p.name for p in candidates)
        raise BootAssemblyError(
            f"Ambiguous {prefix} in {boot_dir}: {names}", code="ambiguous_boot_file"
        )
    return candidates[0]


def is_device_tree(path: Path) -> bool:
    """Return True if path starts with the flattened device tree magic."""
    with path.open("rb") as f:
        return f.read(len(FDT_MAGIC)) == FDT_MAGIC


def release_from_filename(path: Path, prefix: str) -> str:
    return path.name[len(prefix) + 1 :]


def verify_boot_tree(esp: Path, uuid: str) -> list[str]:
    """Check the boot partition contents.

    Returns:
        Relative paths of the verified files.

    Raises:
        BootAssemblyError: If a required file is missing or the entry's
            root UUID does not match.
    """
    required = [Path(KERNEL_TARGET), Path(INITRD_TARGET), ENTRY_RELPATH]
    for rel in required:
        path = esp / rel
        if not path.is_file() or path.stat().st_size == 0:
            raise BootAssemblyError(
                f"Boot partition is missing {rel}", code="boot_incomplete"
            )
    entry = load_entry(esp / ENTRY_RELPATH)
    if entry is None or entry.root_uuid != uuid:
        found = entry.root_uuid if entry is not None else None
        raise BootAssemblyError(
            f"Loader entry selects root UUID {found}, expected {uuid}",
            code="uuid_mismatch",
        )
    return [str(rel) for rel in required]


class BootImageStage(Stage):
    """Build the boot partition image for the finished root filesystem.

    Args:
        dry_run: Only resolve and report the root filesystem UUID.
    """

    name = StageName.BOOT

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def run(self, context: PipelineContext) -> StageOutcome:
        settings = context.settings
        started = time.monotonic()

        rootfs_path = (
            context.rootfs.path
            if context.rootfs is not None
            else settings.default_rootfs_image
        )
        if not rootfs_path.is_file():
            error = MissingArtifactError(str(rootfs_path), "root filesystem image")
            raise error.attach(self.name, "locate root filesystem")

        if self.dry_run:
            runner = context.runner.with_log(None)
        else:
            runner = context.stage_runner(self.name)
        with step(self.name, "resolve filesystem uuid"):
            uuid = read_uuid(runner, rootfs_path)
            expected = context.rootfs.uuid if context.rootfs is not None else None
            if expected is not None and expected != uuid:
                raise BootAssemblyError(
                    f"Root filesystem UUID changed from {expected} to {uuid}",
                    code="uuid_mismatch",
                )
        logger.info("Root filesystem %s has UUID %s", rootfs_path.name, uuid)

        if self.dry_run:
            return StageOutcome(
                stage=self.name,
                status=StageStatus.SUCCEEDED,
                message=f"Root filesystem UUID {uuid} (dry run)",
                duration=time.monotonic() - started,
                details={"uuid": uuid, "dry_run": True, "rootfs": str(rootfs_path)},
            )

        release = self._known_release(context)
        work = settings.work_dir / "boot"
        template = work / "boot.img"

        with step(self.name, "prepare template"):
            url = settings.boot_template_url
            if url:
                context.retry(
                    lambda: download_template(
                        context.http,
                        url,
                        settings.download_cache_dir / "boot",
                        template,
                        use_cache=settings.cache_enabled,
                        timeout=settings.network_timeout,
                    ),
                    operation="download boot template",
                )
            else:
                synthesize_template(runner, template, settings.boot_image_size)

        warnings: list[str] = []
        with step(self.name, "unmount"), ExitStack() as scope:
            esp = work / "esp"
            root = work / "rootfs"
            with step(self.name, "mount images"):
                scope.enter_context(context.mounts.loop_mount(template, esp))
                scope.enter_context(
                    context.mounts.loop_mount(rootfs_path, root, read_only=True)
                )

            with step(self.name, "copy boot files"):
                boot_dir = root / "boot"
                kernel = select_boot_file(boot_dir, "vmlinuz", release)
                initrd = select_boot_file(boot_dir, "initrd.img", release)
                release = release or release_from_filename(kernel, "vmlinuz")
                shutil.copyfile(kernel, esp / KERNEL_TARGET)
                shutil.copyfile(initrd, esp / INITRD_TARGET)
                warnings.extend(self._copy_dtb(context, boot_dir, esp, release))

            with step(self.name, "write loader entry"):
                write_entry(esp, uuid)

            with step(self.name, "verify boot partition"):
                files = verify_boot_tree(esp, uuid)

        output = settings.boot_output_path(release)
        with step(self.name, "write output"):
            output.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(template, output)

        context.boot = BootImage(path=output, root_uuid=uuid, files=files)
        logger.info("Boot image %s links to root UUID %s", output.name, uuid)
        return StageOutcome(
            stage=self.name,
            status=StageStatus.SUCCEEDED,
            message=f"Boot image {output.name} (root UUID {uuid})",
            duration=time.monotonic() - started,
            artifacts=[output],
            details={"uuid": uuid, "release": release, "warnings": warnings},
        )

    def _known_release(self, context: PipelineContext) -> str | None:
        if context.kernel is not None:
            return context.kernel.release
        for package in context.packages:
            if package.component == PackageComponent.LINUX:
                return package.version
        return None

    def _copy_dtb(
        self, context: PipelineContext, boot_dir: Path, esp: Path, release: str
    ) -> list[str]:
        dtb = boot_dir / f"dtb-{release}"
        target = esp / Path(context.settings.dtb_relpath).name
        if not dtb.is_file():
            logger.warning("No device tree blob in root filesystem (%s)", dtb.name)
            return [f"{dtb.name} missing"]
        if not is_device_tree(dtb):
            logger.warning(
                "%s is not a device tree blob; keeping the template's %s",
                dtb.name,
                target.name,
            )
            return [f"{dtb.name} is not a device tree blob"]
        shutil.copyfile(dtb, target)
        return []


__all__ = [
    "BootAssemblyError",
    "BootImageStage",
    "is_device_tree",
    "select_boot_file",
    "verify_boot_tree",
]
