"""Package stage.

This module handles:
- Staging the linux, firmware and alsa components in private roots
- Stamping each control block with the derived kernel release
- Building the archives with dpkg-deb
- Writing a distributable tarball of the kernel outputs
- Rediscovering packages from a previous run when the kernel stage is skipped

The linux package is required. Firmware and audio failures are logged,
reported and tolerated.
"""

from __future__ import annotations

import logging
import re
import shutil
import tarfile
import time
from datetime import datetime, timezone
from pathlib import Path

from raphael_imagegen.errors import (
    FatalError,
    MissingArtifactError,
    PipelineError,
)
from raphael_imagegen.packaging.control import prepare_control, render_control
from raphael_imagegen.pipeline.stage import PipelineContext, Stage, step
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.types import (
    KernelArtifactSet,
    Package,
    PackageComponent,
    StageName,
    StageOutcome,
    StageStatus,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_DTB_TEXT = "Device tree blob was not produced by this kernel build.\n"

PACKAGE_FILENAME_RE = re.compile(
    r"^(?P<component>[a-z0-9]+)-(?P<device>[a-z0-9-]+)"
    r"_(?P<version>[^_]+)_(?P<arch>[a-z0-9]+)\.deb$"
)

ARCHIVE_README = """\
Linux kernel {release} for {device}

Contents:
  Image.gz-{release}    compressed kernel image
  dtbs/                 device tree blobs (if produced)
  *.deb                 installable packages

Built: {built}
Requested version: {requested}
"""


class PackagingError(FatalError):
    """Raised when a required package cannot be built."""

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(message, code="package_failed", output=output)


def staging_root(work_dir: Path, package: Package) -> Path:
    return work_dir / "packages" / package.name


def template_dir(payload_dir: Path, component: PackageComponent, device: str) -> Path:
    """Return the template tree for a component (may not exist)."""
    return payload_dir / f"{component.value}-{device}"


def stage_linux_payload(
    root: Path, kernel: KernelArtifactSet
) -> list[str]:
    """Copy kernel image, DTB and modules into a staging root.

    Returns:
        Warnings raised while staging.

    Raises:
        MissingArtifactError: If the kernel image is missing or empty.
    """
    warnings: list[str] = []
    image = kernel.image_path
    if not image.is_file() or image.stat().st_size == 0:
        raise MissingArtifactError(str(image), "kernel image")

    boot = root / "boot"
    boot.mkdir(parents=True, exist_ok=True)
    shutil.copy2(image, boot / f"vmlinuz-{kernel.release}")

    dtb_target = boot / f"dtb-{kernel.release}"
    if kernel.dtb_path is not None and kernel.dtb_path.is_file():
        shutil.copy2(kernel.dtb_path, dtb_target)
    else:
        logger.warning("No device tree blob; writing placeholder %s", dtb_target.name)
        dtb_target.write_text(PLACEHOLDER_DTB_TEXT)
        warnings.append("device tree blob missing, placeholder written")

    source_modules = kernel.modules_path / "lib" / "modules"
    if source_modules.is_dir():
        shutil.copytree(
            source_modules, root / "lib" / "modules", symlinks=True, dirs_exist_ok=True
        )
    else:
        logger.warning("No installed modules under %s", kernel.modules_path)
        warnings.append("kernel modules missing")
    return warnings


def build_package(
    runner: CommandRunner,
    package: Package,
    output_dir: Path,
    timeout: int | None = None,
) -> Path:
    """Write the control block and run dpkg-deb for a staged package."""
    control_path = package.payload_root / "DEBIAN" / "control"
    control_path.parent.mkdir(parents=True, exist_ok=True)
    control_path.write_text(render_control(package.control), encoding="utf-8")

    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / package.filename
    runner.run(
        [
            "dpkg-deb",
            "--build",
            "--root-owner-group",
            str(package.payload_root),
            str(target),
        ],
        timeout=timeout,
    )
    if not target.is_file():
        raise PackagingError(f"dpkg-deb produced no archive at {target}")
    package.path = target
    logger.info("Built package %s", target.name)
    return target


def parse_package_filename(path: Path) -> Package | None:
    """Build a Package record from an archive file name, or None."""
    match = PACKAGE_FILENAME_RE.match(path.name)
    if not match:
        return None
    try:
        component = PackageComponent(match.group("component"))
    except ValueError:
        return None
    return Package(
        component=component,
        device=match.group("device"),
        version=match.group("version"),
        architecture=match.group("arch"),
        payload_root=path.parent,
        path=path,
    )


def discover_packages(
    output_dir: Path, device: str, architecture: str
) -> list[Package]:
    """Find packages left by an earlier run, newest version per component.

    Raises:
        MissingArtifactError: If no linux package is found.
    """
    found: dict[PackageComponent, Package] = {}
    for path in sorted(output_dir.glob("*.deb"), key=lambda p: p.stat().st_mtime):
        package = parse_package_filename(path)
        if package is None or package.device != device:
            continue
        if package.architecture != architecture:
            continue
        found[package.component] = package
    if PackageComponent.LINUX not in found:
        raise MissingArtifactError(
            str(output_dir / f"{PackageComponent.LINUX.value}-{device}_*.deb"),
            "kernel package",
        )
    release = found[PackageComponent.LINUX].version
    packages = [p for p in found.values() if p.version == release]
    logger.info(
        "Reusing %d package(s) for release %s from %s",
        len(packages),
        release,
        output_dir,
    )
    return sorted(packages, key=lambda p: list(PackageComponent).index(p.component))


def create_kernel_archive(
    kernel: KernelArtifactSet,
    kernel_output_dir: Path,
    packages: list[Package],
    output_dir: Path,
    device_tag: str = "raphael",
) -> Path:
    """Bundle kernel outputs and packages into a tar.gz with a README."""
    archive = output_dir / f"kernel-{kernel.release}-{device_tag}.tar.gz"
    readme = ARCHIVE_README.format(
        release=kernel.release,
        device=device_tag,
        built=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        requested=kernel.requested_version,
    )
    readme_path = kernel_output_dir / "README.txt"
    kernel_output_dir.mkdir(parents=True, exist_ok=True)
    readme_path.write_text(readme)

    with tarfile.open(archive, "w:gz") as tar:
        for entry in sorted(kernel_output_dir.iterdir()):
            tar.add(entry, arcname=entry.name)
        for package in packages:
            if package.path is not None and package.path.is_file():
                tar.add(package.path, arcname=package.path.name)
    logger.info("Wrote kernel archive %s", archive.name)
    return archive


class PackageStage(Stage):
    """Produce the installable archives for the device."""

    name = StageName.PACKAGE

    def run(self, context: PipelineContext) -> StageOutcome:
        settings = context.settings
        started = time.monotonic()
        runner = context.stage_runner(self.name)

        if context.kernel is None:
            with step(self.name, "discover packages"):
                context.packages = discover_packages(
                    settings.output_dir, settings.device, settings.package_arch
                )
            return StageOutcome(
                stage=self.name,
                status=StageStatus.SKIPPED,
                message=f"Reusing {len(context.packages)} existing package(s)",
                duration=time.monotonic() - started,
                artifacts=[p.path for p in context.packages if p.path is not None],
            )

        kernel = context.kernel
        built: list[Package] = []
        tolerated: dict[str, str] = {}
        warnings: list[str] = []

        for component in PackageComponent:
            package = Package(
                component=component,
                device=settings.device,
                version=kernel.release,
                architecture=settings.package_arch,
                payload_root=Path(),
            )
            package.payload_root = staging_root(settings.work_dir, package)
            operation = f"build {package.name}"
            try:
                with step(self.name, operation):
                    warnings.extend(
                        self._build_component(context, runner, package, kernel)
                    )
            except (PipelineError, OSError) as e:
                if component == PackageComponent.LINUX:
                    if isinstance(e, OSError):
                        raise PackagingError(
                            f"Failed to stage {package.name}: {e}"
                        ).attach(self.name, operation) from e
                    raise
                logger.warning("Skipping %s: %s", package.name, e)
                tolerated[package.name] = str(e)
                continue
            built.append(package)

        context.packages = built

        with step(self.name, "create kernel archive"):
            archive = create_kernel_archive(
                kernel, settings.kernel_output_dir, built, settings.output_dir
            )

        message = f"Built {len(built)} package(s) for {kernel.release}"
        if tolerated:
            message += f"; skipped {', '.join(sorted(tolerated))}"
        return StageOutcome(
            stage=self.name,
            status=StageStatus.SUCCEEDED,
            message=message,
            duration=time.monotonic() - started,
            artifacts=[p.path for p in built if p.path is not None] + [archive],
            details={"tolerated": tolerated, "warnings": warnings},
        )

    def _build_component(
        self,
        context: PipelineContext,
        runner: CommandRunner,
        package: Package,
        kernel: KernelArtifactSet,
    ) -> list[str]:
        settings = context.settings
        root = package.payload_root
        if root.exists():
            shutil.rmtree(root)
        root.mkdir(parents=True)

        template = template_dir(settings.payload_dir, package.component, package.device)
        warnings: list[str] = []
        if template.is_dir():
            shutil.copytree(template, root, symlinks=True, dirs_exist_ok=True)
        elif package.component != PackageComponent.LINUX:
            raise MissingArtifactError(str(template), f"{package.name} payload")

        if package.component == PackageComponent.LINUX:
            warnings = stage_linux_payload(root, kernel)

        package.control = prepare_control(
            root / "DEBIAN" / "control",
            package.component.value,
            package.device,
            package.version,
            package.architecture,
        )
        build_package(runner, package, settings.output_dir, settings.command_timeout)
        return warnings


__all__ = [
    "PackageStage",
    "PackagingError",
    "build_package",
    "create_kernel_archive",
    "discover_packages",
    "parse_package_filename",
    "stage_linux_payload",
]
