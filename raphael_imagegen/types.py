"""Shared type definitions for raphael_imagegen.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports. Artifacts produced by one stage are passed
forward as these typed records instead of being rediscovered on disk.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class StageName(str, Enum):
    """Pipeline stages, in execution order."""

    KERNEL = "kernel"
    PACKAGE = "package"
    ROOTFS = "rootfs"
    BOOT = "boot"


class StageStatus(str, Enum):
    """Status of a stage or of a whole pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class KernelBuildState(str, Enum):
    """States of the kernel build."""

    NOT_STARTED = "not_started"
    SOURCE_FETCHED = "source_fetched"
    CONFIGURED = "configured"
    BUILT = "built"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class RootfsState(str, Enum):
    """States of root filesystem assembly."""

    PENDING = "pending"
    IMAGE_CREATED = "image_created"
    FORMATTED = "formatted"
    MOUNTED = "mounted"
    BASE_INSTALLED = "base_installed"
    BIND_MOUNTED = "bind_mounted"
    CONFIGURED = "configured"
    PACKAGES_INSTALLED = "packages_installed"
    FINALIZED = "finalized"
    UNMOUNTED = "unmounted"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Error taxonomy."""

    FATAL = "fatal"
    RETRYABLE = "retryable"
    TOLERATED = "tolerated"


class MountKind(str, Enum):
    """Kind of scoped acquisition."""

    LOOP = "loop"
    BIND = "bind"
    SHIM = "shim"


class PackageComponent(str, Enum):
    """Installable units produced for the device."""

    LINUX = "linux"
    FIRMWARE = "firmware"
    ALSA = "alsa"


@dataclass(frozen=True)
class KernelArtifactSet:
    """Outputs of the kernel build.

    Attributes:
        image_path: Compressed kernel image (never empty).
        dtb_path: Device tree blob, or None when the build produced none.
        modules_path: Root of the installed module tree (contains lib/modules).
        release: Release string reported by the build; authoritative for
            all downstream naming.
        requested_version: Version the build was asked for.
        source_dir: Kernel source tree.
    """

    image_path: Path
    dtb_path: Path | None
    modules_path: Path
    release: str
    requested_version: str
    source_dir: Path | None = None


@dataclass
class Package:
    """A built installable archive.

    Attributes:
        component: Package component.
        device: Device suffix of the package name.
        version: Package version (the derived kernel release).
        architecture: Package architecture.
        payload_root: Staging root the archive was built from.
        control: Control fields written into the archive.
        path: Path of the built archive.
    """

    component: PackageComponent
    device: str
    version: str
    architecture: str
    payload_root: Path
    control: dict[str, str] = field(default_factory=dict)
    path: Path | None = None

    @property
    def name(self) -> str:
        return f"{self.component.value}-{self.device}"

    @property
    def filename(self) -> str:
        return f"{self.name}_{self.version}_{self.architecture}.deb"


@dataclass
class FilesystemImage:
    """A root filesystem image file."""

    path: Path
    size: str
    uuid: str | None = None
    mounted: bool = False


@dataclass
class MountSession:
    """An active or released scoped acquisition."""

    mount_point: Path
    source: str
    kind: MountKind
    active: bool = False


@dataclass
class BootImage:
    """A finished boot partition image."""

    path: Path
    root_uuid: str
    files: list[str] = field(default_factory=list)


@dataclass
class StageOutcome:
    """Result of running one stage."""

    stage: StageName
    status: StageStatus
    message: str = ""
    duration: float = 0.0
    artifacts: list[Path] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)


@dataclass
class ArtifactInfo:
    """Information about an output artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BootImage",
    "ErrorKind",
    "FilesystemImage",
    "KernelArtifactSet",
    "KernelBuildState",
    "MountKind",
    "MountSession",
    "Package",
    "PackageComponent",
    "RootfsState",
    "StageName",
    "StageOutcome",
    "StageStatus",
]
