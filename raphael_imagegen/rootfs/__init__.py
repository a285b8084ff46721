"""Root filesystem assembly module.

This module handles:
- Creating and formatting the ext4 image
- Downloading and extracting the base system
- Package installation inside the chroot
- System configuration files (identity, fstab, mirrors)
"""

from raphael_imagegen.rootfs.chroot import ChrootPackages
from raphael_imagegen.rootfs.fetch import (
    DownloadError,
    DownloadResult,
    ExtractionError,
    VerificationError,
    base_archive_url,
    fetch_cached,
)
from raphael_imagegen.rootfs.image import create_image, format_ext4, read_uuid
from raphael_imagegen.rootfs.stage import RootfsAssemblyStage, RootfsStateMachine

__all__ = [
    "ChrootPackages",
    # Fetch
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "VerificationError",
    "base_archive_url",
    "fetch_cached",
    # Image
    "create_image",
    "format_ext4",
    "read_uuid",
    # Stage
    "RootfsAssemblyStage",
    "RootfsStateMachine",
]
