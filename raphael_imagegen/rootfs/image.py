"""Filesystem image creation and identification."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from raphael_imagegen.errors import CommandError, UUIDResolutionError
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.types import FilesystemImage

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9A-Fa-f-]+$")


def create_image(runner: CommandRunner, path: Path, size: str) -> FilesystemImage:
    """Create a sparse image file of the given size, replacing any old one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        logger.info("Removing existing image %s", path)
        path.unlink()
    runner.run(["truncate", "-s", size, str(path)])
    logger.info("Created %s image %s", size, path)
    return FilesystemImage(path=path, size=size)


def format_ext4(runner: CommandRunner, image: FilesystemImage) -> None:
    """Create an ext4 filesystem on the image and record its UUID."""
    runner.run(["mkfs.ext4", "-F", str(image.path)])
    image.uuid = read_uuid(runner, image.path)
    logger.info("Formatted %s (UUID %s)", image.path.name, image.uuid)


def read_uuid(runner: CommandRunner, path: Path) -> str:
    """Return the filesystem UUID of an image or block device.

    Raises:
        UUIDResolutionError: If the identifier is unreadable or empty.
    """
    try:
        result = runner.run(["blkid", "-s", "UUID", "-o", "value", str(path)])
    except CommandError as e:
        raise UUIDResolutionError(str(path), output=e.output) from e
    value = result.output.strip()
    if not value or not UUID_RE.match(value):
        raise UUIDResolutionError(str(path), output=result.output)
    return value


__all__ = ["create_image", "format_ext4", "read_uuid"]
