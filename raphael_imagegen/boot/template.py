"""Boot partition template acquisition.

The template is either downloaded (a prebuilt ESP image carrying the
boot loader) or synthesized as a blank FAT image. Either way a private
copy is made in the work dir, so the cached download is never modified.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

import httpx

from raphael_imagegen.errors import MissingArtifactError
from raphael_imagegen.rootfs.fetch import fetch_cached
from raphael_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

FAT_LABEL = "ESP"


def synthesize_template(runner: CommandRunner, path: Path, size: str) -> Path:
    """Create a blank FAT boot image.

    The result carries no boot loader; it only boots on firmware that
    reads loader entries itself.

    Args:
        runner: Command runner for truncate and mkfs.vfat.
        path: Image to create (replaced if present).
        size: Image size in truncate syntax, e.g. 64M.

    Returns:
        path.

    Raises:
        CommandError: If either tool fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    runner.run(["truncate", "-s", size, str(path)])
    runner.run(["mkfs.vfat", "-n", FAT_LABEL, str(path)])
    logger.info("Synthesized %s boot template %s", size, path.name)
    return path


def download_template(
    client: httpx.Client,
    url: str,
    cache_dir: Path,
    dest: Path,
    *,
    use_cache: bool = True,
    timeout: float = 600,
) -> Path:
    """Download a template image and copy it to dest.

    Args:
        client: HTTPX client instance.
        url: Template image URL.
        cache_dir: Download cache directory.
        dest: Private working copy to create.
        use_cache: Reuse a previous download when possible.
        timeout: Download timeout in seconds.

    Returns:
        dest.

    Raises:
        DownloadError: If the download fails (retryable).
        MissingArtifactError: If the downloaded image is empty.
    """
    result = fetch_cached(client, url, cache_dir, use_cache=use_cache, timeout=timeout)
    if result.size_bytes == 0:
        raise MissingArtifactError(url, "boot template")
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(result.path, dest)
    logger.info("Boot template %s (%d bytes)", dest.name, result.size_bytes)
    return dest


__all__ = ["FAT_LABEL", "download_template", "synthesize_template"]
