"""Base system and shim downloads.

This module handles:
- URL discovery for the Ubuntu base tarball (Armbian archives are given
  by URL)
- Download with optional checksum verification and a reuse cache
- Extraction of the base archive into the mounted target root
- Fetching the qemu-aarch64-static binary for the foreign-binary shim
"""

from __future__ import annotations

import hashlib
import logging
import tarfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from raphael_imagegen.config import Settings
from raphael_imagegen.errors import FatalError, RetryableError

logger = logging.getLogger(__name__)

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class DownloadError(RetryableError):
    """Raised when a download fails for a transient reason."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: What went wrong, including the URL or path.
            code: Machine-readable error code.
        """
        super().__init__(message, code=code)


class VerificationError(FatalError):
    """Raised when checksum verification fails."""

    def __init__(self, message: str, code: str = "verification_error") -> None:
        """Initialize VerificationError.

        Args:
            message: What went wrong, including the URL or path.
            code: Machine-readable error code.
        """
        super().__init__(message, code=code)


class ExtractionError(FatalError):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        """Initialize ExtractionError.

        Args:
            message: What went wrong, including the URL or path.
            code: Machine-readable error code.
        """
        super().__init__(message, code=code)


@dataclass
class DownloadResult:
    """Result of a download (or of a cache hit)."""

    path: Path
    checksum: str
    size_bytes: int
    cached: bool = False


def ubuntu_base_url(base: str, version: str, arch: str = "arm64") -> str:
    """Compose the Ubuntu base tarball URL for a release.

    Args:
        base: Release directory root (cdimage ubuntu-base releases).
        version: Point release, e.g. 24.04.3.
        arch: Debian architecture name.

    Returns:
        Tarball URL.
    """
    base = base.rstrip("/")
    return f"{base}/{version}/release/ubuntu-base-{version}-base-{arch}.tar.gz"


def base_archive_url(settings: Settings) -> str:
    """Return the base archive URL for the configured distribution.

    Args:
        settings: Build settings.

    Returns:
        Archive URL for Ubuntu or Armbian.

    Raises:
        FatalError: If Armbian is selected without an archive URL.
    """
    if settings.distribution == "armbian":
        if not settings.armbian_base_url:
            raise FatalError(
                "Armbian distribution requires RAPHAEL_ARMBIAN_BASE_URL",
                code="config_error",
            )
        return settings.armbian_base_url
    return ubuntu_base_url(settings.ubuntu_download_base, settings.ubuntu_version)


def url_filename(url: str) -> str:
    name = Path(urlparse(url).path).name
    return name or "download"


def compute_file_sha256(file_path: Path) -> str:
    with file_path.open("rb") as f:
        return hashlib.file_digest(f, "sha256").hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = 600,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    The body is streamed to a temporary ``.part`` file which is renamed
    into place only after the checksum matched.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Final location of the file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Streaming chunk size in bytes.

    Returns:
        DownloadResult with path, checksum and size.

    Raises:
        DownloadError: If the download fails (retryable).
        VerificationError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    partial = dest_path.with_name(dest_path.name + ".part")

    try:
        with client.stream(
            "GET", url, timeout=timeout, follow_redirects=True
        ) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with partial.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e

    computed = sha256.hexdigest()
    if expected_checksum and computed != expected_checksum.lower():
        partial.unlink(missing_ok=True)
        raise VerificationError(
            f"Checksum mismatch for {url}: expected {expected_checksum}, got {computed}"
        )

    partial.replace(dest_path)
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed[:16] + "...",
    )
    return DownloadResult(path=dest_path, checksum=computed, size_bytes=total_bytes)


def fetch_cached(
    client: httpx.Client,
    url: str,
    cache_dir: Path,
    *,
    use_cache: bool = True,
    expected_checksum: str | None = None,
    timeout: float = 600,
) -> DownloadResult:
    """Download a file into the cache directory, reusing a previous copy.

    A cached copy is reused only when caching is enabled and it matches the
    expected checksum (when one is given).

    Args:
        client: HTTPX client instance.
        url: URL to download from; its last path segment names the file.
        cache_dir: Download cache directory.
        use_cache: Reuse a previous download when possible.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.

    Returns:
        DownloadResult; ``cached`` is set when no request was made.

    Raises:
        DownloadError: If the download fails (retryable).
        VerificationError: If checksum verification fails.
    """
    dest = cache_dir / url_filename(url)
    if use_cache and dest.is_file() and dest.stat().st_size > 0:
        checksum = compute_file_sha256(dest)
        if expected_checksum is None or checksum == expected_checksum.lower():
            logger.info("Using cached %s", dest.name)
            return DownloadResult(
                path=dest,
                checksum=checksum,
                size_bytes=dest.stat().st_size,
                cached=True,
            )
        logger.warning("Cached %s has wrong checksum; downloading again", dest.name)
    return download_file(
        client, url, dest, expected_checksum=expected_checksum, timeout=timeout
    )


def check_members(members: list[tarfile.TarInfo], archive_path: Path) -> None:
    """Reject archives with absolute or parent-relative member names.

    Raises:
        ExtractionError: If the archive is empty or a member escapes the root.
    """
    if not members:
        raise ExtractionError(f"Archive {archive_path} is empty", code="empty_archive")
    for member in members:
        member_path = Path(member.name)
        if member_path.is_absolute() or ".." in member_path.parts:
            raise ExtractionError(
                f"Refusing to extract {member.name}: path traversal detected",
                code="path_traversal",
            )
        if member.islnk() and (
            Path(member.linkname).is_absolute() or ".." in Path(member.linkname).parts
        ):
            raise ExtractionError(
                f"Refusing to extract hard link {member.name} -> {member.linkname}",
                code="path_traversal",
            )


def extract_rootfs(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a root filesystem archive into a mounted target root.

    Ownership is restored numerically and special files and permission bits
    are kept, as a root filesystem needs them. Member names are checked for
    traversal before anything is written.

    Args:
        archive_path: Base system tarball (any compression tarfile reads).
        dest_dir: Mounted target root.

    Returns:
        dest_dir.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            check_members(members, archive_path)
            tar.extractall(dest_dir, numeric_owner=True, filter="fully_trusted")
    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}", code="os_error"
        ) from e
    logger.info("Extracted base system into %s", dest_dir)
    return dest_dir


def fetch_qemu_static(
    client: httpx.Client,
    url: str,
    cache_dir: Path,
    *,
    use_cache: bool = True,
    timeout: float = 600,
) -> Path:
    """Download qemu-aarch64-static and make it executable.

    Args:
        client: HTTPX client instance.
        url: Static binary URL.
        cache_dir: Download cache directory.
        use_cache: Reuse a previous download when possible.
        timeout: Download timeout in seconds.

    Returns:
        Path of the executable binary in the cache.
    """
    result = fetch_cached(client, url, cache_dir, use_cache=use_cache, timeout=timeout)
    result.path.chmod(0o755)
    return result.path


__all__ = [
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "VerificationError",
    "base_archive_url",
    "check_members",
    "compute_file_sha256",
    "download_file",
    "extract_rootfs",
    "fetch_cached",
    "fetch_qemu_static",
    "ubuntu_base_url",
]
