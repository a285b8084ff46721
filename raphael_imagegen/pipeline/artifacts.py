"""Output inventory and ``manifest.json``.

Every file a stage reports is described once (name, path relative to the
output directory, size, sha256, kind) and the inventory is written as a
manifest next to the outputs when a run succeeds.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from raphael_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"

# First matching rule wins; names are compared lower-cased
KIND_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    ("package", (), (".deb",)),
    ("boot", ("xiaomi-k20pro-boot-",), ()),
    ("rootfs", ("root-",), (".img", ".img.xz")),
    ("kernel", ("image.gz-",), ()),
    ("kernel", (), (".dtb",)),
    ("archive", (), (".tar.gz",)),
]


def classify_artifact(filename: str) -> str:
    """Return the kind of an output file, ``other`` if unrecognised."""
    name = filename.lower()
    for kind, prefixes, suffixes in KIND_RULES:
        if prefixes and not name.startswith(prefixes):
            continue
        if suffixes and not name.endswith(suffixes):
            continue
        return kind
    return "other"


def compute_file_hash(file_path: Path) -> str:
    with file_path.open("rb") as f:
        return hashlib.file_digest(f, "sha256").hexdigest()


def describe_artifacts(
    paths: Iterable[Path], artifacts_root: Path
) -> list[ArtifactInfo]:
    """Describe produced files.

    Symlinks (compatibility aliases) and missing files are skipped and
    each path is described once. Paths outside artifacts_root keep their
    absolute form.
    """
    described: dict[Path, ArtifactInfo] = {}
    for path in paths:
        if path in described or path.is_symlink() or not path.is_file():
            continue
        relative = (
            path.relative_to(artifacts_root)
            if path.is_relative_to(artifacts_root)
            else path
        )
        described[path] = ArtifactInfo(
            filename=path.name,
            relative_path=str(relative),
            size_bytes=path.stat().st_size,
            sha256=compute_file_hash(path),
            kind=classify_artifact(path.name),
        )
    return list(described.values())


def generate_manifest(
    artifacts: list[ArtifactInfo],
    run_id: int | None = None,
    input_key: str | None = None,
    inputs: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the manifest document for a run's artifacts."""
    optional = {
        "run_id": run_id,
        "input_key": input_key,
        "inputs": inputs,
        "metadata": extra_metadata,
    }
    return {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        **{key: value for key, value in optional.items() if value},
        "artifacts": [asdict(a) for a in artifacts],
        "summary": {
            "total_artifacts": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
            "kinds": sorted({a.kind for a in artifacts if a.kind}),
        },
    }


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write the manifest atomically."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    partial = output_path.with_name(output_path.name + ".part")
    partial.write_text(json.dumps(manifest, indent=2, sort_keys=True), "utf-8")
    os.replace(partial, output_path)
    logger.info("Manifest: %s", output_path)
    return output_path


__all__ = [
    "MANIFEST_NAME",
    "classify_artifact",
    "compute_file_hash",
    "describe_artifacts",
    "generate_manifest",
    "write_manifest",
]
