"""Run input snapshots.

This module handles:
- Capturing the settings that determine a run's outputs
- Hashing them into a deterministic input key

Two runs with the same input key were asked to build the same thing. The
key is recorded in the run ledger and the manifest; it never causes a
stage to be skipped.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from raphael_imagegen.config import Settings

# Bump when the snapshot layout changes
INPUT_KEY_SCHEMA_VERSION = "1"


@dataclass
class RunInputs:
    """Canonical representation of the inputs of a run.

    Attributes:
        schema_version: Version of the snapshot layout.
        kernel: Kernel source and configuration inputs.
        rootfs: Distribution and filesystem inputs.
        boot: Boot image inputs.
        stages: Stages the run was asked to execute.
    """

    schema_version: str = INPUT_KEY_SCHEMA_VERSION
    kernel: dict[str, Any] = field(default_factory=dict)
    rootfs: dict[str, Any] = field(default_factory=dict)
    boot: dict[str, Any] = field(default_factory=dict)
    stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def create_run_inputs(settings: Settings, stages: list[str]) -> RunInputs:
    """Snapshot the output-relevant settings of a run.

    Paths, cache locations and retry policy are left out: they change how
    a run executes, not what it produces.
    """
    return RunInputs(
        kernel={
            "version": settings.kernel_version,
            "repo": settings.kernel_repo,
            "branch": settings.kernel_branch,
            "cross_compile": settings.cross_compile,
            "arch": settings.kernel_arch,
            "defconfig": settings.kernel_defconfig,
            "fragment": settings.kernel_config_fragment,
        },
        rootfs={
            "distribution": settings.distribution,
            "ubuntu_version": settings.ubuntu_version,
            "armbian_base_url": settings.armbian_base_url,
            "size": settings.rootfs_size,
            "hostname": settings.hostname,
            "device": settings.device,
        },
        boot={
            "template_url": settings.boot_template_url,
            "size": settings.boot_image_size,
        },
        stages=list(stages),
    )


def compute_input_key(inputs: RunInputs) -> str:
    """Return ``sha256:<hex>`` over the canonical JSON of inputs."""
    canonical_json = json.dumps(inputs.to_dict(), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


__all__ = [
    "INPUT_KEY_SCHEMA_VERSION",
    "RunInputs",
    "compute_input_key",
    "create_run_inputs",
]
