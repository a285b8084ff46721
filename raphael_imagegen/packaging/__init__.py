"""Debian packaging module.

This module handles:
- Control block parsing, defaults and version stamping
- Building the linux, firmware and alsa packages
- Reusing packages from an earlier run
"""

from raphael_imagegen.packaging.control import (
    ControlError,
    parse_control,
    prepare_control,
    render_control,
)
from raphael_imagegen.packaging.stage import (
    PackageStage,
    PackagingError,
    discover_packages,
)

__all__ = [
    "ControlError",
    "PackageStage",
    "PackagingError",
    "discover_packages",
    "parse_control",
    "prepare_control",
    "render_control",
]
