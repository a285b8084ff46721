"""Raphael Image Generator - bootable image pipeline for the Xiaomi K20 Pro.

This package cross-compiles the device kernel, packages it, assembles a root
filesystem in a chroot and synthesizes a boot partition linked to that root
filesystem by UUID.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
