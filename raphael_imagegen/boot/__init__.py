"""Boot partition module.

This module handles:
- The boot loader entry format and its root UUID
- Obtaining a FAT boot template (download or synthesis)
- Populating the boot partition from the root filesystem
"""

from raphael_imagegen.boot.entry import BootEntryError, BootLoaderEntry, write_entry
from raphael_imagegen.boot.stage import BootAssemblyError, BootImageStage

__all__ = [
    "BootAssemblyError",
    "BootEntryError",
    "BootImageStage",
    "BootLoaderEntry",
    "write_entry",
]
