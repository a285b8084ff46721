"""systemd-boot loader entries.

An entry is a small key/value file (``loader/entries/*.conf``) with one
key per line separated from its value by whitespace. The root filesystem
is selected through a ``root=UUID=<value>`` token in ``options``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from raphael_imagegen.errors import FatalError

ROOT_UUID_RE = re.compile(r"root=UUID=[0-9A-Fa-f-]*")

ENTRY_RELPATH = Path("loader/entries/ubuntu.conf")

DEFAULT_OPTIONS = "console=tty0 loglevel=3 splash root=UUID={uuid} rw"


class BootEntryError(FatalError):
    """Raised when a loader entry is unusable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="boot_entry_invalid")


@dataclass
class BootLoaderEntry:
    """A systemd-boot loader entry."""

    title: str = "Ubuntu"
    sort_key: str = "ubuntu"
    linux: str = "linux.efi"
    initrd: str = "initramfs"
    options: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def root_uuid(self) -> str | None:
        """UUID selected by the root= option, or None."""
        match = ROOT_UUID_RE.search(self.options)
        if not match:
            return None
        value = match.group(0).split("=", 2)[2]
        return value or None

    def with_root_uuid(self, uuid: str) -> BootLoaderEntry:
        """Return a copy whose root= option selects uuid.

        Every existing ``root=UUID=`` token is rewritten; when there is none,
        ``root=UUID=<uuid> rw`` is appended.
        """
        if ROOT_UUID_RE.search(self.options):
            options = ROOT_UUID_RE.sub(f"root=UUID={uuid}", self.options)
        else:
            options = f"{self.options} root=UUID={uuid} rw".strip()
        return BootLoaderEntry(
            title=self.title,
            sort_key=self.sort_key,
            linux=self.linux,
            initrd=self.initrd,
            options=options,
            extra=dict(self.extra),
        )

    @classmethod
    def default(cls, uuid: str) -> BootLoaderEntry:
        return cls(options=DEFAULT_OPTIONS.format(uuid=uuid))

    @classmethod
    def parse(cls, text: str) -> BootLoaderEntry:
        """Parse entry text; unknown keys are kept in ``extra``."""
        entry = cls(title="", sort_key="", linux="", initrd="")
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            key, _, value = line.replace("\t", " ").partition(" ")
            value = value.strip()
            if key == "title":
                entry.title = value
            elif key == "sort-key":
                entry.sort_key = value
            elif key == "linux":
                entry.linux = value
            elif key == "initrd":
                entry.initrd = value
            elif key == "options":
                entry.options = value
            else:
                entry.extra[key] = value
        return entry

    def render(self) -> str:
        lines = [
            f"title\t {self.title}",
            f"sort-key {self.sort_key}",
            f"linux\t {self.linux}",
            f"initrd\t {self.initrd}",
        ]
        lines.extend(f"{key} {value}" for key, value in self.extra.items())
        lines.append(f"options {self.options}")
        return "\n".join(lines) + "\n"


def load_entry(path: Path) -> BootLoaderEntry | None:
    """Read an entry file, or return None if it does not exist."""
    if not path.is_file():
        return None
    return BootLoaderEntry.parse(path.read_text(encoding="utf-8"))


def write_entry(boot_root: Path, uuid: str) -> BootLoaderEntry:
    """Point the boot partition's entry at a root filesystem UUID.

    An existing entry keeps everything except its root= token; a missing
    entry is created with default options.

    Returns:
        The entry as written.

    Raises:
        BootEntryError: If the existing entry names no kernel or initramfs.
    """
    path = boot_root / ENTRY_RELPATH
    existing = load_entry(path)
    if existing is not None and not (existing.linux and existing.initrd):
        raise BootEntryError(f"Loader entry {path.name} names no kernel or initramfs")
    entry = (
        existing.with_root_uuid(uuid)
        if existing is not None
        else BootLoaderEntry.default(uuid)
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(entry.render(), encoding="utf-8")
    return entry


__all__ = [
    "BootEntryError",
    "BootLoaderEntry",
    "ENTRY_RELPATH",
    "load_entry",
    "write_entry",
]
