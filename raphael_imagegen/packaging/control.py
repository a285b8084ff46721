"""Debian control block parsing and rendering.

A control block is a sequence of ``Field: value`` lines; continuation
lines start with whitespace and belong to the previous field. Field
order is preserved when a block is rewritten.
"""

from __future__ import annotations

import logging
from pathlib import Path

from raphael_imagegen.errors import FatalError

logger = logging.getLogger(__name__)

# Fields every generated control block carries
REQUIRED_FIELDS = ("Package", "Version", "Architecture", "Maintainer", "Description")

DEFAULT_MAINTAINER = "raphael-imagegen <noreply@localhost>"

DESCRIPTIONS = {
    "linux": "Linux kernel image and modules for {device}",
    "firmware": "Firmware files for {device}",
    "alsa": "ALSA UCM configuration for {device}",
}


class ControlError(FatalError):
    """Raised when a control block cannot be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="control_invalid")


def parse_control(text: str) -> dict[str, str]:
    """Parse a control block into an ordered field mapping.

    Args:
        text: Control file contents.

    Returns:
        Mapping of field name to value (continuation lines joined with
        newlines, leading space preserved).

    Raises:
        ControlError: On a line that is neither a field nor a continuation.
    """
    fields: dict[str, str] = {}
    current: str | None = None
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        if line[0] in " \t":
            if current is None:
                raise ControlError(f"Continuation line without a field (line {lineno})")
            fields[current] += "\n" + line
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ControlError(f"Malformed control line {lineno}: {line!r}")
        current = name.strip()
        fields[current] = value.strip()
    return fields


def render_control(fields: dict[str, str]) -> str:
    """Render a field mapping back into a control block."""
    lines = [f"{name}: {value}" for name, value in fields.items()]
    return "\n".join(lines) + "\n"


def default_control(component: str, device: str, architecture: str) -> dict[str, str]:
    """Return a minimal control block for a component."""
    description = DESCRIPTIONS.get(component, "{device} support files")
    return {
        "Package": f"{component}-{device}",
        "Version": "0",
        "Architecture": architecture,
        "Maintainer": DEFAULT_MAINTAINER,
        "Description": description.format(device=device),
    }


def set_version(fields: dict[str, str], version: str) -> dict[str, str]:
    """Return a copy of fields with Version replaced."""
    updated = dict(fields)
    updated["Version"] = version
    return updated


def prepare_control(
    template: Path | None,
    component: str,
    device: str,
    version: str,
    architecture: str,
) -> dict[str, str]:
    """Load (or synthesize) a control block and stamp version and architecture.

    Args:
        template: Existing DEBIAN/control file, or None.
        component: Package component name.
        device: Device name.
        version: Version to write.
        architecture: Architecture to write.

    Returns:
        Control fields ready to be written.
    """
    fields = default_control(component, device, architecture)
    if template is not None and template.is_file():
        fields.update(parse_control(template.read_text(encoding="utf-8")))
    else:
        logger.info("No control template for %s-%s; generating one", component, device)
    fields = set_version(fields, version)
    fields["Architecture"] = architecture
    return fields


__all__ = [
    "ControlError",
    "default_control",
    "parse_control",
    "prepare_control",
    "render_control",
    "set_version",
]
