"""Mount guards for the isolated build environment.

This module handles:
- Loop-mounting filesystem images
- Bind-mounting host /dev, /dev/pts, /proc and /sys into a target root
- Registering and deregistering the qemu-aarch64 binfmt_misc shim

Every acquisition is registered on an UnwindStack, so it is released in
LIFO order on normal exit, on a fatal error, and on process termination.
"""

from __future__ import annotations

import logging
import platform
import shutil
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path

from raphael_imagegen.errors import FatalError
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.types import MountKind, MountSession
from raphael_imagegen.unwind import UnwindStack

logger = logging.getLogger(__name__)

# Host directories bind-mounted into the target, in mount order
HOST_BIND_DIRS = ("dev", "dev/pts", "proc", "sys")

BINFMT_DIR = Path("/proc/sys/fs/binfmt_misc")
QEMU_STATIC_NAME = "qemu-aarch64-static"

# binfmt_misc registrations for aarch64 executables and the dynamic loader.
# Escapes are interpreted by the kernel, so they are written literally.
BINFMT_ENTRIES = {
    "aarch64": (
        r":aarch64:M::\x7fELF\x02\x01\x01\x00\x00\x00\x00\x00\x00\x00\x00\x00"
        r"\x02\x00\xb7:\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff"
        r"\xff\xff\xfe\xff\xff:/qemu-aarch64-static:"
    ),
    "aarch64ld": (
        r":aarch64ld:M::\x7fELF\x02\x01\x01\x03\x00\x00\x00\x00\x00\x00\x00\x00"
        r"\x03\x00\xb7:\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff\xff"
        r"\xff\xff\xfe\xff\xff:/qemu-aarch64-static:"
    ),
}

TARGET_MACHINES = ("aarch64", "arm64")


class MountError(FatalError):
    """Raised when a mount or shim operation fails."""

    def __init__(self, message: str, code: str = "mount_error") -> None:
        super().__init__(message, code=code)


def host_needs_shim(machine: str | None = None) -> bool:
    """Return True if target binaries cannot run natively on this host."""
    machine = (machine or platform.machine()).lower()
    return machine not in TARGET_MACHINES


class MountManager:
    """Create scoped mounts and shim registrations.

    Args:
        runner: Command runner for mount/umount.
        stack: Unwind stack receiving every release action.
        binfmt_dir: binfmt_misc control directory.
    """

    def __init__(
        self,
        runner: CommandRunner,
        stack: UnwindStack,
        binfmt_dir: Path = BINFMT_DIR,
    ) -> None:
        self.runner = runner
        self.stack = stack
        self.binfmt_dir = binfmt_dir
        self.sessions: list[MountSession] = []

    def active_sessions(self) -> list[MountSession]:
        return [s for s in self.sessions if s.active]

    @contextmanager
    def loop_mount(
        self,
        image: Path,
        mount_point: Path,
        *,
        read_only: bool = False,
    ) -> Iterator[MountSession]:
        """Loop-mount a filesystem image at a mount point.

        Args:
            image: Image file to mount.
            mount_point: Directory to mount on (created if missing).
            read_only: Mount read-only.

        Yields:
            Active MountSession.
        """
        options = "loop,ro" if read_only else "loop"
        session = MountSession(
            mount_point=mount_point, source=str(image), kind=MountKind.LOOP
        )

        def acquire() -> MountSession:
            mount_point.mkdir(parents=True, exist_ok=True)
            self.runner.run(["mount", "-o", options, str(image), str(mount_point)])
            session.active = True
            self.sessions.append(session)
            logger.info("Mounted %s at %s", image.name, mount_point)
            return session

        with self.stack.scoped(
            f"loop mount {mount_point}", acquire, self._unmount
        ) as active:
            yield active

    @contextmanager
    def bind_mount(self, source: Path, target: Path) -> Iterator[MountSession]:
        """Bind-mount a host directory into the target root."""
        session = MountSession(
            mount_point=target, source=str(source), kind=MountKind.BIND
        )

        def acquire() -> MountSession:
            target.mkdir(parents=True, exist_ok=True)
            self.runner.run(["mount", "--bind", str(source), str(target)])
            session.active = True
            self.sessions.append(session)
            logger.debug("Bind-mounted %s at %s", source, target)
            return session

        with self.stack.scoped(
            f"bind mount {target}", acquire, self._unmount
        ) as active:
            yield active

    @contextmanager
    def host_binds(
        self, root: Path, host_root: Path = Path("/")
    ) -> Iterator[list[MountSession]]:
        """Bind-mount the host kernel interfaces into a target root.

        Each directory is its own scoped acquisition; they are unwound in
        reverse mount order.
        """
        with ExitStack() as binds:
            sessions = [
                binds.enter_context(self.bind_mount(host_root / rel, root / rel))
                for rel in HOST_BIND_DIRS
            ]
            yield sessions

    @contextmanager
    def foreign_binary_shim(self, root: Path, qemu_binary: Path) -> Iterator[list[str]]:
        """Install qemu-aarch64-static into the target and register binfmt.

        Entries that are already registered on the host are left alone and
        are not deregistered on release.

        Args:
            root: Target root filesystem.
            qemu_binary: Host path of the static qemu binary.

        Yields:
            Names of the binfmt entries registered by this call.
        """
        target_binary = root / QEMU_STATIC_NAME

        def acquire() -> list[str]:
            if not qemu_binary.is_file():
                raise MountError(
                    f"qemu binary not found: {qemu_binary}", code="shim_missing"
                )
            shutil.copy2(qemu_binary, target_binary)
            target_binary.chmod(0o755)
            registered: list[str] = []
            try:
                for name, line in BINFMT_ENTRIES.items():
                    if (self.binfmt_dir / name).exists():
                        logger.info("binfmt entry %s already registered", name)
                        continue
                    (self.binfmt_dir / "register").write_text(line)
                    registered.append(name)
            except OSError as e:
                self._deregister(registered, target_binary)
                raise MountError(
                    f"Failed to register binfmt handler: {e}", code="shim_register"
                ) from e
            session = MountSession(
                mount_point=target_binary,
                source=str(qemu_binary),
                kind=MountKind.SHIM,
                active=True,
            )
            self.sessions.append(session)
            logger.info("Registered foreign-binary shim (%s)", ", ".join(registered))
            return registered

        def release(registered: list[str]) -> None:
            self._deregister(registered, target_binary)
            for session in self.sessions:
                if session.kind == MountKind.SHIM:
                    if session.mount_point == target_binary:
                        session.active = False

        with self.stack.scoped(
            f"binfmt shim {root}", acquire, release
        ) as registered:
            yield registered

    def _deregister(self, registered: list[str], target_binary: Path) -> None:
        errors: list[str] = []
        for name in reversed(registered):
            try:
                (self.binfmt_dir / name).write_text("-1")
            except OSError as e:
                errors.append(f"{name}: {e}")
        target_binary.unlink(missing_ok=True)
        if errors:
            raise MountError(
                f"Failed to deregister binfmt handlers: {'; '.join(errors)}",
                code="shim_deregister",
            )
        logger.info("Deregistered foreign-binary shim")

    def _unmount(self, session: MountSession) -> None:
        self.runner.run(["umount", str(session.mount_point)])
        session.active = False
        logger.debug("Unmounted %s", session.mount_point)


__all__ = [
    "BINFMT_ENTRIES",
    "HOST_BIND_DIRS",
    "MountError",
    "MountManager",
    "QEMU_STATIC_NAME",
    "host_needs_shim",
]
