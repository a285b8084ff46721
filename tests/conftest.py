"""Shared fixtures.

FakeRunner replaces every external tool with a small simulation of its
effect on the filesystem, so stages run end to end without root, loop
devices or a cross compiler:

- loop mounts copy a per-image backing directory into the mount point and
  write it back on unmount (read-only mounts are discarded)
- dpkg-deb writes a gzip tarball of the staging root, which ``dpkg -i``
  inside a chroot unpacks into the target
- make, git, blkid and update-initramfs create the files a real build
  would leave behind
"""

import shutil
import tarfile
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from raphael_imagegen.config import Settings
from raphael_imagegen.mounts import MountManager
from raphael_imagegen.pipeline.stage import PipelineContext
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.unwind import UnwindStack

FAKE_UUID = "3f6e1c2a-8d4b-4e0f-9a7c-5b2d1e0f4a6c"
FAKE_RELEASE = "6.18.2-sm8150"


class FakeRunner(CommandRunner):
    """CommandRunner that simulates the host tools.

    Args:
        backing_root: Directory holding the contents of loop-mounted images.
        release: Release string reported by ``make kernelrelease``.
        uuid: UUID reported by blkid.
        produce_dtb: Whether the kernel compile leaves a device tree blob.
    """

    def __init__(
        self,
        backing_root: Path,
        release: str = FAKE_RELEASE,
        uuid: str = FAKE_UUID,
        produce_dtb: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.backing_root = backing_root
        self.release = release
        self.uuid = uuid
        self.uuids: dict[str, str] = {}
        self.produce_dtb = produce_dtb
        self.calls: list[list[str]] = []
        self.failures: dict[str, tuple[int, str]] = {}
        self.hooks: list[tuple[str, Callable[[list[str]], None]]] = []
        self.loop_mounts: dict[str, tuple[str, bool]] = {}
        self.unavailable: set[str] = set()

    def fail(self, fragment: str, exit_code: int = 1, output: str = "") -> None:
        """Make every command containing fragment exit with exit_code."""
        self.failures[fragment] = (exit_code, output)

    def on(self, fragment: str, hook: Callable[[list[str]], None]) -> None:
        """Call hook(args) before simulating commands containing fragment."""
        self.hooks.append((fragment, hook))

    def commands(self, fragment: str) -> list[list[str]]:
        return [c for c in self.calls if fragment in " ".join(c)]

    def backing(self, image: Path | str) -> Path:
        return self.backing_root / Path(image).name

    def _execute(self, args, *, cwd, env, timeout, input):
        self.calls.append(list(args))
        joined = " ".join(args)
        for fragment, hook in self.hooks:
            if fragment in joined:
                hook(list(args))
        for fragment, (code, output) in self.failures.items():
            if fragment in joined:
                return code, output
        return self._simulate(list(args), cwd)

    def _simulate(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        tool = args[0]
        if tool == "chroot":
            return self._simulate_chroot(Path(args[1]), args[2:])
        if tool == "truncate":
            path = Path(args[-1])
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"\0" * 4096)
        elif tool in ("mkfs.ext4", "mkfs.vfat"):
            backing = self.backing(args[-1])
            if backing.exists():
                shutil.rmtree(backing)
            backing.mkdir(parents=True)
        elif tool == "blkid":
            return 0, self.uuids.get(args[-1], self.uuid) + "\n"
        elif tool == "mount":
            self._mount(args)
        elif tool == "umount":
            self._umount(args[-1])
        elif tool == "git":
            return self._simulate_git(args)
        elif tool == "make":
            return self._simulate_make(args, cwd)
        elif tool == "dpkg-deb":
            root, out = Path(args[-2]), Path(args[-1])
            with tarfile.open(out, "w:gz") as tar:
                for entry in sorted(root.iterdir()):
                    if entry.name != "DEBIAN":
                        tar.add(entry, arcname=entry.name)
        return 0, ""

    def _mount(self, args: list[str]) -> None:
        if "--bind" in args:
            return
        options, image, mount_point = args[2], args[3], args[4]
        backing = self.backing(image)
        backing.mkdir(parents=True, exist_ok=True)
        Path(mount_point).mkdir(parents=True, exist_ok=True)
        shutil.copytree(backing, mount_point, symlinks=True, dirs_exist_ok=True)
        self.loop_mounts[mount_point] = (image, "ro" in options.split(","))

    def _umount(self, mount_point: str) -> None:
        if mount_point not in self.loop_mounts:
            return
        image, read_only = self.loop_mounts.pop(mount_point)
        target = Path(mount_point)
        if not read_only:
            backing = self.backing(image)
            shutil.rmtree(backing)
            shutil.copytree(target, backing, symlinks=True)
        for entry in list(target.iterdir()):
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _simulate_git(self, args: list[str]) -> tuple[int, str]:
        if args[1] == "clone":
            Path(args[-1]).mkdir(parents=True, exist_ok=True)
        elif "log" in args:
            return 0, "abc1234 arm64: dts: qcom: sm8150-xiaomi-raphael\n"
        return 0, ""

    def _simulate_make(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        assert cwd is not None
        targets = [a for a in args[1:] if "=" not in a and not a.startswith("-j")]
        if "kernelrelease" in targets:
            return 0, f"{self.release}\n"
        if "modules_install" in targets:
            install = next(a for a in args if a.startswith("INSTALL_MOD_PATH="))
            modules = Path(install.split("=", 1)[1]) / "lib" / "modules" / self.release
            (modules / "kernel").mkdir(parents=True, exist_ok=True)
            (modules / "kernel" / "panel.ko").write_bytes(b"\x7fELF module")
            (modules / "build").symlink_to(cwd)
            return 0, ""
        if any(t.endswith("defconfig") for t in targets):
            (cwd / ".config").write_text("CONFIG_ARM64=y\n")
            return 0, ""
        if not targets:
            image = cwd / "arch/arm64/boot/Image.gz"
            image.parent.mkdir(parents=True, exist_ok=True)
            image.write_bytes(b"\x1f\x8b kernel image")
            if self.produce_dtb:
                dtb = cwd / "arch/arm64/boot/dts/qcom/sm8150-xiaomi-raphael.dtb"
                dtb.parent.mkdir(parents=True, exist_ok=True)
                dtb.write_bytes(b"\xd0\x0d\xfe\xed dtb")
        return 0, ""

    def _simulate_chroot(self, root: Path, args: list[str]) -> tuple[int, str]:
        if args[:2] == ["apt-get", "install"]:
            missing = [a for a in args if a in self.unavailable]
            if missing:
                return 100, f"E: Unable to locate package {missing[0]}\n"
        elif args[:2] == ["dpkg", "-i"]:
            for archive in args[2:]:
                with tarfile.open(root / archive.lstrip("/"), "r:gz") as tar:
                    tar.extractall(root, filter="fully_trusted")
        elif args[0] == "update-initramfs":
            boot = root / "boot"
            boot.mkdir(parents=True, exist_ok=True)
            (boot / f"initrd.img-{args[-1]}").write_bytes(b"initramfs")
        return 0, ""


@pytest.fixture
def fake_runner(tmp_path: Path) -> FakeRunner:
    return FakeRunner(tmp_path / "backing")


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Factory for settings rooted in tmp_path."""

    def factory(**overrides) -> Settings:
        values = {
            "work_dir": tmp_path / "work",
            "output_dir": tmp_path / "output",
            "download_cache_dir": tmp_path / "downloads",
            "ccache_dir": tmp_path / "ccache",
            "payload_dir": tmp_path / "payload",
            "db_url": "sqlite:///:memory:",
            "kernel_version": "6.18",
            "retry_delay": 0,
            "cache_enabled": False,
            "boot_template_url": "",
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def stack() -> UnwindStack:
    return UnwindStack()


@pytest.fixture
def make_context(fake_runner: FakeRunner, stack: UnwindStack, tmp_path: Path):
    """Factory for a pipeline context driven by the fake runner."""
    clients: list[httpx.Client] = []

    def factory(settings: Settings) -> PipelineContext:
        client = httpx.Client()
        clients.append(client)
        return PipelineContext(
            settings=settings,
            runner=fake_runner,
            stack=stack,
            mounts=MountManager(fake_runner, stack, tmp_path / "binfmt"),
            http=client,
            sleep=lambda seconds: None,
        )

    yield factory
    for client in clients:
        client.close()
