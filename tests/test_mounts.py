"""Tests for mount guards and the foreign-binary shim."""

from pathlib import Path

import pytest

from conftest import FakeRunner
from raphael_imagegen.errors import CommandError
from raphael_imagegen.mounts import (
    BINFMT_ENTRIES,
    HOST_BIND_DIRS,
    QEMU_STATIC_NAME,
    MountError,
    MountManager,
    host_needs_shim,
)
from raphael_imagegen.unwind import UnwindStack


@pytest.fixture
def manager(
    fake_runner: FakeRunner, stack: UnwindStack, tmp_path: Path
) -> MountManager:
    binfmt = tmp_path / "binfmt"
    binfmt.mkdir()
    return MountManager(fake_runner, stack, binfmt)


@pytest.fixture
def qemu_binary(tmp_path: Path) -> Path:
    path = tmp_path / "downloads" / QEMU_STATIC_NAME
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x7fELF qemu")
    return path


class TestHostNeedsShim:
    """Tests for host_needs_shim."""

    @pytest.mark.parametrize("machine", ["x86_64", "AMD64", "ppc64le"])
    def test_foreign_hosts(self, machine):
        assert host_needs_shim(machine) is True

    @pytest.mark.parametrize("machine", ["aarch64", "arm64", "AARCH64"])
    def test_native_hosts(self, machine):
        assert host_needs_shim(machine) is False


class TestLoopMount:
    """Tests for MountManager.loop_mount."""

    def test_mount_and_unmount(self, manager, fake_runner, stack, tmp_path):
        image = tmp_path / "root.img"
        mount_point = tmp_path / "rootdir"
        with manager.loop_mount(image, mount_point) as session:
            assert session.active
            assert stack.depth == 1
            assert fake_runner.commands("mount -o loop")
        assert not session.active
        assert stack.balanced
        assert fake_runner.calls[-1] == ["umount", str(mount_point)]

    def test_read_only_option(self, manager, fake_runner, tmp_path):
        image, mount_point = tmp_path / "root.img", tmp_path / "mnt"
        with manager.loop_mount(image, mount_point, read_only=True):
            pass
        assert fake_runner.commands("mount -o loop,ro")

    def test_failed_mount_leaves_nothing_registered(
        self, manager, fake_runner, stack, tmp_path
    ):
        fake_runner.fail("mount -o loop", exit_code=32, output="mount: wrong fs type")
        with pytest.raises(CommandError) as exc_info:
            with manager.loop_mount(tmp_path / "root.img", tmp_path / "mnt"):
                pass
        assert "wrong fs type" in exc_info.value.output
        assert stack.depth == 0
        assert not fake_runner.commands("umount")

    def test_unmounted_when_block_fails(self, manager, fake_runner, stack, tmp_path):
        with pytest.raises(RuntimeError):
            with manager.loop_mount(tmp_path / "root.img", tmp_path / "mnt"):
                raise RuntimeError("chroot step failed")
        assert fake_runner.commands("umount")
        assert stack.balanced
        assert manager.active_sessions() == []


class TestHostBinds:
    """Tests for bind-mounting host interfaces."""

    def test_binds_in_order_and_unwinds_in_reverse(
        self, manager, fake_runner, stack, tmp_path
    ):
        root = tmp_path / "rootdir"
        with manager.host_binds(root) as sessions:
            assert [s.mount_point for s in sessions] == [
                root / rel for rel in HOST_BIND_DIRS
            ]
            assert stack.depth == len(HOST_BIND_DIRS)
        unmounted = [c[-1] for c in fake_runner.commands("umount")]
        assert unmounted == [str(root / rel) for rel in reversed(HOST_BIND_DIRS)]
        assert stack.balanced

    def test_partial_bind_failure_releases_earlier_binds(
        self, manager, fake_runner, stack, tmp_path
    ):
        root = tmp_path / "rootdir"
        fake_runner.fail(f"--bind /proc {root / 'proc'}")
        with pytest.raises(CommandError):
            with manager.host_binds(root):
                pass
        unmounted = [c[-1] for c in fake_runner.commands("umount")]
        assert unmounted == [str(root / "dev/pts"), str(root / "dev")]
        assert stack.balanced


class TestForeignBinaryShim:
    """Tests for the qemu binfmt shim."""

    def test_register_and_deregister(self, manager, stack, tmp_path, qemu_binary):
        root = tmp_path / "rootdir"
        root.mkdir()
        binfmt = manager.binfmt_dir
        with manager.foreign_binary_shim(root, qemu_binary) as registered:
            assert registered == list(BINFMT_ENTRIES)
            assert (root / QEMU_STATIC_NAME).read_bytes() == b"\x7fELF qemu"
            assert (binfmt / "register").read_text() == BINFMT_ENTRIES["aarch64ld"]
            assert len(manager.active_sessions()) == 1
        assert not (root / QEMU_STATIC_NAME).exists()
        assert (binfmt / "aarch64").read_text() == "-1"
        assert (binfmt / "aarch64ld").read_text() == "-1"
        assert manager.active_sessions() == []
        assert stack.balanced

    def test_existing_entries_left_alone(self, manager, tmp_path, qemu_binary):
        root = tmp_path / "rootdir"
        root.mkdir()
        (manager.binfmt_dir / "aarch64").write_text("enabled")
        with manager.foreign_binary_shim(root, qemu_binary) as registered:
            assert registered == ["aarch64ld"]
        assert (manager.binfmt_dir / "aarch64").read_text() == "enabled"

    def test_missing_qemu_binary(self, manager, stack, tmp_path):
        root = tmp_path / "rootdir"
        root.mkdir()
        with pytest.raises(MountError) as exc_info:
            with manager.foreign_binary_shim(root, tmp_path / "nope"):
                pass
        assert exc_info.value.code == "shim_missing"
        assert stack.depth == 0
