"""Tests for the unwind stack."""

import pytest

from raphael_imagegen.unwind import CleanupError, UnwindStack


class TestUnwindStack:
    """Tests for push/release/unwind."""

    def test_unwind_is_lifo(self):
        stack = UnwindStack()
        order: list[str] = []
        for name in ("loop", "dev", "proc", "shim"):
            stack.push(name, lambda name=name: order.append(name))
        assert stack.depth == 4
        assert stack.pending() == ["loop", "dev", "proc", "shim"]

        assert stack.unwind() == []
        assert order == ["shim", "proc", "dev", "loop"]
        assert stack.balanced

    def test_release_out_of_scope_releases_newer_first(self):
        """Releasing an older entry should first release everything after it."""
        stack = UnwindStack()
        order: list[str] = []
        outer = stack.push("outer", lambda: order.append("outer"))
        stack.push("inner", lambda: order.append("inner"))
        stack.release(outer)
        assert order == ["inner", "outer"]
        assert stack.depth == 0

    def test_release_twice_is_noop(self):
        stack = UnwindStack()
        calls: list[int] = []
        action = stack.push("x", lambda: calls.append(1))
        stack.release(action)
        stack.release(action)
        assert calls == [1]
        assert stack.released == 1

    def test_unwind_continues_past_failures(self):
        stack = UnwindStack()
        order: list[str] = []

        def broken() -> None:
            raise OSError("target is busy")

        stack.push("first", lambda: order.append("first"))
        stack.push("busy", broken)
        stack.push("last", lambda: order.append("last"))

        failures = stack.unwind()
        assert order == ["last", "first"]
        assert [desc for desc, _ in failures] == ["busy"]
        assert stack.depth == 0
        assert not stack.balanced
        assert stack.failures[0][0] == "busy"

    def test_release_failure_raises_cleanup_error(self):
        stack = UnwindStack()

        def broken() -> None:
            raise OSError("busy")

        action = stack.push("busy", broken)
        with pytest.raises(CleanupError) as exc_info:
            stack.release(action)
        assert exc_info.value.code == "cleanup_failed"


class TestScoped:
    """Tests for scoped acquisitions."""

    def test_released_on_normal_exit(self):
        stack = UnwindStack()
        released: list[str] = []
        with stack.scoped("mount", lambda: "res", released.append) as resource:
            assert resource == "res"
            assert stack.depth == 1
        assert released == ["res"]
        assert stack.balanced

    def test_released_on_exception(self):
        stack = UnwindStack()
        released: list[str] = []
        with pytest.raises(RuntimeError, match="stage failed"):
            with stack.scoped("mount", lambda: "res", released.append):
                raise RuntimeError("stage failed")
        assert released == ["res"]
        assert stack.balanced

    def test_failed_acquire_registers_nothing(self):
        stack = UnwindStack()

        def acquire() -> str:
            raise OSError("mount: permission denied")

        with pytest.raises(OSError):
            with stack.scoped("mount", acquire, lambda r: None):
                pass
        assert stack.depth == 0
        assert stack.acquired == 0

    def test_release_failure_does_not_mask_original_error(self):
        stack = UnwindStack()

        def release(resource: str) -> None:
            raise OSError("umount: target is busy")

        with pytest.raises(RuntimeError, match="original"):
            with stack.scoped("mount", lambda: "res", release):
                raise RuntimeError("original")
        assert stack.failures[0][0] == "mount"

    def test_nested_scopes_release_in_reverse(self):
        stack = UnwindStack()
        order: list[str] = []
        with stack.scoped("a", lambda: "a", order.append):
            with stack.scoped("b", lambda: "b", order.append):
                pass
            assert order == ["b"]
        assert order == ["b", "a"]
