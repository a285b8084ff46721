"""Tests for the error taxonomy."""

from raphael_imagegen.errors import (
    CommandError,
    FatalError,
    MissingArtifactError,
    RetryableError,
    RetryExhaustedError,
    TransitionError,
)
from raphael_imagegen.types import ErrorKind, StageName


class TestAttribution:
    """Test stage/operation attribution."""

    def test_attach_sets_missing_fields(self) -> None:
        error = FatalError("boom").attach(StageName.ROOTFS, "mount image")
        assert error.stage == StageName.ROOTFS
        assert error.operation == "mount image"

    def test_first_attribution_wins(self) -> None:
        error = FatalError("boom", operation="format image")
        error.attach(StageName.ROOTFS, "create image")
        error.attach(StageName.BOOT, "write output")
        assert error.stage == StageName.ROOTFS
        assert error.operation == "format image"

    def test_report(self) -> None:
        error = FatalError("disk full").attach(StageName.BOOT, "write output")
        assert error.report() == (
            "Stage 'boot' failed during 'write output': disk full"
        )

    def test_report_without_attribution(self) -> None:
        assert "Stage 'unknown' failed during 'unknown'" in FatalError("x").report()


class TestOutputTail:
    """Test output_tail."""

    def test_keeps_last_lines(self) -> None:
        output = "\n".join(f"line {i}" for i in range(100)) + "\n"
        error = CommandError("make", 2, output=output)
        tail = error.output_tail(lines=3)
        assert tail == "line 97\nline 98\nline 99"

    def test_no_output(self) -> None:
        assert CommandError("make", 2).output_tail() == ""


class TestErrorKinds:
    """Test error kinds and specialised errors."""

    def test_kinds(self) -> None:
        assert FatalError("x").kind == ErrorKind.FATAL
        assert RetryableError("x").kind == ErrorKind.RETRYABLE

    def test_command_error(self) -> None:
        error = CommandError("mkfs.ext4 -F root.img", 1, output="mkfs failed")
        assert error.code == "command_failed"
        assert error.exit_code == 1
        assert "mkfs.ext4 -F root.img" in error.message
        assert "(command: mkfs.ext4 -F root.img)" in error.report()

    def test_retry_exhausted_keeps_last_output(self) -> None:
        last = RetryableError("timed out", code="timeout", output="curl: (28)")
        error = RetryExhaustedError("download base", 3, last)
        assert isinstance(error, FatalError)
        assert error.code == "retry_exhausted"
        assert error.operation == "download base"
        assert error.attempts == 3
        assert error.output == "curl: (28)"
        assert "after 3 attempt(s)" in error.message

    def test_missing_artifact(self) -> None:
        error = MissingArtifactError("/out/Image.gz", "kernel image")
        assert error.code == "missing_artifact"
        assert error.path == "/out/Image.gz"
        assert "kernel image" in error.message

    def test_transition_error(self) -> None:
        error = TransitionError("kernel", "not_started", "built")
        assert error.code == "illegal_transition"
        assert "not_started -> built" in error.message
