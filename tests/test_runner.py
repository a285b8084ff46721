"""Tests for runner module.

These tests execute real (harmless) shell commands.
"""

from pathlib import Path

import pytest

from raphael_imagegen.errors import CommandError
from raphael_imagegen.runner import CHROOT_ENV, CommandRunner


class TestCommandRunner:
    """Tests for CommandRunner.run."""

    def test_captures_output(self):
        result = CommandRunner().run(["sh", "-c", "echo out; echo err >&2"])
        assert result.success
        assert result.exit_code == 0
        assert "out" in result.output
        assert "err" in result.output
        assert result.duration >= 0

    def test_failure_raises_with_output(self):
        """A non-zero exit should raise CommandError carrying the output."""
        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(["sh", "-c", "echo broken build; exit 3"])
        error = exc_info.value
        assert error.exit_code == 3
        assert "broken build" in error.output
        assert error.code == "command_failed"
        assert "sh -c" in error.command

    def test_check_false_returns_result(self):
        result = CommandRunner().run(["sh", "-c", "exit 4"], check=False)
        assert not result.success
        assert result.exit_code == 4

    def test_timeout(self):
        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(["sleep", "5"], timeout=1)
        assert exc_info.value.code == "command_timeout"
        assert exc_info.value.exit_code == -1

    def test_missing_executable(self):
        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(["definitely-not-a-real-tool-xyz"])
        assert exc_info.value.code == "execution_error"
        assert exc_info.value.exit_code is None

    def test_environment_overrides(self):
        runner = CommandRunner(env={"RAPHAEL_TEST_A": "a"})
        result = runner.run(
            ["sh", "-c", 'echo "$RAPHAEL_TEST_A$RAPHAEL_TEST_B"'],
            env={"RAPHAEL_TEST_B": "b"},
        )
        assert result.output.strip() == "ab"

    def test_cwd(self, tmp_path: Path):
        result = CommandRunner().run(["pwd"], cwd=tmp_path)
        assert Path(result.output.strip()).resolve() == tmp_path.resolve()

    def test_input(self):
        result = CommandRunner().run(["cat"], input="hello\n")
        assert result.output == "hello\n"


class TestCommandLog:
    """Tests for per-stage log files."""

    def test_writes_header_output_and_exit_code(self, tmp_path: Path):
        log = tmp_path / "logs" / "kernel.log"
        CommandRunner(log_path=log).run(["echo", "compiled"])
        text = log.read_text()
        assert "# Command: echo compiled" in text
        assert "compiled" in text
        assert "# Exit code: 0" in text

    def test_failure_logged(self, tmp_path: Path):
        log = tmp_path / "rootfs.log"
        with pytest.raises(CommandError):
            CommandRunner(log_path=log).run(["sh", "-c", "echo nope; exit 1"])
        text = log.read_text()
        assert "nope" in text
        assert "# Exit code: 1" in text

    def test_with_log_shares_configuration(self, tmp_path: Path):
        base = CommandRunner(default_timeout=30, env={"A": "1"})
        clone = base.with_log(tmp_path / "boot.log")
        assert clone.default_timeout == 30
        assert clone.env == {"A": "1"}
        assert clone.log_path == tmp_path / "boot.log"
        assert base.log_path is None

    def test_no_log_file_without_path(self, tmp_path: Path):
        CommandRunner().with_log(None).run(["true"], cwd=tmp_path)
        assert list(tmp_path.iterdir()) == []


class TestChroot:
    """Tests for CommandRunner.chroot composition."""

    def test_chroot_prefix_and_environment(self, tmp_path: Path):
        seen: dict = {}

        class Recorder(CommandRunner):
            def _execute(self, args, *, cwd, env, timeout, input):
                seen["args"] = args
                seen["env"] = env
                return 0, ""

        Recorder().chroot(tmp_path, ["apt-get", "update"], timeout=10)
        assert seen["args"] == ["chroot", str(tmp_path), "apt-get", "update"]
        for key, value in CHROOT_ENV.items():
            assert seen["env"][key] == value
