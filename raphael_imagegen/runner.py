"""Runner for external build tools.

This module handles:
- Executing external commands with subprocess
- Capturing combined stdout/stderr and appending it to a stage log file
- Enforcing command timeouts
- Converting failures into CommandError with the tool's raw output

All stages talk to git, make, dpkg-deb, mount, chroot and friends
through a CommandRunner so the whole pipeline can be driven by a fake
runner in tests.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from raphael_imagegen.errors import CommandError

logger = logging.getLogger(__name__)

# Environment applied to every command run inside the target chroot
CHROOT_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "DEBIAN_FRONTEND": "noninteractive",
    "LC_ALL": "C",
}


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code.
        output: Combined stdout/stderr.
        started_at: Start time.
        finished_at: Finish time.
    """

    command: str
    exit_code: int
    output: str
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class CommandRunner:
    """Execute external commands with logging and timeouts.

    Args:
        log_path: File that receives command headers and output.
        default_timeout: Timeout in seconds when a call does not give one.
        env: Extra environment variables applied to every command.
    """

    def __init__(
        self,
        log_path: Path | None = None,
        default_timeout: int | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.log_path = log_path
        self.default_timeout = default_timeout
        self.env = dict(env or {})

    def with_log(self, log_path: Path | None) -> CommandRunner:
        """Return a runner sharing this configuration but logging elsewhere."""
        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.log_path = log_path
        return clone

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: int | None = None,
        check: bool = True,
        input: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            cmd: Command as a list of arguments.
            cwd: Working directory.
            env: Environment overrides for this call.
            timeout: Timeout in seconds (falls back to default_timeout).
            check: Raise CommandError on a non-zero exit code.
            input: Text written to the command's stdin.

        Returns:
            CommandResult with exit code and output.

        Raises:
            CommandError: If the command fails (when check is set), times
                out, or cannot be started.
        """
        args = [str(c) for c in cmd]
        cmd_str = shlex.join(args)
        effective_timeout = timeout if timeout is not None else self.default_timeout

        merged_env: dict[str, str] | None = None
        if self.env or env:
            merged_env = dict(os.environ)
            merged_env.update(self.env)
            if env:
                merged_env.update(env)

        logger.debug("Executing: %s", cmd_str)
        self._log_header(cmd_str, cwd)

        started_at = datetime.now(timezone.utc)
        try:
            exit_code, output = self._execute(
                args, cwd=cwd, env=merged_env, timeout=effective_timeout, input=input
            )
        except subprocess.TimeoutExpired as e:
            output = _decode(e.output)
            self._log_output(output, f"TIMEOUT after {effective_timeout} seconds")
            raise CommandError(
                cmd_str,
                exit_code=-1,
                output=output,
                code="command_timeout",
                message=f"Command timed out after {effective_timeout}s: {cmd_str}",
            ) from e
        except OSError as e:
            self._log_output("", f"Failed to execute: {e}")
            raise CommandError(
                cmd_str,
                exit_code=None,
                code="execution_error",
                message=f"Failed to execute {cmd_str}: {e}",
            ) from e
        finished_at = datetime.now(timezone.utc)

        self._log_output(output, f"Exit code: {exit_code}")
        result = CommandResult(
            command=cmd_str,
            exit_code=exit_code,
            output=output,
            started_at=started_at,
            finished_at=finished_at,
        )

        if check and exit_code != 0:
            logger.error("Command failed (exit %d): %s", exit_code, cmd_str)
            raise CommandError(cmd_str, exit_code=exit_code, output=output)
        return result

    def chroot(
        self,
        root: Path,
        cmd: Sequence[str],
        *,
        check: bool = True,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a command inside a chroot with a non-interactive environment."""
        return self.run(
            ["chroot", str(root), *cmd],
            env=CHROOT_ENV,
            check=check,
            timeout=timeout,
        )

    def _execute(
        self,
        args: list[str],
        *,
        cwd: Path | None,
        env: dict[str, str] | None,
        timeout: int | None,
        input: str | None,
    ) -> tuple[int, str]:
        result = subprocess.run(
            args,
            cwd=cwd,
            env=env,
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
        return result.returncode, result.stdout or ""

    def _log_header(self, cmd_str: str, cwd: Path | None) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {datetime.now(timezone.utc).isoformat()}\n")
            if cwd is not None:
                log_file.write(f"# CWD: {cwd}\n")

    def _log_output(self, output: str, trailer: str) -> None:
        if self.log_path is None:
            return
        with self.log_path.open("a", encoding="utf-8") as log_file:
            if output:
                log_file.write(output)
                if not output.endswith("\n"):
                    log_file.write("\n")
            log_file.write(f"# {trailer}\n\n")


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


__all__ = ["CHROOT_ENV", "CommandResult", "CommandRunner"]
