"""Error taxonomy for the build pipeline.

Every error carries a machine-readable ``code`` (as elsewhere in this
package) plus the stage and operation it happened in, so that the
failure report can always attribute a fatal error.
"""

from __future__ import annotations

from raphael_imagegen.types import ErrorKind, StageName

# Number of trailing output lines kept in failure reports
OUTPUT_TAIL_LINES = 40


class PipelineError(Exception):
    """Base error for pipeline operations."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        code: str = "pipeline_error",
        *,
        stage: StageName | None = None,
        operation: str | None = None,
        output: str | None = None,
    ) -> None:
        """Initialize PipelineError.

        Args:
            message: Error description.
            code: Machine-readable error code.
            stage: Stage the error happened in, if already known.
            operation: Operation within the stage, if already known.
            output: Captured tool output, shown as a tail in reports.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.operation = operation
        self.output = output

    def attach(
        self, stage: StageName, operation: str | None = None
    ) -> PipelineError:
        """Attribute this error to a stage (first attribution wins)."""
        if self.stage is None:
            self.stage = stage
        if self.operation is None and operation is not None:
            self.operation = operation
        return self

    def output_tail(self, lines: int = OUTPUT_TAIL_LINES) -> str:
        """Return the last lines of the underlying tool output."""
        if not self.output:
            return ""
        return "\n".join(self.output.rstrip().splitlines()[-lines:])

    def report(self) -> str:
        """Human-readable failure report."""
        stage = self.stage.value if self.stage else "unknown"
        operation = self.operation or "unknown"
        return f"Stage '{stage}' failed during '{operation}': {self.message}"


class FatalError(PipelineError):
    """Unrecoverable failure; aborts the pipeline after cleanup."""


class RetryableError(PipelineError):
    """Transient failure (network) that may succeed on another attempt."""

    kind = ErrorKind.RETRYABLE


class RetryExhaustedError(FatalError):
    """A retryable operation failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        """Initialize RetryExhaustedError.

        Args:
            operation: Name of the retried operation.
            attempts: Number of attempts made.
            last_error: Error raised by the final attempt; its output is kept.
        """
        output = getattr(last_error, "output", None)
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}",
            code="retry_exhausted",
            operation=operation,
            output=output,
        )
        self.attempts = attempts
        self.last_error = last_error


class CommandError(FatalError):
    """An external command exited non-zero, timed out or could not start."""

    def __init__(
        self,
        command: str,
        exit_code: int | None,
        output: str | None = None,
        code: str = "command_failed",
        message: str | None = None,
    ) -> None:
        """Initialize CommandError.

        Args:
            command: Shell-quoted command line.
            exit_code: Exit status, or None if the command never started.
            output: Combined stdout and stderr.
            code: Machine-readable error code.
            message: Overrides the default exit-code message.
        """
        if message is None:
            message = f"Command failed with exit code {exit_code}: {command}"
        super().__init__(message, code=code, output=output)
        self.command = command
        self.exit_code = exit_code

    def report(self) -> str:
        return f"{super().report()} (command: {self.command})"


class MissingArtifactError(FatalError):
    """A required artifact is missing or empty."""

    def __init__(self, path: str, what: str = "artifact") -> None:
        super().__init__(
            f"Required {what} missing or empty: {path}",
            code="missing_artifact",
        )
        self.path = path


class UUIDResolutionError(FatalError):
    """The filesystem identifier of an image could not be read."""

    def __init__(self, image: str, output: str | None = None) -> None:
        super().__init__(
            f"Could not resolve filesystem UUID of {image}",
            code="uuid_unresolved",
            operation="resolve filesystem uuid",
            output=output,
        )
        self.image = image


class TransitionError(FatalError):
    """A stage state machine was driven out of order."""

    def __init__(self, machine: str, current: str, target: str) -> None:
        super().__init__(
            f"Illegal {machine} transition: {current} -> {target}",
            code="illegal_transition",
        )


__all__ = [
    "CommandError",
    "FatalError",
    "MissingArtifactError",
    "PipelineError",
    "RetryExhaustedError",
    "RetryableError",
    "TransitionError",
    "UUIDResolutionError",
]
