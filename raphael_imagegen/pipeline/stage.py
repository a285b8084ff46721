"""Stage contract and shared pipeline context.

Every stage is a Stage subclass with a fixed StageName and a uniform
``run(context) -> StageOutcome`` method. Stages read their inputs from the
typed artifacts earlier stages stored on the PipelineContext and store
their own outputs there; nothing is rediscovered from the filesystem.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from raphael_imagegen.errors import PipelineError, TransitionError
from raphael_imagegen.retry import RETRYABLE_EXCEPTIONS, retry
from raphael_imagegen.types import (
    BootImage,
    FilesystemImage,
    KernelArtifactSet,
    Package,
    StageName,
    StageOutcome,
)

if TYPE_CHECKING:
    import httpx

    from raphael_imagegen.config import Settings
    from raphael_imagegen.mounts import MountManager
    from raphael_imagegen.runner import CommandRunner
    from raphael_imagegen.toolchain.cache import ToolchainCache
    from raphael_imagegen.unwind import UnwindStack

logger = logging.getLogger(__name__)

T = TypeVar("T")
S = TypeVar("S", bound=Enum)


@dataclass
class PipelineContext:
    """Everything a stage needs, plus the artifacts passed forward.

    Attributes:
        settings: Frozen build settings.
        runner: Command runner for external tools.
        stack: Process-wide unwind stack.
        mounts: Mount guard factory bound to runner and stack.
        http: HTTP client for downloads.
        cache: Compiler cache (None when not used).
        sleep: Sleep function used between retries.
        kernel: Output of the kernel stage.
        packages: Output of the package stage.
        rootfs: Output of the rootfs stage.
        boot: Output of the boot stage.
    """

    settings: Settings
    runner: CommandRunner
    stack: UnwindStack
    mounts: MountManager
    http: httpx.Client
    cache: ToolchainCache | None = None
    sleep: Callable[[float], None] = time.sleep
    kernel: KernelArtifactSet | None = None
    packages: list[Package] = field(default_factory=list)
    rootfs: FilesystemImage | None = None
    boot: BootImage | None = None

    def stage_runner(self, stage: StageName) -> CommandRunner:
        """Return a runner logging to this stage's log file."""
        log_path = self.settings.work_dir / "logs" / f"{stage.value}.log"
        return self.runner.with_log(log_path)

    def retry(
        self,
        action: Callable[[], T],
        operation: str,
        retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    ) -> T:
        """Run a retryable action with the configured policy."""
        return retry(
            action,
            max_attempts=self.settings.retry_attempts,
            delay=self.settings.retry_delay,
            backoff=self.settings.retry_backoff,
            operation=operation,
            retry_on=retry_on,
            sleep=self.sleep,
        )


class StateMachine(Generic[S]):
    """Linear stage state machine.

    States advance strictly in the given order. The failed state can be
    entered from any state that is not terminal.

    Args:
        machine: Name used in errors and logs.
        order: States in execution order, the first being the initial one.
        failed: The failure state.
    """

    def __init__(self, machine: str, order: list[S], failed: S) -> None:
        self.machine = machine
        self.order = order
        self.failed = failed
        self.state = order[0]
        self.history: list[S] = [self.state]

    @property
    def terminal(self) -> bool:
        return self.state == self.failed or self.state == self.order[-1]

    def advance(self, target: S) -> None:
        """Move to target.

        Raises:
            TransitionError: If target is not the next state.
        """
        if target == self.failed:
            allowed = not self.terminal
        else:
            index = self.order.index(self.state)
            allowed = index + 1 < len(self.order) and self.order[index + 1] == target
        if not allowed:
            raise TransitionError(self.machine, self.state.value, target.value)
        logger.debug("%s: %s -> %s", self.machine, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        """Enter the failed state unless already terminal."""
        if not self.terminal:
            self.advance(self.failed)


class Stage(ABC):
    """A pipeline stage."""

    name: ClassVar[StageName]

    @abstractmethod
    def run(self, context: PipelineContext) -> StageOutcome:
        """Run the stage and return its outcome.

        Raises:
            PipelineError: On a fatal failure, after the stage's own
                scoped acquisitions have been released.
        """


@contextmanager
def step(stage: StageName, operation: str) -> Iterator[None]:
    """Attribute any pipeline error raised in the block to stage/operation."""
    logger.debug("[%s] %s", stage.value, operation)
    try:
        yield
    except PipelineError as e:
        raise e.attach(stage, operation)


__all__ = ["PipelineContext", "Stage", "StateMachine", "step"]
