"""Scoped acquisitions and the process-wide unwind stack.

This module handles:
- A LIFO stack of undo actions for loop mounts, bind mounts and
  foreign-binary shim registrations
- Scoped acquisition via context managers (release on every exit path)
- A single handler installed at process start that drains the stack on
  SIGINT/SIGTERM and at interpreter exit
- Acquisition/release counters so mount balance can be checked

Releases always run in strict reverse order of acquisition. Releasing an
entry that is not on top first releases everything acquired after it.
"""

from __future__ import annotations

import atexit
import itertools
import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import FrameType
from typing import TypeVar

from raphael_imagegen.errors import FatalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_token_counter = itertools.count(1)


class CleanupError(FatalError):
    """One or more release actions failed."""

    def __init__(self, failures: list[tuple[str, BaseException]]) -> None:
        described = "; ".join(f"{desc}: {err}" for desc, err in failures)
        super().__init__(
            f"Cleanup failed for {len(failures)} acquisition(s): {described}",
            code="cleanup_failed",
            operation="unwind",
        )
        self.failures = failures


@dataclass
class UndoAction:
    """A registered release action."""

    description: str
    release: Callable[[], None]
    token: int = field(default_factory=lambda: next(_token_counter))


class UnwindStack:
    """LIFO stack of undo actions."""

    def __init__(self) -> None:
        self._actions: list[UndoAction] = []
        self._lock = threading.RLock()
        self.acquired = 0
        self.released = 0
        self.failures: list[tuple[str, BaseException]] = []

    @property
    def depth(self) -> int:
        """Number of acquisitions not yet released."""
        return len(self._actions)

    @property
    def balanced(self) -> bool:
        """True when every acquisition has been released."""
        return not self._actions and self.acquired == self.released

    def pending(self) -> list[str]:
        """Descriptions of unreleased acquisitions, oldest first."""
        return [a.description for a in self._actions]

    def push(self, description: str, release: Callable[[], None]) -> UndoAction:
        """Register the release action of a completed acquisition."""
        with self._lock:
            action = UndoAction(description=description, release=release)
            self._actions.append(action)
            self.acquired += 1
            logger.debug("Acquired [%d]: %s", self.depth, description)
            return action

    def release(self, action: UndoAction) -> None:
        """Release an acquisition and everything acquired after it.

        Raises:
            CleanupError: If any of the release actions failed.
        """
        with self._lock:
            if action not in self._actions:
                return
            failures: list[tuple[str, BaseException]] = []
            while self._actions:
                top = self._actions.pop()
                if top is not action:
                    logger.warning(
                        "Releasing %s out of scope before %s",
                        top.description,
                        action.description,
                    )
                error = self._run(top)
                if error is not None:
                    failures.append((top.description, error))
                if top is action:
                    break
        if failures:
            raise CleanupError(failures)

    def unwind(self) -> list[tuple[str, BaseException]]:
        """Release everything, newest first, continuing past failures.

        Returns:
            List of (description, error) for release actions that failed.
        """
        with self._lock:
            if self._actions:
                logger.info("Unwinding %d acquisition(s)", len(self._actions))
            failures: list[tuple[str, BaseException]] = []
            while self._actions:
                top = self._actions.pop()
                error = self._run(top)
                if error is not None:
                    failures.append((top.description, error))
            return failures

    @contextmanager
    def scoped(
        self,
        description: str,
        acquire: Callable[[], T],
        release: Callable[[T], None],
    ) -> Iterator[T]:
        """Acquire a resource for the duration of a with-block.

        The release action is registered only after ``acquire`` succeeds and
        runs however the block exits. A release failure is raised unless the
        block itself is already propagating an exception, in which case it
        is logged and recorded in ``failures``.
        """
        resource = acquire()
        action = self.push(description, lambda: release(resource))
        try:
            yield resource
        except BaseException:
            try:
                self.release(action)
            except CleanupError as cleanup_error:
                logger.error("Cleanup after failure also failed: %s", cleanup_error)
            raise
        else:
            self.release(action)

    def _run(self, action: UndoAction) -> BaseException | None:
        try:
            action.release()
        except Exception as e:
            logger.error("Release failed for %s: %s", action.description, e)
            self.failures.append((action.description, e))
            return e
        self.released += 1
        logger.debug("Released: %s", action.description)
        return None


_global_stack: UnwindStack | None = None
_handlers_installed = False


def get_unwind_stack() -> UnwindStack:
    """Return the process-wide unwind stack."""
    global _global_stack
    if _global_stack is None:
        _global_stack = UnwindStack()
    return _global_stack


def install_unwind_handlers(stack: UnwindStack | None = None) -> UnwindStack:
    """Install the process-wide unwind handler once.

    The stack is drained at interpreter exit and when SIGINT or SIGTERM
    arrives; the signal is then re-raised as KeyboardInterrupt or
    SystemExit so normal exception handling still runs.

    Args:
        stack: Stack to drain (defaults to the process-wide stack).

    Returns:
        The stack the handlers drain.
    """
    global _handlers_installed
    stack = stack or get_unwind_stack()
    if _handlers_installed:
        return stack

    atexit.register(stack.unwind)

    def _on_signal(signum: int, frame: FrameType | None) -> None:
        logger.warning("Received signal %d, unwinding", signum)
        stack.unwind()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)

    _handlers_installed = True
    return stack


__all__ = [
    "CleanupError",
    "UndoAction",
    "UnwindStack",
    "get_unwind_stack",
    "install_unwind_handlers",
]
