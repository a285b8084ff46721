"""Kernel source fetching.

Shallow-clones the single branch that holds the requested kernel version
(one branch per version, e.g. ``raphael-6.18``). Network failures are
retried by the caller's retry policy.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from raphael_imagegen.errors import CommandError, FatalError, RetryableError
from raphael_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

# git ls-remote --exit-code returns 2 when no matching ref exists
LS_REMOTE_NO_MATCH = 2


class BranchNotFoundError(FatalError):
    """The version branch does not exist in the kernel repository."""

    def __init__(self, repo: str, branch: str) -> None:
        super().__init__(
            f"Kernel branch '{branch}' does not exist in {repo}",
            code="branch_not_found",
        )
        self.repo = repo
        self.branch = branch


def compose_clone_command(repo: str, branch: str, dest: Path) -> list[str]:
    """Compose a shallow single-branch clone command."""
    return [
        "git",
        "clone",
        "--depth",
        "1",
        "--single-branch",
        "--branch",
        branch,
        repo,
        str(dest),
    ]


def check_branch(
    runner: CommandRunner, repo: str, branch: str, timeout: int | None = None
) -> None:
    """Verify that a branch exists on the remote.

    Raises:
        BranchNotFoundError: If the remote has no such branch (not retried).
        RetryableError: If the remote could not be reached.
    """
    try:
        runner.run(
            ["git", "ls-remote", "--exit-code", "--heads", repo, branch],
            timeout=timeout,
        )
    except CommandError as e:
        if e.exit_code == LS_REMOTE_NO_MATCH:
            raise BranchNotFoundError(repo, branch) from e
        raise RetryableError(
            f"Cannot reach {repo}: {e}", code="network_error", output=e.output
        ) from e


def clone_source(
    runner: CommandRunner,
    repo: str,
    branch: str,
    dest: Path,
    timeout: int | None = None,
) -> Path:
    """Clone one attempt of the kernel source into dest.

    A partial tree from a failed earlier attempt is removed first.

    Returns:
        Path to the cloned tree.

    Raises:
        RetryableError: If the clone failed.
    """
    if dest.exists():
        logger.info("Removing stale kernel tree %s", dest)
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Cloning %s (%s) into %s", repo, branch, dest)
    try:
        runner.run(compose_clone_command(repo, branch, dest), timeout=timeout)
    except CommandError as e:
        raise RetryableError(
            f"Clone of {repo} ({branch}) failed", code="clone_failed", output=e.output
        ) from e

    head = runner.run(["git", "-C", str(dest), "log", "--oneline", "-1"], check=False)
    if head.success:
        logger.info("Kernel source at %s", head.output.strip())
    return dest


__all__ = [
    "BranchNotFoundError",
    "check_branch",
    "clone_source",
    "compose_clone_command",
]
