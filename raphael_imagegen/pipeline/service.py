"""Run ledger service and work directory lock.

This module provides:
- workdir_lock(): exclusive ownership of a working directory
- Run record creation, completion and failure bookkeeping
- Run queries for the CLI
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from raphael_imagegen.errors import FatalError, PipelineError
from raphael_imagegen.pipeline.inputs import RunInputs, compute_input_key
from raphael_imagegen.pipeline.models import PipelineRun, RunArtifact
from raphael_imagegen.types import ArtifactInfo, StageName

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".raphael-imagegen.lock"


class WorkDirLockedError(FatalError):
    """Raised when another pipeline owns the working directory."""

    def __init__(self, work_dir: Path) -> None:
        """Initialize WorkDirLockedError.

        Args:
            work_dir: The directory whose lock is held elsewhere.
        """
        super().__init__(
            f"Working directory {work_dir} is in use by another pipeline",
            code="workdir_locked",
            operation="lock working directory",
        )
        self.work_dir = work_dir


class RunNotFoundError(Exception):
    """Raised when a run is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        """Initialize RunNotFoundError.

        Args:
            run_id: The ledger ID that was looked up.
            code: Error code for structured error handling.
        """
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


@contextmanager
def workdir_lock(work_dir: Path, timeout: float | None = 0) -> Iterator[None]:
    """Hold an exclusive lock on a working directory.

    Args:
        work_dir: Directory to lock (created if missing).
        timeout: Seconds to wait for the lock; 0 fails immediately and
            None blocks.

    Raises:
        WorkDirLockedError: If the lock is held elsewhere.
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    lock_file = work_dir / LOCK_FILENAME

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is None:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True
        else:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise WorkDirLockedError(work_dir) from None
                    time.sleep(0.1)

        logger.debug("Locked working directory %s", work_dir)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Unlocked working directory %s", work_dir)
        os.close(fd)


def create_run(
    session: Session,
    inputs: RunInputs,
    kernel_version: str,
    distribution: str,
) -> PipelineRun:
    """Record a new run."""
    run = PipelineRun(
        kernel_version=kernel_version,
        distribution=distribution,
        stages=list(inputs.stages),
        input_snapshot=inputs.to_dict(),
        input_key=compute_input_key(inputs),
    )
    session.add(run)
    session.flush()
    logger.info("Recorded run %d", run.id)
    return run


def record_artifacts(
    session: Session,
    run: PipelineRun,
    stage: StageName,
    artifacts: list[ArtifactInfo],
) -> list[RunArtifact]:
    """Attach artifact records for one stage to a run."""
    records = [
        RunArtifact(
            run=run,
            stage=stage.value,
            kind=info.kind,
            relative_path=info.relative_path,
            filename=info.filename,
            size_bytes=info.size_bytes,
            sha256=info.sha256,
        )
        for info in artifacts
    ]
    session.add_all(records)
    session.flush()
    return records


def fail_run(session: Session, run: PipelineRun, error: BaseException) -> None:
    """Mark a run failed with the error's stage and operation."""
    if isinstance(error, PipelineError):
        run.mark_failed(
            stage=error.stage.value if error.stage else None,
            operation=error.operation,
            code=error.code,
            message=error.message,
        )
    else:
        run.mark_failed(code=type(error).__name__, message=str(error))
    session.flush()


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a run by ID.

    Raises:
        RunNotFoundError: If no such run exists.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    status: str | None = None,
    limit: int = 20,
) -> list[PipelineRun]:
    """List runs, newest first."""
    stmt = select(PipelineRun).order_by(PipelineRun.id.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(PipelineRun.status == status)
    return list(session.scalars(stmt))


__all__ = [
    "LOCK_FILENAME",
    "RunNotFoundError",
    "WorkDirLockedError",
    "create_run",
    "fail_run",
    "get_run",
    "list_runs",
    "record_artifacts",
    "workdir_lock",
]
