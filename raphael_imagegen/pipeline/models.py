"""Run ledger ORM models.

This module defines the PipelineRun and RunArtifact models that record
each pipeline execution and the files it produced.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from raphael_imagegen.db import Base
from raphael_imagegen.types import StageStatus


class PipelineRun(Base):
    """ORM model for pipeline executions.

    Attributes:
        id: Primary key.
        status: Run status (pending, running, succeeded, failed).
        kernel_version: Requested kernel version.
        kernel_release: Release string reported by the build, once known.
        distribution: Base distribution.
        stages: Stages the run was asked to execute.
        input_snapshot: Output-relevant settings.
        input_key: Hash of input_snapshot.
        requested_at: Timestamp when the run was recorded.
        started_at: Timestamp when the first stage started.
        finished_at: Timestamp when the run finished.
        failed_stage: Stage that failed, if any.
        failed_operation: Operation that failed, if any.
        error_code: Machine-readable error code.
        error_message: Error message.
        rootfs_uuid: UUID of the root filesystem produced or linked.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value, index=True
    )
    kernel_version: Mapped[str] = mapped_column(String(32), nullable=False)
    kernel_release: Mapped[str | None] = mapped_column(String(128), nullable=True)
    distribution: Mapped[str] = mapped_column(String(32), nullable=False)
    stages: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    input_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    failed_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    failed_operation: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    rootfs_uuid: Mapped[str | None] = mapped_column(String(64), nullable=True)

    artifacts: Mapped[list["RunArtifact"]] = relationship(
        "RunArtifact", back_populates="run", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<PipelineRun(id={self.id}, status='{self.status}', "
            f"kernel='{self.kernel_version}', distribution='{self.distribution}')>"
        )

    def mark_running(self) -> None:
        self.status = StageStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        self.status = StageStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        stage: str | None = None,
        operation: str | None = None,
        code: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this run as failed and record the attribution."""
        self.status = StageStatus.FAILED.value
        self.finished_at = datetime.now()
        self.failed_stage = stage
        self.failed_operation = operation
        self.error_code = code
        self.error_message = message


class RunArtifact(Base):
    """ORM model for files produced by a run."""

    __tablename__ = "run_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="artifacts")

    def __repr__(self) -> str:
        return (
            f"<RunArtifact(id={self.id}, filename='{self.filename}', "
            f"kind='{self.kind}', size={self.size_bytes})>"
        )


__all__ = ["PipelineRun", "RunArtifact"]
