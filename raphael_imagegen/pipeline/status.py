"""Human-readable run status report.

The report (``build-status.txt`` in the output directory) is rewritten
after every stage so an interrupted run still leaves an accurate record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from raphael_imagegen.types import StageName, StageOutcome, StageStatus

logger = logging.getLogger(__name__)

STATUS_FILENAME = "build-status.txt"


def format_elapsed(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    total = int(seconds)
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


@dataclass
class StatusReport:
    """Progress of one pipeline run."""

    stages: list[StageName]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcomes: dict[StageName, StageOutcome] = field(default_factory=dict)
    current: StageName | None = None
    failure: str | None = None

    @property
    def completed(self) -> int:
        return sum(
            1
            for o in self.outcomes.values()
            if o.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)
        )

    @property
    def progress(self) -> float:
        return self.completed / len(self.stages) if self.stages else 1.0

    def elapsed(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.started_at).total_seconds()

    def status_of(self, stage: StageName) -> StageStatus:
        if stage in self.outcomes:
            return self.outcomes[stage].status
        if stage == self.current:
            return StageStatus.FAILED if self.failure else StageStatus.RUNNING
        return StageStatus.PENDING

    def render(self, now: datetime | None = None) -> str:
        lines = [
            "raphael-imagegen build status",
            f"Started:  {self.started_at.isoformat(timespec='seconds')}",
            f"Elapsed:  {format_elapsed(self.elapsed(now))}",
            f"Progress: {self.completed}/{len(self.stages)} ({self.progress:.0%})",
        ]
        if self.current is not None:
            lines.append(f"Current:  {self.current.value}")
        lines.append("")
        lines.append("Stages:")
        for stage in self.stages:
            status = self.status_of(stage)
            line = f"  {stage.value:<8} {status.value}"
            outcome = self.outcomes.get(stage)
            if outcome is not None:
                line += f" ({format_elapsed(outcome.duration)})"
                if outcome.message:
                    line += f" - {outcome.message}"
            lines.append(line)

        artifacts = [a for o in self.outcomes.values() for a in o.artifacts]
        if artifacts:
            lines.append("")
            lines.append("Artifacts:")
            for path in artifacts:
                size = path.stat().st_size if path.is_file() else 0
                lines.append(f"  {path.name} ({size} bytes)")

        if self.failure:
            lines.append("")
            lines.append("Failure:")
            lines.extend(f"  {line}" for line in self.failure.splitlines())
        return "\n".join(lines) + "\n"

    def write(self, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / STATUS_FILENAME
        path.write_text(self.render(), encoding="utf-8")
        logger.debug("Updated %s", path)
        return path


__all__ = ["STATUS_FILENAME", "StatusReport", "format_elapsed"]
