"""Pipeline orchestration.

This module provides the high-level pipeline API:
- plan_stages(): choose the stage sequence for a command
- PipelineOrchestrator.run(): preflight, lock, run stages in order, report
- PipelineOrchestrator.dry_run_boot(): resolve the root UUID without
  touching anything

Cleanup is guaranteed on every exit path: each stage releases its own
scoped acquisitions, and the process-wide unwind stack is drained again
when the run ends (and on SIGINT/SIGTERM or interpreter exit).
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy.orm import Session

from raphael_imagegen.boot.stage import BootImageStage
from raphael_imagegen.config import Settings
from raphael_imagegen.errors import FatalError, PipelineError
from raphael_imagegen.kernel.stage import KernelBuildStage
from raphael_imagegen.mounts import BINFMT_DIR, MountManager
from raphael_imagegen.packaging.stage import PackageStage
from raphael_imagegen.pipeline.artifacts import (
    MANIFEST_NAME,
    describe_artifacts,
    generate_manifest,
    write_manifest,
)
from raphael_imagegen.pipeline.inputs import compute_input_key, create_run_inputs
from raphael_imagegen.pipeline.models import PipelineRun
from raphael_imagegen.pipeline.service import (
    create_run,
    fail_run,
    record_artifacts,
    workdir_lock,
)
from raphael_imagegen.pipeline.stage import PipelineContext, Stage
from raphael_imagegen.pipeline.status import STATUS_FILENAME, StatusReport
from raphael_imagegen.preflight import ensure_host
from raphael_imagegen.rootfs.stage import RootfsAssemblyStage
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.toolchain.cache import ToolchainCache
from raphael_imagegen.types import (
    PackageComponent,
    StageName,
    StageOutcome,
    StageStatus,
)
from raphael_imagegen.unwind import (
    UnwindStack,
    get_unwind_stack,
    install_unwind_handlers,
)

logger = logging.getLogger(__name__)


class Plan(str, Enum):
    """Stage sequences offered by the CLI."""

    BUILD = "build"
    KERNEL = "kernel"
    ROOTFS = "rootfs"
    BOOT = "boot"


def plan_stages(plan: Plan, skip_kernel: bool = False) -> list[Stage]:
    """Return the stages for a plan.

    Without a kernel stage in front of it, the package stage reuses the
    packages a previous run left in the output directory.
    """
    if plan == Plan.BUILD:
        stages: list[Stage] = [] if skip_kernel else [KernelBuildStage()]
        return [*stages, PackageStage(), RootfsAssemblyStage(), BootImageStage()]
    if plan == Plan.KERNEL:
        return [KernelBuildStage(), PackageStage()]
    if plan == Plan.ROOTFS:
        return [PackageStage(), RootfsAssemblyStage()]
    return [BootImageStage()]


def host_stages(stages: list[Stage]) -> list[StageName]:
    """Stages whose host tools must be present.

    The package stage only needs dpkg-deb when it builds packages.
    """
    names = [s.name for s in stages]
    if StageName.KERNEL not in names and StageName.PACKAGE in names:
        names.remove(StageName.PACKAGE)
    return names


@dataclass
class PipelineResult:
    """Result of a pipeline run."""

    status: StageStatus
    outcomes: list[StageOutcome] = field(default_factory=list)
    error: PipelineError | None = None
    run_id: int | None = None
    input_key: str | None = None
    manifest_path: Path | None = None
    status_path: Path | None = None
    cleanup_failures: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "run_id": self.run_id,
            "input_key": self.input_key,
            "manifest": str(self.manifest_path) if self.manifest_path else None,
            "status_report": str(self.status_path) if self.status_path else None,
            "stages": [
                {
                    "stage": o.stage.value,
                    "status": o.status.value,
                    "message": o.message,
                    "duration": round(o.duration, 3),
                    "artifacts": [str(a) for a in o.artifacts],
                    "details": o.details,
                }
                for o in self.outcomes
            ],
        }
        if self.error is not None:
            data["error"] = {
                "stage": self.error.stage.value if self.error.stage else None,
                "operation": self.error.operation,
                "code": self.error.code,
                "message": self.error.message,
                "output": self.error.output_tail(),
            }
        if self.cleanup_failures:
            data["cleanup_failures"] = self.cleanup_failures
        return data


class PipelineOrchestrator:
    """Run a sequence of stages against one working directory.

    Args:
        settings: Frozen build settings.
        stages: Stages to run, in order.
        runner: Base command runner (a default one is created if omitted).
        stack: Unwind stack (defaults to the process-wide one).
        http: HTTP client; one is created and closed per run if omitted.
        session: Optional ledger session; the run is recorded when given.
        preflight: Check host tools and privileges before starting.
        install_handlers: Install the process-wide signal/exit handlers.
        sleep: Sleep function for retry delays.
        binfmt_dir: binfmt_misc control directory.
        which: Command lookup used by preflight.
        euid: Effective user id used by preflight.
    """

    def __init__(
        self,
        settings: Settings,
        stages: list[Stage],
        *,
        runner: CommandRunner | None = None,
        stack: UnwindStack | None = None,
        http: httpx.Client | None = None,
        session: Session | None = None,
        preflight: bool = True,
        install_handlers: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        binfmt_dir: Path = BINFMT_DIR,
        which: Callable[[str], str | None] = shutil.which,
        euid: int | None = None,
    ) -> None:
        self.settings = settings
        self.stages = stages
        self.runner = runner or CommandRunner(default_timeout=settings.command_timeout)
        self.stack = stack or get_unwind_stack()
        self.http = http
        self.session = session
        self.preflight = preflight
        self.install_handlers = install_handlers
        self.sleep = sleep
        self.binfmt_dir = binfmt_dir
        self.which = which
        self.euid = euid

    def _context(self, runner: CommandRunner, http: httpx.Client) -> PipelineContext:
        settings = self.settings
        return PipelineContext(
            settings=settings,
            runner=runner,
            stack=self.stack,
            mounts=MountManager(runner, self.stack, self.binfmt_dir),
            http=http,
            cache=ToolchainCache(
                runner,
                settings.ccache_dir,
                settings.ccache_maxsize,
                enabled=settings.cache_enabled,
            ),
            sleep=self.sleep,
        )

    def dry_run_boot(self) -> StageOutcome:
        """Resolve the root filesystem UUID with zero mutations."""
        http = self.http or httpx.Client()
        try:
            context = self._context(self.runner.with_log(None), http)
            return BootImageStage(dry_run=True).run(context)
        finally:
            if self.http is None:
                http.close()

    def run(self) -> PipelineResult:
        """Run the stages.

        Fatal pipeline errors are returned in the result after cleanup.
        Anything else (interrupts, programming errors) propagates after
        cleanup.
        """
        settings = self.settings
        if self.install_handlers:
            install_unwind_handlers(self.stack)

        names = [s.name for s in self.stages]
        inputs = create_run_inputs(settings, [n.value for n in names])
        result = PipelineResult(
            status=StageStatus.RUNNING, input_key=compute_input_key(inputs)
        )
        report = StatusReport(stages=names)

        with workdir_lock(settings.work_dir):
            http = self.http or httpx.Client(timeout=settings.network_timeout)
            run: PipelineRun | None = None
            try:
                if self.session is not None:
                    run = create_run(
                        self.session,
                        inputs,
                        settings.kernel_version,
                        settings.distribution,
                    )
                    run.mark_running()
                    result.run_id = run.id

                context = self._context(
                    self.runner.with_log(settings.work_dir / "logs" / "pipeline.log"),
                    http,
                )
                if self.preflight:
                    self._preflight()

                for stage in self.stages:
                    report.current = stage.name
                    result.status_path = report.write(settings.output_dir)
                    outcome = self._run_stage(stage, context)
                    result.outcomes.append(outcome)
                    report.outcomes[stage.name] = outcome
                    report.current = None
                    if run is not None and self.session is not None:
                        record_artifacts(
                            self.session,
                            run,
                            stage.name,
                            describe_artifacts(outcome.artifacts, settings.output_dir),
                        )
                    result.status_path = report.write(settings.output_dir)

                result.manifest_path = self._write_manifest(result, context)
                if run is not None:
                    run.kernel_release = _release(context)
                    run.rootfs_uuid = context.rootfs.uuid if context.rootfs else None
                    run.mark_succeeded()
                result.status = StageStatus.SUCCEEDED
            except PipelineError as e:
                self._unwind(result)
                result.status = StageStatus.FAILED
                result.error = e
                report.failure = _failure_text(e)
                logger.error("%s", e.report())
                if run is not None and self.session is not None:
                    fail_run(self.session, run, e)
            except BaseException as e:
                self._unwind(result)
                result.status = StageStatus.FAILED
                report.failure = f"Interrupted: {type(e).__name__}: {e}"
                if run is not None and self.session is not None:
                    fail_run(self.session, run, e)
                raise
            finally:
                self._unwind(result)
                if self.session is not None:
                    self.session.flush()
                result.status_path = report.write(settings.output_dir)
                if self.http is None:
                    http.close()

        return result

    def _preflight(self) -> None:
        first = self.stages[0].name if self.stages else StageName.KERNEL
        try:
            ensure_host(
                self.settings,
                host_stages(self.stages),
                which=self.which,
                euid=self.euid,
            )
        except PipelineError as e:
            raise e.attach(first, "preflight")

    def _run_stage(self, stage: Stage, context: PipelineContext) -> StageOutcome:
        logger.info("Stage %s: starting", stage.name.value)
        started = time.monotonic()
        try:
            outcome = stage.run(context)
        except PipelineError as e:
            raise e.attach(stage.name)
        except OSError as e:
            raise FatalError(str(e), code="os_error").attach(stage.name) from e
        logger.info(
            "Stage %s: %s in %.1fs",
            stage.name.value,
            outcome.status.value,
            time.monotonic() - started,
        )
        return outcome

    def _unwind(self, result: PipelineResult) -> None:
        for description, error in self.stack.unwind():
            result.cleanup_failures.append(f"{description}: {error}")

    def _write_manifest(
        self, result: PipelineResult, context: PipelineContext
    ) -> Path:
        settings = self.settings
        paths = [a for o in result.outcomes for a in o.artifacts]
        metadata: dict[str, Any] = {"release": _release(context)}
        if context.rootfs is not None:
            metadata["rootfs_uuid"] = context.rootfs.uuid
        if context.boot is not None:
            metadata["boot_image"] = str(context.boot.path)
        manifest = generate_manifest(
            describe_artifacts(paths, settings.output_dir),
            run_id=result.run_id,
            input_key=result.input_key,
            extra_metadata=metadata,
        )
        return write_manifest(manifest, settings.output_dir / MANIFEST_NAME)


def _release(context: PipelineContext) -> str | None:
    if context.kernel is not None:
        return context.kernel.release
    for package in context.packages:
        if package.component == PackageComponent.LINUX:
            return package.version
    return None


def _failure_text(error: PipelineError) -> str:
    text = error.report()
    tail = error.output_tail()
    if tail:
        text += "\n\nTool output (last lines):\n" + tail
    return text


__all__ = [
    "MANIFEST_NAME",
    "Plan",
    "PipelineOrchestrator",
    "PipelineResult",
    "STATUS_FILENAME",
    "host_stages",
    "plan_stages",
]
