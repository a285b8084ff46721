"""Kernel build stage.

This module handles:
- Driving the kernel build state machine
  (not_started -> source_fetched -> configured -> built -> succeeded/failed)
- Configuring and compiling through the compiler cache
- Reading the derived release string, which overrides the requested version
- Verifying the image (required) and device tree blob (optional)
- Installing modules into a private tree
- Writing standalone kernel outputs to the kernel output directory
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path

from raphael_imagegen.errors import FatalError, MissingArtifactError
from raphael_imagegen.kernel.source import check_branch, clone_source
from raphael_imagegen.pipeline.stage import (
    PipelineContext,
    Stage,
    StateMachine,
    step,
)
from raphael_imagegen.runner import CommandRunner
from raphael_imagegen.toolchain.cache import CacheStats, ToolchainCache
from raphael_imagegen.types import (
    KernelArtifactSet,
    KernelBuildState,
    StageName,
    StageOutcome,
    StageStatus,
)

logger = logging.getLogger(__name__)

KERNEL_STATES = [
    KernelBuildState.NOT_STARTED,
    KernelBuildState.SOURCE_FETCHED,
    KernelBuildState.CONFIGURED,
    KernelBuildState.BUILT,
    KernelBuildState.SUCCEEDED,
]

# Symlinks left by modules_install that point back into the source tree
MODULE_TREE_LINKS = ("build", "source")


class KernelStateMachine(StateMachine[KernelBuildState]):
    """Kernel build progress; out-of-order transitions raise."""

    def __init__(self) -> None:
        super().__init__("kernel", KERNEL_STATES, KernelBuildState.FAILED)


def make_command(
    arch: str, cross_compile: str, *targets: str, jobs: int | None = None
) -> list[str]:
    """Compose a kernel make invocation."""
    cmd = ["make"]
    if jobs is not None:
        cmd.append(f"-j{jobs}")
    cmd.extend([f"ARCH={arch}", f"CROSS_COMPILE={cross_compile}"])
    cmd.extend(targets)
    return cmd


def strip_module_links(modules_root: Path) -> list[Path]:
    """Remove build/source symlinks from an installed module tree."""
    removed: list[Path] = []
    lib_modules = modules_root / "lib" / "modules"
    if not lib_modules.is_dir():
        return removed
    for release_dir in lib_modules.iterdir():
        for name in MODULE_TREE_LINKS:
            link = release_dir / name
            if link.is_symlink() or link.exists():
                link.unlink()
                removed.append(link)
    return removed


def publish_standalone(
    artifacts: KernelArtifactSet, output_dir: Path
) -> list[Path]:
    """Copy the kernel image and DTB to the kernel output directory.

    Writes ``Image.gz-<release>`` and ``dtbs/<name>``. When the derived
    release differs from the requested version, ``Image.gz-<requested>``
    is created as a symlink to the release-named image.

    Returns:
        Paths written.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    image_out = output_dir / f"Image.gz-{artifacts.release}"
    shutil.copy2(artifacts.image_path, image_out)
    written.append(image_out)

    if artifacts.dtb_path is not None:
        dtbs = output_dir / "dtbs"
        dtbs.mkdir(exist_ok=True)
        dtb_out = dtbs / artifacts.dtb_path.name
        shutil.copy2(artifacts.dtb_path, dtb_out)
        written.append(dtb_out)

    if artifacts.release != artifacts.requested_version:
        alias = output_dir / f"Image.gz-{artifacts.requested_version}"
        if alias.is_symlink() or alias.exists():
            alias.unlink()
        alias.symlink_to(image_out.name)
        written.append(alias)

    return written


class KernelBuildStage(Stage):
    """Fetch, configure and cross-compile the device kernel."""

    name = StageName.KERNEL

    def __init__(self) -> None:
        self.machine = KernelStateMachine()

    def run(self, context: PipelineContext) -> StageOutcome:
        settings = context.settings
        runner = context.stage_runner(self.name)
        started = time.monotonic()
        source_dir = settings.work_dir / "linux"

        cache = context.cache or ToolchainCache(
            runner,
            settings.ccache_dir,
            settings.ccache_maxsize,
            enabled=settings.cache_enabled,
        )
        cache.runner = runner

        try:
            with step(self.name, "initialize compiler cache"):
                cache.initialize(required=settings.cache_requested)

            with step(self.name, "fetch source"):
                self._fetch(context, runner, source_dir)
            self.machine.advance(KernelBuildState.SOURCE_FETCHED)

            with step(self.name, "configure"):
                self._configure(context, runner, cache, source_dir)
            self.machine.advance(KernelBuildState.CONFIGURED)

            before = cache.stats()
            with step(self.name, "compile"):
                self._compile(context, runner, cache, source_dir)
            after = cache.stats()
            self.machine.advance(KernelBuildState.BUILT)

            with step(self.name, "read kernel release"):
                release = self._kernel_release(context, runner, source_dir)

            with step(self.name, "verify artifacts"):
                image_path, dtb_path = self._verify(context, source_dir)

            with step(self.name, "install modules"):
                modules_path = self._install_modules(
                    context, runner, cache, source_dir
                )

            artifacts = KernelArtifactSet(
                image_path=image_path,
                dtb_path=dtb_path,
                modules_path=modules_path,
                release=release,
                requested_version=settings.kernel_version,
                source_dir=source_dir,
            )
            with step(self.name, "publish kernel outputs"):
                written = publish_standalone(artifacts, settings.kernel_output_dir)
            self.machine.advance(KernelBuildState.SUCCEEDED)
        except BaseException:
            self.machine.fail()
            raise

        context.kernel = artifacts
        details: dict[str, object] = {
            "release": release,
            "requested_version": settings.kernel_version,
            "dtb": str(dtb_path) if dtb_path else None,
        }
        delta = _stats_delta(before, after)
        if delta is not None:
            logger.info("Compiler cache: %s", delta.describe())
            details["cache"] = {"hits": delta.hits, "misses": delta.misses}

        message = f"Kernel {release} built"
        if release != settings.kernel_version:
            message += f" (requested {settings.kernel_version})"
        logger.info(message)
        return StageOutcome(
            stage=self.name,
            status=StageStatus.SUCCEEDED,
            message=message,
            duration=time.monotonic() - started,
            artifacts=written,
            details=details,
        )

    def _fetch(
        self, context: PipelineContext, runner: CommandRunner, source_dir: Path
    ) -> None:
        settings = context.settings
        branch = settings.kernel_branch
        context.retry(
            lambda: check_branch(
                runner, settings.kernel_repo, branch, settings.network_timeout
            ),
            operation=f"check branch {branch}",
        )
        context.retry(
            lambda: clone_source(
                runner,
                settings.kernel_repo,
                branch,
                source_dir,
                settings.network_timeout,
            ),
            operation=f"clone {branch}",
        )

    def _configure(
        self,
        context: PipelineContext,
        runner: CommandRunner,
        cache: ToolchainCache,
        source_dir: Path,
    ) -> None:
        settings = context.settings
        runner.run(
            make_command(
                settings.kernel_arch,
                cache.wrap(settings.cross_compile),
                settings.kernel_defconfig,
                settings.kernel_config_fragment,
                jobs=settings.jobs(),
            ),
            cwd=source_dir,
            env=cache.env,
            timeout=settings.command_timeout,
        )
        if not (source_dir / ".config").is_file():
            raise FatalError(
                "Kernel configuration produced no .config", code="config_missing"
            )

    def _compile(
        self,
        context: PipelineContext,
        runner: CommandRunner,
        cache: ToolchainCache,
        source_dir: Path,
    ) -> None:
        settings = context.settings
        jobs = settings.jobs()
        logger.info("Compiling kernel with %d jobs", jobs)
        runner.run(
            make_command(
                settings.kernel_arch, cache.wrap(settings.cross_compile), jobs=jobs
            ),
            cwd=source_dir,
            env=cache.env,
            timeout=settings.build_timeout,
        )

    def _kernel_release(
        self, context: PipelineContext, runner: CommandRunner, source_dir: Path
    ) -> str:
        settings = context.settings
        result = runner.run(
            make_command(
                settings.kernel_arch, settings.cross_compile, "-s", "kernelrelease"
            ),
            cwd=source_dir,
        )
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        if not lines:
            raise FatalError(
                "Kernel build reported an empty release string",
                code="release_unknown",
                output=result.output,
            )
        release = lines[-1]
        if release != settings.kernel_version:
            logger.warning(
                "Kernel release %s differs from requested version %s; using %s",
                release,
                settings.kernel_version,
                release,
            )
        return release

    def _verify(
        self, context: PipelineContext, source_dir: Path
    ) -> tuple[Path, Path | None]:
        settings = context.settings
        image_path = source_dir / settings.image_relpath
        if not image_path.is_file() or image_path.stat().st_size == 0:
            raise MissingArtifactError(str(image_path), "kernel image")

        dtb_path: Path | None = source_dir / settings.dtb_relpath
        if not dtb_path.is_file():
            logger.warning("Device tree blob not produced: %s", dtb_path)
            dtb_path = None
        return image_path, dtb_path

    def _install_modules(
        self,
        context: PipelineContext,
        runner: CommandRunner,
        cache: ToolchainCache,
        source_dir: Path,
    ) -> Path:
        settings = context.settings
        modules_root = settings.work_dir / "modules"
        if modules_root.exists():
            shutil.rmtree(modules_root)
        modules_root.mkdir(parents=True)
        runner.run(
            make_command(
                settings.kernel_arch,
                cache.wrap(settings.cross_compile),
                "modules_install",
                f"INSTALL_MOD_PATH={modules_root}",
            ),
            cwd=source_dir,
            env=cache.env,
            timeout=settings.command_timeout,
        )
        strip_module_links(modules_root)
        return modules_root


def _stats_delta(
    before: CacheStats | None, after: CacheStats | None
) -> CacheStats | None:
    if before is None or after is None:
        return None
    return after - before


__all__ = [
    "KernelBuildStage",
    "KernelStateMachine",
    "make_command",
    "publish_standalone",
    "strip_module_links",
]
