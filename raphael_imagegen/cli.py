"""Thin CLI wrapper for raphael_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes: 0 on success, 1 when a stage fails (the stage, the failing
operation and the tail of the tool output are printed), 2 on usage errors.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from raphael_imagegen import __version__
from raphael_imagegen.config import Settings, get_settings, print_settings_json
from raphael_imagegen.errors import PipelineError

app = typer.Typer(
    name="raphael-imagegen",
    help="Raphael Image Generator - kernel, root filesystem and boot images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit code for invalid flags or settings
USAGE_ERROR = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"raphael-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Raphael Image Generator - kernel, root filesystem and boot images."""


def configure_logging(level: str) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def load_settings(**overrides: Any) -> Settings:
    """Build settings from flags, exiting with a usage error if invalid."""
    try:
        return get_settings(**overrides)
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        for error in e.errors():
            field = ".".join(str(p) for p in error["loc"]) or "settings"
            console.print(f"  {field}: {error['msg']}", markup=False)
        raise typer.Exit(code=USAGE_ERROR) from None


def print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def print_error_json(error: PipelineError) -> None:
    print_json(
        {
            "status": "failed",
            "error": {
                "stage": error.stage.value if error.stage else None,
                "operation": error.operation,
                "code": error.code,
                "message": error.message,
            },
        }
    )


def print_failure(error: PipelineError) -> None:
    """Print stage, operation and the tool output tail of a failure."""
    stage = error.stage.value if error.stage else "unknown"
    console.print(f"[red]Build failed in stage {stage}[/red]")
    console.print(f"  Operation: {error.operation or 'unknown'}", markup=False)
    console.print(f"  Error: {error.message}", markup=False)
    console.print(f"  Code: {error.code}", markup=False)
    tail = error.output_tail()
    if tail:
        console.print()
        console.print("[bold]Tool output (last lines):[/bold]")
        console.print(tail, markup=False, highlight=False)


def run_plan(
    settings: Settings, plan_name: str, skip_kernel: bool, json_output: bool
) -> None:
    """Run a stage plan with the ledger attached and report the result."""
    from raphael_imagegen.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from raphael_imagegen.pipeline.orchestrator import (
        Plan,
        PipelineOrchestrator,
        plan_stages,
    )

    configure_logging(settings.log_level)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    try:
        with get_session(factory) as session:
            orchestrator = PipelineOrchestrator(
                settings,
                plan_stages(Plan(plan_name), skip_kernel=skip_kernel),
                session=session,
            )
            result = orchestrator.run()
    except PipelineError as e:
        # Raised before any stage ran (work directory lock)
        if json_output:
            print_error_json(e)
        else:
            print_failure(e)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; mounts and registrations released[/yellow]")
        raise typer.Exit(code=130) from None

    if json_output:
        print_json(result.to_dict())
    else:
        for outcome in result.outcomes:
            color = "green" if outcome.status.value == "succeeded" else "yellow"
            console.print(
                f"  [{color}]{outcome.stage.value}[/{color}]: {outcome.message}"
            )
        if result.manifest_path:
            console.print(f"Manifest: {result.manifest_path}")
        if result.status_path:
            console.print(f"Status report: {result.status_path}")
        for failure in result.cleanup_failures:
            console.print(f"[yellow]Cleanup failure: {failure}[/yellow]")

    if not result.success:
        if result.error is not None and not json_output:
            print_failure(result.error)
        raise typer.Exit(code=1)
    if not json_output:
        console.print("[green]Done[/green]")


KernelVersionOption = Annotated[
    str | None,
    typer.Option("--kernel-version", "-k", help="Kernel version (x.y or x.y.z)"),
]
CacheOption = Annotated[
    bool | None,
    typer.Option("--cache/--no-cache", help="Use the compiler and download caches"),
]
DistributionOption = Annotated[
    str | None,
    typer.Option("--distribution", "-d", help="Base distribution (ubuntu, armbian)"),
]
RootfsImageOption = Annotated[
    Path | None,
    typer.Option("--rootfs-image", "-r", help="Root filesystem image path"),
]
OutputOption = Annotated[
    Path | None,
    typer.Option("--output", "-o", help="Boot image output file"),
]
OutputDirOption = Annotated[
    Path | None,
    typer.Option("--output-dir", help="Directory for packages and images"),
]
WorkDirOption = Annotated[
    Path | None,
    typer.Option("--work-dir", "-w", help="Working directory (locked per run)"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
BlankTemplateOption = Annotated[
    bool,
    typer.Option(
        "--blank-template",
        help="Synthesize a blank FAT boot image instead of downloading the template",
    ),
]


@app.command()
def build(
    kernel_version: KernelVersionOption = None,
    cache: CacheOption = None,
    distribution: DistributionOption = None,
    rootfs_image: RootfsImageOption = None,
    output: OutputOption = None,
    output_dir: OutputDirOption = None,
    work_dir: WorkDirOption = None,
    skip_kernel: Annotated[
        bool,
        typer.Option("--skip-kernel", help="Reuse packages from the output directory"),
    ] = False,
    blank_template: BlankTemplateOption = False,
    json_output: JsonOption = False,
) -> None:
    """Run the full pipeline: kernel, packages, root filesystem, boot image."""
    settings = load_settings(
        kernel_version=kernel_version,
        cache_enabled=cache,
        distribution=distribution,
        rootfs_image=rootfs_image,
        output_path=output,
        output_dir=output_dir,
        work_dir=work_dir,
        boot_template_url="" if blank_template else None,
    )
    run_plan(settings, "build", skip_kernel, json_output)


@app.command()
def kernel(
    kernel_version: KernelVersionOption = None,
    cache: CacheOption = None,
    output_dir: OutputDirOption = None,
    work_dir: WorkDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Build the kernel and its packages only."""
    settings = load_settings(
        kernel_version=kernel_version,
        cache_enabled=cache,
        output_dir=output_dir,
        work_dir=work_dir,
    )
    run_plan(settings, "kernel", False, json_output)


@app.command()
def rootfs(
    kernel_version: KernelVersionOption = None,
    cache: CacheOption = None,
    distribution: DistributionOption = None,
    rootfs_image: RootfsImageOption = None,
    output_dir: OutputDirOption = None,
    work_dir: WorkDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Assemble the root filesystem from previously built packages."""
    settings = load_settings(
        kernel_version=kernel_version,
        cache_enabled=cache,
        distribution=distribution,
        rootfs_image=rootfs_image,
        output_dir=output_dir,
        work_dir=work_dir,
    )
    run_plan(settings, "rootfs", False, json_output)


@app.command()
def boot(
    kernel_version: KernelVersionOption = None,
    distribution: DistributionOption = None,
    rootfs_image: RootfsImageOption = None,
    output: OutputOption = None,
    output_dir: OutputDirOption = None,
    work_dir: WorkDirOption = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Only resolve the root filesystem UUID"),
    ] = False,
    blank_template: BlankTemplateOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build the boot image for an existing root filesystem."""
    settings = load_settings(
        kernel_version=kernel_version,
        distribution=distribution,
        rootfs_image=rootfs_image,
        output_path=output,
        output_dir=output_dir,
        work_dir=work_dir,
        boot_template_url="" if blank_template else None,
    )
    if not dry_run:
        run_plan(settings, "boot", False, json_output)
        return

    from raphael_imagegen.pipeline.orchestrator import PipelineOrchestrator

    configure_logging(settings.log_level)
    orchestrator = PipelineOrchestrator(
        settings, [], preflight=False, install_handlers=False
    )
    try:
        outcome = orchestrator.dry_run_boot()
    except PipelineError as e:
        if json_output:
            print_error_json(e)
        else:
            print_failure(e)
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(
            {"status": outcome.status.value, "dry_run": True, **outcome.details}
        )
    else:
        console.print(f"Root filesystem: {outcome.details['rootfs']}")
        console.print(f"UUID: [green]{outcome.details['uuid']}[/green]")
        console.print("[dim]Dry run: nothing was created, mounted or modified[/dim]")


@app.command()
def config(
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = load_settings()
    if json_output:
        console.print(print_settings_json(settings), markup=False, soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Kernel:[/bold]")
    console.print(f"  Version:             {settings.kernel_version}")
    console.print(f"  Repository:          {settings.kernel_repo}")
    console.print(f"  Branch:              {settings.kernel_branch}")
    console.print(f"  Cross compiler:      {settings.cross_compile}")
    console.print(f"  Make jobs:           {settings.jobs()}")
    console.print()
    console.print("[bold]Root filesystem:[/bold]")
    console.print(f"  Distribution:        {settings.distribution}")
    console.print(f"  Ubuntu version:      {settings.ubuntu_version}")
    console.print(f"  Size:                {settings.rootfs_size}")
    console.print(f"  Image:               {settings.default_rootfs_image}")
    console.print(f"  Hostname:            {settings.hostname}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Download cache:      {settings.download_cache_dir}")
    console.print(f"  Compiler cache:      {settings.ccache_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Cache enabled:       {settings.cache_enabled}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Retry attempts:      {settings.retry_attempts}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Network timeout:     {settings.network_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Command timeout:     {settings.command_timeout}")


@app.command("cache-stats")
def cache_stats(
    json_output: JsonOption = False,
) -> None:
    """Show compiler cache configuration and hit/miss counters."""
    from raphael_imagegen.runner import CommandRunner
    from raphael_imagegen.toolchain.cache import ToolchainCache

    settings = load_settings()
    cache = ToolchainCache(
        CommandRunner(default_timeout=settings.command_timeout),
        settings.ccache_dir,
        settings.ccache_maxsize,
        enabled=settings.cache_enabled,
    )
    stats = cache.stats() if cache.cache_dir.is_dir() else None
    info = cache.describe()

    if json_output:
        info["stats"] = (
            {"hits": stats.hits, "misses": stats.misses, "hit_rate": stats.hit_rate}
            if stats is not None
            else None
        )
        print_json(info)
        return

    console.print("[bold]Compiler cache:[/bold]")
    console.print(f"  Enabled:             {info['enabled']}")
    console.print(f"  Directory:           {info['cache_dir']}")
    console.print(f"  Max size:            {info['max_size']}")
    if stats is None:
        console.print("  [yellow]Statistics unavailable[/yellow]")
    else:
        console.print(f"  Hits:                {stats.hits}")
        console.print(f"  Misses:              {stats.misses}")
        console.print(f"  Hit rate:            {stats.hit_rate:.1%}")
    if info["config_file"]:
        console.print()
        console.print("[bold]ccache.conf:[/bold]")
        console.print(str(info["config_file"]).rstrip(), markup=False)


@app.command()
def preflight(
    json_output: JsonOption = False,
) -> None:
    """Check host tools and privileges for every stage."""
    from raphael_imagegen.preflight import check_host
    from raphael_imagegen.types import StageName

    settings = load_settings()
    report = check_host(settings, list(StageName))

    if json_output:
        print_json(
            {
                "ok": report.ok,
                "missing_commands": report.missing_commands,
                "needs_root": report.needs_root,
                "is_root": report.is_root,
            }
        )
    elif report.ok:
        console.print("[green]Host is ready[/green]")
    else:
        for command in report.missing_commands:
            console.print(f"[red]Missing command: {command}[/red]")
        if report.needs_root and not report.is_root:
            console.print("[red]Root privileges are required[/red]")

    if not report.ok:
        raise typer.Exit(code=1)


runs_app = typer.Typer(help="Inspect the run ledger")
app.add_typer(runs_app, name="runs")

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def run_to_dict(run: Any, include_artifacts: bool = False) -> dict[str, Any]:
    """Serialize a ledger run for JSON output."""
    data = {
        "id": run.id,
        "status": run.status,
        "kernel_version": run.kernel_version,
        "kernel_release": run.kernel_release,
        "distribution": run.distribution,
        "stages": run.stages,
        "input_key": run.input_key,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "failed_stage": run.failed_stage,
        "failed_operation": run.failed_operation,
        "error_code": run.error_code,
        "error_message": run.error_message,
        "rootfs_uuid": run.rootfs_uuid,
        "artifact_count": len(run.artifacts),
    }
    if include_artifacts:
        data["artifacts"] = [
            {
                "stage": a.stage,
                "kind": a.kind,
                "filename": a.filename,
                "relative_path": a.relative_path,
                "size_bytes": a.size_bytes,
                "sha256": a.sha256,
            }
            for a in run.artifacts
        ]
    return data


def print_run(run: Any) -> None:
    color = STATUS_COLORS.get(run.status, "white")
    console.print(f"  [{color}]Run #{run.id}[/{color}]")
    console.print(f"    Status: {run.status}")
    console.print(f"    Kernel: {run.kernel_version} ({run.kernel_release or '?'})")
    console.print(f"    Distribution: {run.distribution}")
    console.print(f"    Stages: {', '.join(run.stages)}")
    console.print(f"    Artifacts: {len(run.artifacts)}")
    if run.failed_stage:
        console.print(
            f"    Failed: {run.failed_stage} / {run.failed_operation}",
            markup=False,
        )
    if run.error_message:
        console.print(f"    Error: {run.error_message}", markup=False)


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: JsonOption = False,
) -> None:
    """List recorded pipeline runs."""
    from raphael_imagegen.db import create_all_tables, get_engine, get_session_factory
    from raphael_imagegen.pipeline.service import list_runs
    from raphael_imagegen.types import StageStatus

    if status is not None:
        try:
            StageStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: " + ", ".join(s.value for s in StageStatus))
            raise typer.Exit(code=USAGE_ERROR) from None

    settings = load_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        runs = list_runs(session, status=status, limit=limit)

        if not runs:
            if json_output:
                console.print("[]", markup=False)
            else:
                console.print("[yellow]No runs recorded[/yellow]")
            return

        if json_output:
            print_json([run_to_dict(r) for r in runs])
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            print_run(r)
            console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID")],
    json_output: JsonOption = False,
) -> None:
    """Show one pipeline run and the files it produced."""
    from raphael_imagegen.db import create_all_tables, get_engine, get_session_factory
    from raphael_imagegen.pipeline.service import RunNotFoundError, get_run

    settings = load_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError as e:
            console.print(f"[red]Run not found: {e.run_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            print_json(run_to_dict(run, include_artifacts=True))
            return

        print_run(run)
        for artifact in run.artifacts:
            console.print(
                f"    - {artifact.relative_path} ({artifact.stage}, "
                f"{artifact.size_bytes} bytes)",
                markup=False,
            )


if __name__ == "__main__":
    app()
