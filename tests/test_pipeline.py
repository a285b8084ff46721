"""Tests for run inputs, artifacts, the status report and the orchestrator."""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
import respx

from conftest import FAKE_RELEASE, FAKE_UUID, FakeRunner
from raphael_imagegen.boot.entry import ENTRY_RELPATH
from raphael_imagegen.boot.stage import BootImageStage
from raphael_imagegen.config import Settings
from raphael_imagegen.db import create_all_tables, get_engine, get_session_factory
from raphael_imagegen.errors import FatalError
from raphael_imagegen.kernel.stage import KernelBuildStage
from raphael_imagegen.packaging.stage import PackageStage
from raphael_imagegen.pipeline.artifacts import (
    MANIFEST_NAME,
    classify_artifact,
    describe_artifacts,
    generate_manifest,
    write_manifest,
)
from raphael_imagegen.pipeline.inputs import (
    INPUT_KEY_SCHEMA_VERSION,
    compute_input_key,
    create_run_inputs,
)
from raphael_imagegen.pipeline.orchestrator import (
    PipelineOrchestrator,
    Plan,
    host_stages,
    plan_stages,
)
from raphael_imagegen.pipeline.service import (
    WorkDirLockedError,
    list_runs,
    workdir_lock,
)
from raphael_imagegen.pipeline.stage import PipelineContext, Stage, step
from raphael_imagegen.pipeline.status import (
    STATUS_FILENAME,
    StatusReport,
    format_elapsed,
)
from raphael_imagegen.rootfs.stage import RootfsAssemblyStage
from raphael_imagegen.types import StageName, StageOutcome, StageStatus
from test_packaging import make_template
from test_rootfs import BASE_URL, base_tarball


@pytest.fixture
def session():
    engine = get_engine("sqlite:///:memory:")
    create_all_tables(engine)
    session = get_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def client():
    with httpx.Client() as client:
        yield client


class InterruptedStage(Stage):
    """Stage that holds an acquisition when it is interrupted."""

    name = StageName.ROOTFS

    def __init__(self) -> None:
        self.released = False

    def run(self, context: PipelineContext) -> StageOutcome:
        context.stack.push("fake mount", self._release)
        raise KeyboardInterrupt

    def _release(self) -> None:
        self.released = True


class TestRunInputs:
    """Tests for input snapshots and keys."""

    def test_input_key_format(self, settings):
        key = compute_input_key(create_run_inputs(settings, ["kernel"]))
        assert key.startswith("sha256:")
        assert len(key) == len("sha256:") + 64

    def test_input_key_is_deterministic(self, settings):
        first = compute_input_key(create_run_inputs(settings, ["kernel", "package"]))
        second = compute_input_key(create_run_inputs(settings, ["kernel", "package"]))
        assert first == second

    def test_input_key_tracks_outputs(self, make_settings):
        a = create_run_inputs(make_settings(kernel_version="6.18"), ["kernel"])
        b = create_run_inputs(make_settings(kernel_version="6.17"), ["kernel"])
        assert compute_input_key(a) != compute_input_key(b)

    def test_input_key_ignores_paths(self, make_settings, tmp_path):
        a = create_run_inputs(make_settings(), ["boot"])
        b = create_run_inputs(make_settings(work_dir=tmp_path / "other"), ["boot"])
        assert compute_input_key(a) == compute_input_key(b)

    def test_snapshot_contents(self, settings):
        inputs = create_run_inputs(settings, ["kernel", "package"]).to_dict()
        assert inputs["schema_version"] == INPUT_KEY_SCHEMA_VERSION
        assert inputs["kernel"]["version"] == "6.18"
        assert inputs["kernel"]["branch"] == "raphael-6.18"
        assert inputs["rootfs"]["distribution"] == "ubuntu"
        assert inputs["stages"] == ["kernel", "package"]


class TestArtifacts:
    """Tests for artifact classification and manifests."""

    @pytest.mark.parametrize(
        ("filename", "kind"),
        [
            (f"linux-xiaomi-raphael_{FAKE_RELEASE}_arm64.deb", "package"),
            (f"xiaomi-k20pro-boot-ubuntu-{FAKE_RELEASE}.img", "boot"),
            ("root-ubuntu-6.18.img", "rootfs"),
            ("root-ubuntu-6.18.img.xz", "rootfs"),
            (f"Image.gz-{FAKE_RELEASE}", "kernel"),
            ("sm8150-xiaomi-raphael.dtb", "kernel"),
            (f"kernel-{FAKE_RELEASE}-raphael.tar.gz", "archive"),
            ("notes.txt", "other"),
        ],
    )
    def test_classify(self, filename, kind):
        assert classify_artifact(filename) == kind

    def test_describe_skips_symlinks_missing_and_duplicates(self, tmp_path: Path):
        deb = tmp_path / f"linux-xiaomi-raphael_{FAKE_RELEASE}_arm64.deb"
        deb.write_bytes(b"deb")
        alias = tmp_path / "Image.gz-6.18"
        alias.symlink_to(deb.name)

        artifacts = describe_artifacts(
            [deb, deb, alias, tmp_path / "missing.img"], tmp_path
        )

        assert len(artifacts) == 1
        info = artifacts[0]
        assert info.relative_path == deb.name
        assert info.size_bytes == 3
        assert info.kind == "package"
        assert len(info.sha256) == 64

    def test_describe_outside_root_keeps_absolute_path(self, tmp_path: Path):
        image = tmp_path / "elsewhere" / "root-ubuntu-6.18.img"
        image.parent.mkdir()
        image.write_bytes(b"\0")
        [info] = describe_artifacts([image], tmp_path / "output")
        assert info.relative_path == str(image)

    def test_manifest(self, tmp_path: Path):
        deb = tmp_path / "a.deb"
        deb.write_bytes(b"12345")
        manifest = generate_manifest(
            describe_artifacts([deb], tmp_path),
            run_id=7,
            input_key="sha256:abc",
            extra_metadata={"release": FAKE_RELEASE},
        )
        assert manifest["run_id"] == 7
        assert manifest["input_key"] == "sha256:abc"
        assert manifest["metadata"] == {"release": FAKE_RELEASE}
        assert manifest["summary"] == {
            "total_artifacts": 1,
            "total_size_bytes": 5,
            "kinds": ["package"],
        }

        path = write_manifest(manifest, tmp_path / "out" / MANIFEST_NAME)
        assert json.loads(path.read_text())["artifacts"][0]["filename"] == "a.deb"


class TestStatusReport:
    """Tests for the human-readable status report."""

    def test_format_elapsed(self):
        assert format_elapsed(0) == "00:00:00"
        assert format_elapsed(3725.9) == "01:02:05"

    def test_render_progress(self, tmp_path: Path):
        started = datetime(2026, 1, 1, tzinfo=timezone.utc)
        report = StatusReport(
            stages=[StageName.KERNEL, StageName.PACKAGE], started_at=started
        )
        report.outcomes[StageName.KERNEL] = StageOutcome(
            stage=StageName.KERNEL,
            status=StageStatus.SUCCEEDED,
            message="Built",
            duration=61,
        )
        report.current = StageName.PACKAGE

        text = report.render(now=started + timedelta(seconds=90))

        assert "Elapsed:  00:01:30" in text
        assert "Progress: 1/2 (50%)" in text
        assert "Current:  package" in text
        assert "kernel   succeeded (00:01:01) - Built" in text
        assert "package  running" in text

    def test_failure_section(self, tmp_path: Path):
        report = StatusReport(stages=[StageName.BOOT])
        report.failure = "Stage 'boot' failed\nsecond line"
        path = report.write(tmp_path)
        assert path.name == STATUS_FILENAME
        text = path.read_text()
        assert "boot     pending" in text
        assert "Failure:\n  Stage 'boot' failed\n  second line" in text

    def test_empty_plan_is_complete(self):
        assert StatusReport(stages=[]).progress == 1.0


class TestPlans:
    """Tests for plan_stages and host_stages."""

    def test_build_plan(self):
        names = [s.name for s in plan_stages(Plan.BUILD)]
        assert names == [
            StageName.KERNEL,
            StageName.PACKAGE,
            StageName.ROOTFS,
            StageName.BOOT,
        ]

    def test_build_plan_skip_kernel(self):
        names = [s.name for s in plan_stages(Plan.BUILD, skip_kernel=True)]
        assert names == [StageName.PACKAGE, StageName.ROOTFS, StageName.BOOT]

    @pytest.mark.parametrize(
        ("plan", "expected"),
        [
            (Plan.KERNEL, [StageName.KERNEL, StageName.PACKAGE]),
            (Plan.ROOTFS, [StageName.PACKAGE, StageName.ROOTFS]),
            (Plan.BOOT, [StageName.BOOT]),
        ],
    )
    def test_partial_plans(self, plan, expected):
        assert [s.name for s in plan_stages(plan)] == expected

    def test_reused_packages_need_no_packaging_tools(self):
        assert host_stages(plan_stages(Plan.ROOTFS)) == [StageName.ROOTFS]
        assert host_stages(plan_stages(Plan.KERNEL)) == [
            StageName.KERNEL,
            StageName.PACKAGE,
        ]


class TestStep:
    """Tests for step attribution."""

    def test_first_attribution_wins(self):
        with pytest.raises(FatalError) as exc_info:
            with step(StageName.ROOTFS, "outer"):
                with step(StageName.ROOTFS, "inner"):
                    raise FatalError("boom")
        assert exc_info.value.stage == StageName.ROOTFS
        assert exc_info.value.operation == "inner"

    def test_other_exceptions_pass_through(self):
        with pytest.raises(ValueError):
            with step(StageName.BOOT, "write output"):
                raise ValueError("not a pipeline error")


class TestWorkdirLock:
    """Tests for the working directory lock."""

    def test_second_holder_is_rejected(self, tmp_path: Path):
        with workdir_lock(tmp_path / "work"):
            with pytest.raises(WorkDirLockedError) as exc_info:
                with workdir_lock(tmp_path / "work"):
                    pass
        assert exc_info.value.code == "workdir_locked"

    def test_released_after_exit(self, tmp_path: Path):
        with workdir_lock(tmp_path / "work"):
            pass
        with workdir_lock(tmp_path / "work"):
            pass


@pytest.fixture
def make_orchestrator(fake_runner, stack, client, session, tmp_path):
    """Factory for an orchestrator driven by the fake runner."""

    def factory(settings, stages, **overrides) -> PipelineOrchestrator:
        options = {
            "runner": fake_runner,
            "stack": stack,
            "http": client,
            "session": session,
            "preflight": False,
            "install_handlers": False,
            "sleep": lambda seconds: None,
            "binfmt_dir": tmp_path / "binfmt",
        }
        options.update(overrides)
        return PipelineOrchestrator(settings, stages, **options)

    return factory


def full_plan():
    return [
        KernelBuildStage(),
        PackageStage(),
        RootfsAssemblyStage(needs_shim=False),
        BootImageStage(),
    ]


class TestPipelineOrchestrator:
    """End-to-end runs against the simulated toolchain."""

    @respx.mock
    def test_full_build(self, make_orchestrator, settings, fake_runner, stack, session):
        respx.get(BASE_URL).mock(
            return_value=httpx.Response(200, content=base_tarball())
        )
        make_template(settings.payload_dir, "firmware-xiaomi-raphael")
        make_template(settings.payload_dir, "alsa-xiaomi-raphael")
        stages = full_plan()

        result = make_orchestrator(settings, stages).run()

        assert result.success, result.error and result.error.report()
        assert [o.stage for o in result.outcomes] == [s.name for s in stages]
        assert stack.balanced
        assert result.cleanup_failures == []
        assert fake_runner.loop_mounts == {}

        out = settings.output_dir
        assert sorted(p.name for p in out.glob("*.deb")) == [
            f"{component}-xiaomi-raphael_{FAKE_RELEASE}_arm64.deb"
            for component in ("alsa", "firmware", "linux")
        ]
        assert (out / f"xiaomi-k20pro-boot-ubuntu-{FAKE_RELEASE}.img").is_file()
        esp = fake_runner.backing(settings.work_dir / "boot" / "boot.img")
        assert f"root=UUID={FAKE_UUID}" in (esp / ENTRY_RELPATH).read_text()

        manifest = json.loads(result.manifest_path.read_text())
        assert manifest["input_key"] == result.input_key
        assert manifest["metadata"]["release"] == FAKE_RELEASE
        assert manifest["metadata"]["rootfs_uuid"] == FAKE_UUID
        assert {"package", "rootfs", "boot", "kernel"} <= set(
            manifest["summary"]["kinds"]
        )

        status = (out / STATUS_FILENAME).read_text()
        assert "Progress: 4/4 (100%)" in status

        [run] = list_runs(session)
        assert run.id == result.run_id
        assert run.status == "succeeded"
        assert run.kernel_release == FAKE_RELEASE
        assert run.rootfs_uuid == FAKE_UUID
        assert run.stages == ["kernel", "package", "rootfs", "boot"]
        assert {a.stage for a in run.artifacts} == {
            "kernel",
            "package",
            "rootfs",
            "boot",
        }

    @respx.mock
    def test_stage_failure_is_reported(
        self, make_orchestrator, settings, fake_runner, stack, session
    ):
        respx.get(BASE_URL).mock(
            return_value=httpx.Response(200, content=base_tarball())
        )
        fake_runner.fail("apt-get upgrade", exit_code=100, output="E: broken")

        result = make_orchestrator(settings, full_plan()).run()

        assert result.status == StageStatus.FAILED
        assert result.error.stage == StageName.ROOTFS
        assert result.error.operation == "upgrade packages"
        assert [o.stage for o in result.outcomes] == [
            StageName.KERNEL,
            StageName.PACKAGE,
        ]
        assert result.manifest_path is None
        assert stack.balanced
        assert fake_runner.loop_mounts == {}

        status = (settings.output_dir / STATUS_FILENAME).read_text()
        assert "rootfs   failed" in status
        assert "boot     pending" in status
        assert "Stage 'rootfs' failed during 'upgrade packages'" in status
        assert "E: broken" in status

        [run] = list_runs(session)
        assert run.status == "failed"
        assert run.failed_stage == "rootfs"
        assert run.failed_operation == "upgrade packages"
        assert run.error_code == "command_failed"

        data = result.to_dict()
        assert data["status"] == "failed"
        assert data["error"]["stage"] == "rootfs"
        assert "E: broken" in data["error"]["output"]

    def test_missing_rootfs_fails_boot(self, make_orchestrator, settings, fake_runner):
        result = make_orchestrator(settings, [BootImageStage()]).run()
        assert not result.success
        assert result.error.code == "missing_artifact"
        assert result.error.operation == "locate root filesystem"
        assert fake_runner.calls == []

    def test_preflight_failure(self, make_orchestrator, settings, fake_runner):
        orchestrator = make_orchestrator(
            settings,
            [KernelBuildStage(), PackageStage()],
            preflight=True,
            which=lambda command: None,
            euid=0,
        )
        result = orchestrator.run()
        assert result.error.code == "preflight_failed"
        assert result.error.stage == StageName.KERNEL
        assert result.error.operation == "preflight"
        assert fake_runner.calls == []

    @respx.mock
    def test_kernel_without_dtb_keeps_esp_clean(
        self, make_orchestrator, settings, tmp_path
    ):
        respx.get(BASE_URL).mock(
            return_value=httpx.Response(200, content=base_tarball())
        )
        runner = FakeRunner(tmp_path / "backing", produce_dtb=False)

        result = make_orchestrator(settings, full_plan(), runner=runner).run()

        assert result.success, result.error and result.error.report()
        boot = result.outcomes[-1]
        assert boot.details["warnings"] == [
            f"dtb-{FAKE_RELEASE} is not a device tree blob"
        ]
        esp = runner.backing(settings.work_dir / "boot" / "boot.img")
        assert (esp / "linux.efi").is_file()
        assert not (esp / "sm8150-xiaomi-raphael.dtb").exists()

    def test_default_cache_without_ccache(
        self, make_orchestrator, make_settings, fake_runner
    ):
        settings = Settings(**make_settings().model_dump(exclude={"cache_enabled"}))
        assert settings.cache_enabled and not settings.cache_requested
        fake_runner.fail("ccache --max-size", exit_code=127, output="not found")

        def which(command: str) -> str | None:
            return None if command == "ccache" else f"/usr/bin/{command}"

        result = make_orchestrator(
            settings,
            [KernelBuildStage(), PackageStage()],
            preflight=True,
            which=which,
            euid=0,
        ).run()

        assert result.success, result.error and result.error.report()
        assert "cache" not in result.outcomes[0].details
        assert not fake_runner.commands("CROSS_COMPILE=ccache")

    def test_locked_workdir(self, make_orchestrator, settings, session):
        orchestrator = make_orchestrator(settings, [BootImageStage()])
        with workdir_lock(settings.work_dir):
            with pytest.raises(WorkDirLockedError):
                orchestrator.run()
        assert list_runs(session) == []

    def test_interrupt_unwinds_and_propagates(
        self, make_orchestrator, settings, stack, session
    ):
        stage = InterruptedStage()
        with pytest.raises(KeyboardInterrupt):
            make_orchestrator(settings, [stage]).run()

        assert stage.released
        assert stack.balanced
        [run] = list_runs(session)
        assert run.status == "failed"
        assert run.error_code == "KeyboardInterrupt"
        status = (settings.output_dir / STATUS_FILENAME).read_text()
        assert "Interrupted: KeyboardInterrupt" in status

    def test_dry_run_boot(self, make_orchestrator, settings, fake_runner):
        image = settings.default_rootfs_image
        image.parent.mkdir(parents=True)
        image.write_bytes(b"\0" * 4096)
        digest = hashlib.sha256(image.read_bytes()).hexdigest()

        outcome = make_orchestrator(settings, [], session=None).dry_run_boot()

        assert outcome.details["uuid"] == FAKE_UUID
        assert [c[0] for c in fake_runner.calls] == ["blkid"]
        assert not settings.work_dir.exists()
        assert hashlib.sha256(image.read_bytes()).hexdigest() == digest
