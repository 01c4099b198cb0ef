"""
Pipeline runner — top-level orchestration: platform → image + receipt.

Stages run strictly in order, each starting only after its predecessor
succeeded:

    resolve → toolchain → dependency_cache → artifact_build
            → artifact_gate → runtime_assembly

The first failure marks its stage FAILED, leaves the rest SKIPPED, writes
the receipt, and re-raises. Nothing retries.

The artifact and the image are published together in the last stage, and
only after the gate accepted the artifact. A failed run removes whatever an
earlier run published for the same target, so the output directory never
holds an artifact or image that its receipt does not describe.
"""
import logging
import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Type, Union

from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.build import artifact_path, build_artifact, publish_artifact
from oxker_pipeline.core.cache import warm_dependency_cache
from oxker_pipeline.core.command import CommandResult, CommandRunner, run_command
from oxker_pipeline.core.elf_check import read_artifact
from oxker_pipeline.core.image import assemble_image
from oxker_pipeline.core.manifest import load_manifest, snapshot_source
from oxker_pipeline.core.target import (
    detect_host_arch,
    normalize_arch,
    read_resolution,
    resolve_target,
    write_resolution,
)
from oxker_pipeline.core.toolchain import prepare_toolchain
from oxker_pipeline.errors import (
    AssemblyError,
    CompilationError,
    DependencyResolutionError,
    PipelineError,
)
from oxker_pipeline.io.schema import (
    ArtifactInfo,
    CommandRecord,
    ImageInfo,
    JobInfo,
    ManifestInfo,
    PipelineReceipt,
    PlatformInfo,
    RunStatus,
    SourceInfo,
    StageName,
    StageRecord,
    StageStatus,
    ToolchainInfo,
    hash_file,
    now_iso,
)
from oxker_pipeline.io.writer import write_receipt
from oxker_pipeline.policy.profile import Profile, TargetArch
from oxker_pipeline.policy.verdict import Verdict, gate_artifact

logger = logging.getLogger(__name__)

IMAGE_FILE = "image.tar"

# Error class a stage reports when a filesystem or parse error escapes it
_STAGE_ERRORS: Dict[StageName, Type[PipelineError]] = {
    StageName.RESOLVE: PipelineError,
    StageName.TOOLCHAIN: DependencyResolutionError,
    StageName.DEPENDENCY_CACHE: DependencyResolutionError,
    StageName.ARTIFACT_BUILD: CompilationError,
    StageName.ARTIFACT_GATE: AssemblyError,
    StageName.RUNTIME_ASSEMBLY: AssemblyError,
}


def _fail(record: StageRecord, error: PipelineError) -> None:
    record.status = StageStatus.FAILED
    record.error = str(error)
    if error.stage is None:
        error.stage = record.name.value


@contextmanager
def _stage(receipt: PipelineReceipt, name: StageName) -> Iterator[StageRecord]:
    record = receipt.stage(name)
    t0 = time.monotonic()
    logger.info(f"── stage {name.value}")
    try:
        yield record
    except PipelineError as e:
        _fail(record, e)
        raise
    except (OSError, ValueError) as e:
        error = _STAGE_ERRORS[name](f"{type(e).__name__}: {e}", stage=name.value)
        _fail(record, error)
        raise error from e
    else:
        record.status = StageStatus.SUCCESS
    finally:
        record.duration_ms = int((time.monotonic() - t0) * 1000)


def _record_commands(record: StageRecord, results: List[Optional[CommandResult]]) -> None:
    for r in results:
        if r is None:
            continue
        record.commands.append(CommandRecord(
            command=r.command,
            exit_code=r.exit_code,
            duration_ms=r.duration_ms,
            stdout_path=str(r.stdout_path) if r.stdout_path else None,
            stderr_path=str(r.stderr_path) if r.stderr_path else None,
        ))


def _withdraw_outputs(paths: List[Path]) -> None:
    """Remove previously published outputs a failed run no longer vouches for."""
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error(f"Could not remove stale output {path}: {e}")
        else:
            logger.info(f"Removed stale output {path}")


def run_pipeline(
    requested: Union[str, TargetArch],
    project_dir: Path,
    host: Union[str, TargetArch, None] = None,
    settings: Optional[PipelineSettings] = None,
    profile: Optional[Profile] = None,
    runner: CommandRunner = run_command,
    which: Callable[[str], Optional[str]] = shutil.which,
    job_id: Optional[str] = None,
    ref_name: Optional[str] = None,
) -> PipelineReceipt:
    """
    Build and package oxker for *requested* from the crate at *project_dir*.

    Parameters
    ----------
    requested : str or TargetArch
        Target architecture (amd64, arm64, arm).
    project_dir : Path
        Crate root holding Cargo.toml, optional Cargo.lock, and src/.
    host : str or TargetArch, optional
        Build-host architecture. Detected when omitted.
    runner : callable, optional
        Command runner; defaults to run_command.
    ref_name : str, optional
        Image reference annotation (e.g. "oxker:local").

    Returns
    -------
    PipelineReceipt
        Also written to <artifacts>/<triple>/pipeline_receipt.json.

    Raises
    ------
    PipelineError
        Subclass matching the failing stage.
    """
    if settings is None:
        settings = PipelineSettings()
    if profile is None:
        profile = Profile.v1()
    if job_id is None:
        job_id = uuid.uuid4().hex

    project_dir = Path(project_dir)
    run_dir = settings.WORKSPACE_ROOT / job_id
    output_dir = run_dir
    published: List[Path] = []

    receipt = PipelineReceipt(
        job=JobInfo(job_id=job_id, created_at=now_iso()),
        platform=PlatformInfo(
            requested_arch=str(getattr(requested, "value", requested)),
            host_arch=str(getattr(host, "value", host)) if host is not None else None,
        ),
        stages=[StageRecord(name=name) for name in StageName],
    )
    logger.info(f"Starting pipeline job {job_id} for {receipt.platform.requested_arch}")

    try:
        # 1. Resolve, before anything touches the toolchain
        with _stage(receipt, StageName.RESOLVE) as record:
            host_arch = detect_host_arch() if host is None else normalize_arch(host)
            receipt.platform.host_arch = host_arch.value
            spec = resolve_target(requested, host_arch, profile)
            receipt.toolchain = ToolchainInfo(
                arch=spec.arch.value,
                target_triple=spec.target_triple,
                linker=spec.linker,
                rustflags=list(spec.rustflags),
                host_package=spec.host_package,
                cross=spec.cross,
                cargo_env=spec.cargo_env(),
            )
            output_dir = settings.artifacts_dir(spec.target_triple)
            published = [
                artifact_path(
                    settings.ARTIFACTS_PATH, spec.target_triple, profile.binary_name, profile.build_profile
                ),
                output_dir / IMAGE_FILE,
            ]
            write_resolution(spec, run_dir)
            logs_dir = output_dir / "logs"
            if logs_dir.exists():
                shutil.rmtree(logs_dir)

        # 2. Toolchain
        with _stage(receipt, StageName.TOOLCHAIN) as record:
            triple, host_package = read_resolution(run_dir)
            record.details = {"target": triple, "compiler": host_package or ""}
            results = prepare_toolchain(spec, settings, logs_dir, runner=runner, which=which)
            _record_commands(record, results)

        # 3. Dependency cache (manifest only)
        with _stage(receipt, StageName.DEPENDENCY_CACHE) as record:
            try:
                manifest = load_manifest(project_dir)
            except (FileNotFoundError, ValueError) as e:
                raise DependencyResolutionError(str(e)) from e
            receipt.manifest = ManifestInfo(
                package_name=manifest.package_name,
                package_version=manifest.package_version,
                manifest_sha256=manifest.manifest_sha256,
                has_lockfile=manifest.has_lockfile,
                dependencies=dict(manifest.dependencies),
            )
            cache = warm_dependency_cache(
                spec, manifest, project_dir, settings, logs_dir, runner=runner, profile=profile
            )
            record.cache_hit = cache.hit
            record.details = {"cache_key": cache.key, "cache_dir": str(cache.cache_dir)}
            _record_commands(record, [cache.command])

        # 4. Artifact build against the cache, inside the run workspace
        with _stage(receipt, StageName.ARTIFACT_BUILD) as record:
            try:
                source = snapshot_source(project_dir)
            except FileNotFoundError as e:
                raise CompilationError(str(e)) from e
            receipt.source = SourceInfo(
                snapshot_sha256=source.snapshot_sha256,
                file_count=len(source.files),
            )
            build = build_artifact(
                spec, manifest, project_dir, cache, run_dir, settings, logs_dir,
                runner=runner, profile=profile,
            )
            record.details = {"invalidated": str(len(build.invalidated))}
            _record_commands(record, [build.command])
            receipt.artifact = ArtifactInfo(
                path=str(build.built_path),
                sha256=build.sha256,
                size_bytes=build.size_bytes,
            )

        # 5. Gate: nothing is published unless the artifact is a static executable
        with _stage(receipt, StageName.ARTIFACT_GATE) as record:
            meta = read_artifact(build.built_path)
            verdict, reasons = gate_artifact(meta, spec)
            receipt.artifact.elf_machine = meta.machine
            receipt.artifact.elf_type = meta.elf_type
            receipt.artifact.build_id = meta.build_id
            receipt.artifact.static = meta.is_static
            record.details = {"verdict": verdict.value, "reasons": ",".join(reasons)}
            if verdict == Verdict.REJECT:
                raise AssemblyError(
                    f"Artifact rejected: {', '.join(reasons)}",
                    diagnostics=f"machine={meta.machine} interpreter={meta.interpreter} needed={meta.needed}",
                )

        # 6. Runtime assembly: artifact and image published together
        with _stage(receipt, StageName.RUNTIME_ASSEMBLY) as record:
            dest = publish_artifact(build.built_path, published[0])
            if hash_file(dest) != build.sha256:
                raise AssemblyError(f"Published artifact differs from the built one: {dest}")
            receipt.artifact.path = str(dest)
            logger.info(f"Artifact published: {dest}")

            image = assemble_image(dest, spec, published[1], profile, ref_name=ref_name)
            receipt.image = ImageInfo(
                path=str(image.path),
                sha256=image.sha256,
                manifest_digest=image.manifest_digest,
                config_digest=image.config_digest,
                layer_digest=image.layer_digest,
                architecture=image.architecture,
                variant=image.variant,
                entrypoint=image.entrypoint,
                env=image.env,
                files=image.files,
            )

    except PipelineError as e:
        _withdraw_outputs(published)
        receipt.job.status = RunStatus.FAILED
        receipt.job.error_stage = e.stage
        receipt.job.error_message = str(e)
        receipt.job.finished_at = now_iso()
        try:
            path = write_receipt(receipt, output_dir)
        except OSError as write_error:
            logger.error(f"Could not write receipt for job {job_id} to {output_dir}: {write_error}")
            path = None
        logger.error(f"Pipeline job {job_id} failed in {e.stage}: {e} (receipt: {path})")
        raise
    finally:
        # A failed resolve leaves only the receipt in the run dir; keep it
        if not settings.KEEP_WORKSPACE and output_dir != run_dir:
            shutil.rmtree(run_dir, ignore_errors=True)

    receipt.job.status = RunStatus.SUCCESS
    receipt.job.finished_at = now_iso()
    path = write_receipt(receipt, output_dir)
    logger.info(f"Pipeline job {job_id} finished: {receipt.image.manifest_digest} (receipt: {path})")
    return receipt
