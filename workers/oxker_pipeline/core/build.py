"""
Artifact build — compile the real source against the warmed cache.

Per-run layout:
    <run_dir>/project/   Cargo.* + src/ copied from the caller's crate
    <run_dir>/target/    copy of the cache target dir (cache stays read-only)

The entry unit is invalidated explicitly before building: the crate's
fingerprints and compiled outputs are removed, so cargo must recompile it
whatever the file timestamps say, while dependency outputs are reused.

The binary lands at <target>/<triple>/<profile>/<binary> inside the run
workspace. Publishing to <artifacts>/<triple>/<profile>/<binary> is a
separate step, taken only once the artifact has passed the gate.
"""
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.cache import CacheResult, cargo_build_argv
from oxker_pipeline.core.command import CommandResult, CommandRunner, run_command, write_logs
from oxker_pipeline.core.manifest import ENTRY_UNIT, SOURCE_DIR, DependencyManifest
from oxker_pipeline.core.target import ToolchainSpec
from oxker_pipeline.errors import CompilationError
from oxker_pipeline.io.schema import hash_file
from oxker_pipeline.policy.profile import Profile

logger = logging.getLogger(__name__)

STAGE = "artifact_build"


@dataclass
class BuildOutput:
    """Result of the artifact build stage."""
    project_dir: Path
    target_dir: Path
    built_path: Path
    sha256: str
    size_bytes: int
    command: CommandResult
    invalidated: List[str] = field(default_factory=list)


def artifact_path(target_dir: Path, target_triple: str, binary_name: str, build_profile: str = "release") -> Path:
    """Where cargo leaves the binary. Derivable, never searched for."""
    return target_dir / target_triple / build_profile / binary_name


def stage_project(project_dir: Path, run_dir: Path, manifest: DependencyManifest) -> Path:
    """Copy the manifest files and src/ into the run's project dir."""
    dest = run_dir / "project"
    if dest.exists():
        shutil.rmtree(dest)
    dest.mkdir(parents=True)
    for name in manifest.manifest_files():
        shutil.copy2(project_dir / name, dest / name)
    shutil.copytree(project_dir / SOURCE_DIR, dest / SOURCE_DIR)
    return dest


def seed_target_dir(cache: CacheResult, run_dir: Path) -> Path:
    """Copy the cached target dir so the build never writes into the cache."""
    dest = run_dir / "target"
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(cache.target_dir, dest, symlinks=True)
    return dest


def invalidate_entry_unit(
    target_dir: Path,
    target_triple: str,
    manifest: DependencyManifest,
    binary_name: str,
    build_profile: str = "release",
) -> List[str]:
    """
    Remove everything cargo would use to skip recompiling the crate itself.

    Returns the removed paths, relative to *target_dir*.
    """
    profile_dir = target_dir / target_triple / build_profile
    if not profile_dir.exists():
        return []

    names = {manifest.package_name, manifest.crate_name}
    doomed: List[Path] = []
    for name in names:
        doomed.extend(profile_dir.glob(f".fingerprint/{name}-*"))
        doomed.extend(profile_dir.glob(f"deps/{name}-*"))
    for final in (binary_name, f"{binary_name}.d"):
        candidate = profile_dir / final
        if candidate.exists():
            doomed.append(candidate)

    removed: List[str] = []
    for path in sorted(set(doomed)):
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        removed.append(path.relative_to(target_dir).as_posix())
    return removed


def publish_artifact(built: Path, dest: Path) -> Path:
    """Copy *built* to *dest*, replacing any previous artifact in one step."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.tmp-{uuid.uuid4().hex}")
    try:
        shutil.copyfile(built, tmp)
        os.chmod(tmp, 0o755)
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()
    return dest


def build_artifact(
    spec: ToolchainSpec,
    manifest: DependencyManifest,
    project_dir: Path,
    cache: CacheResult,
    run_dir: Path,
    settings: PipelineSettings,
    logs_dir: Path,
    runner: CommandRunner = run_command,
    profile: Optional[Profile] = None,
) -> BuildOutput:
    """
    Build the release binary for *spec* inside *run_dir*.

    Nothing is published; see publish_artifact.

    Raises
    ------
    CompilationError
        If the entry unit is missing, cargo fails (stderr attached
        verbatim), or cargo succeeds without producing the binary.
    """
    if profile is None:
        profile = Profile.v1()

    if not (project_dir / ENTRY_UNIT).is_file():
        raise CompilationError(f"Entry unit not found: {project_dir / ENTRY_UNIT}", stage=STAGE)

    build_dir = stage_project(project_dir, run_dir, manifest)
    target_dir = seed_target_dir(cache, run_dir)
    invalidated = invalidate_entry_unit(
        target_dir, spec.target_triple, manifest, profile.binary_name, profile.build_profile
    )
    logger.info(f"Invalidated {len(invalidated)} entry-unit outputs for {manifest.package_name}")

    env = spec.cargo_env()
    env["CARGO_TARGET_DIR"] = str(target_dir)
    result = runner(
        cargo_build_argv(settings, spec, profile),
        cwd=build_dir,
        env=env,
        timeout=settings.BUILD_TIMEOUT,
    )
    write_logs(result, logs_dir, "artifact_build.cargo-build")
    if not result.ok:
        raise CompilationError(
            f"Build failed with exit code {result.exit_code}",
            stage=STAGE,
            diagnostics=result.stderr,
        )

    built = artifact_path(target_dir, spec.target_triple, profile.binary_name, profile.build_profile)
    if not built.is_file():
        raise CompilationError(
            f"Build succeeded but no binary at {built}",
            stage=STAGE,
            diagnostics=result.stderr,
        )

    logger.info(f"Artifact built: {built}")

    return BuildOutput(
        project_dir=build_dir,
        target_dir=target_dir,
        built_path=built,
        sha256=hash_file(built),
        size_bytes=built.stat().st_size,
        command=result,
        invalidated=invalidated,
    )
