"""
Dependency cache — compile declared dependencies once per manifest.

A skeleton crate carrying only the real Cargo.toml / Cargo.lock and a
placeholder entry point is built for the resolved triple. Its target
directory becomes the cache, published at:

    <cache_root>/<target_triple>/<cache_key>/
        skeleton/      the placeholder crate
        target/        cargo target dir with compiled dependencies
        cache.json     key record

The key is a pure function of the toolchain and the manifest hash, so
source edits never reach this stage and a hit leaves the directory
untouched. Publication is a rename of a fully built temp directory.
"""
import hashlib
import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from oxker_pipeline import PIPELINE_VERSION
from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.command import CommandResult, CommandRunner, run_command, write_logs
from oxker_pipeline.core.manifest import ENTRY_UNIT, DependencyManifest
from oxker_pipeline.core.target import ToolchainSpec
from oxker_pipeline.errors import DependencyResolutionError
from oxker_pipeline.policy.profile import Profile

logger = logging.getLogger(__name__)

STAGE = "dependency_cache"
CACHE_RECORD = "cache.json"


@dataclass
class CacheResult:
    """Where the warmed cache lives and whether it was reused."""
    key: str
    cache_dir: Path
    target_dir: Path
    hit: bool
    command: Optional[CommandResult] = None


def cache_key(spec: ToolchainSpec, manifest: DependencyManifest) -> str:
    """Cache identity: toolchain + manifest content, nothing else."""
    h = hashlib.sha256()
    for part in (
        PIPELINE_VERSION,
        spec.target_triple,
        " ".join(spec.rustflags),
        spec.linker or "",
        manifest.manifest_sha256,
    ):
        h.update(part.encode("utf-8") + b"\0")
    return h.hexdigest()


def cache_dir_for(cache_root: Path, spec: ToolchainSpec, manifest: DependencyManifest) -> Path:
    return cache_root / spec.target_triple / cache_key(spec, manifest)


def cargo_build_argv(settings: PipelineSettings, spec: ToolchainSpec, profile: Profile) -> List[str]:
    """The one cargo invocation both build phases use."""
    argv = [settings.CARGO_BIN, "build", "--target", spec.target_triple]
    if profile.build_profile == "release":
        argv.insert(2, "--release")
    else:
        argv[2:2] = ["--profile", profile.build_profile]
    return argv


def _cache_record(key: str, spec: ToolchainSpec, manifest: DependencyManifest) -> dict:
    return {
        "key": key,
        "pipeline_version": PIPELINE_VERSION,
        "target_triple": spec.target_triple,
        "rustflags": list(spec.rustflags),
        "linker": spec.linker,
        "manifest_sha256": manifest.manifest_sha256,
        "dependencies": [list(d) for d in manifest.dependencies],
    }


def is_warm(cache_dir: Path, key: str) -> bool:
    """True if *cache_dir* holds a completed cache for *key*."""
    record_path = cache_dir / CACHE_RECORD
    if not record_path.is_file() or not (cache_dir / "target").is_dir():
        return False
    try:
        record = json.loads(record_path.read_text())
    except (OSError, json.JSONDecodeError):
        return False
    return record.get("key") == key


def write_skeleton(
    skeleton_dir: Path,
    project_dir: Path,
    manifest: DependencyManifest,
    profile: Profile,
) -> Path:
    """
    Create the placeholder crate: real manifest files, empty entry point.
    No application source is copied.
    """
    (skeleton_dir / "src").mkdir(parents=True, exist_ok=True)
    for name in manifest.manifest_files():
        shutil.copy2(project_dir / name, skeleton_dir / name)
    (skeleton_dir / ENTRY_UNIT).write_text(profile.placeholder_main)
    return skeleton_dir


def warm_dependency_cache(
    spec: ToolchainSpec,
    manifest: DependencyManifest,
    project_dir: Path,
    settings: PipelineSettings,
    logs_dir: Path,
    runner: CommandRunner = run_command,
    profile: Optional[Profile] = None,
) -> CacheResult:
    """
    Return a warmed dependency cache for (*spec*, *manifest*).

    Raises
    ------
    DependencyResolutionError
        If the skeleton build fails. Cargo's stderr is attached verbatim.
    """
    if profile is None:
        profile = Profile.v1()

    key = cache_key(spec, manifest)
    final_dir = settings.CACHE_ROOT / spec.target_triple / key

    if is_warm(final_dir, key):
        logger.info(f"Dependency cache hit: {spec.target_triple}/{key[:12]}")
        return CacheResult(key=key, cache_dir=final_dir, target_dir=final_dir / "target", hit=True)

    logger.info(
        f"Dependency cache miss: {spec.target_triple}/{key[:12]} "
        f"({len(manifest.dependencies)} declared dependencies)"
    )
    if final_dir.exists():
        # Unreadable or foreign record under our key
        shutil.rmtree(final_dir)

    tmp_dir = final_dir.parent / f".tmp-{uuid.uuid4().hex}"
    tmp_dir.mkdir(parents=True)
    try:
        skeleton_dir = write_skeleton(tmp_dir / "skeleton", project_dir, manifest, profile)
        env = spec.cargo_env()
        env["CARGO_TARGET_DIR"] = str(tmp_dir / "target")

        result = runner(
            cargo_build_argv(settings, spec, profile),
            cwd=skeleton_dir,
            env=env,
            timeout=settings.BUILD_TIMEOUT,
        )
        write_logs(result, logs_dir, "dependency_cache.cargo-build")
        if not result.ok:
            raise DependencyResolutionError(
                f"Dependency build failed with exit code {result.exit_code}",
                stage=STAGE,
                diagnostics=result.stderr,
            )

        (tmp_dir / "target").mkdir(exist_ok=True)
        (tmp_dir / CACHE_RECORD).write_text(
            json.dumps(_cache_record(key, spec, manifest), indent=2, sort_keys=True) + "\n"
        )

        try:
            os.rename(tmp_dir, final_dir)
        except OSError:
            # Another run published the same key first
            if not is_warm(final_dir, key):
                raise
            logger.info(f"Dependency cache published concurrently: {key[:12]}")
    finally:
        if tmp_dir.exists():
            shutil.rmtree(tmp_dir)

    return CacheResult(
        key=key,
        cache_dir=final_dir,
        target_dir=final_dir / "target",
        hit=False,
        command=result,
    )
