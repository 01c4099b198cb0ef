"""
PipelineReceipt schema

Single authoritative JSON receipt per pipeline run.
Records what was requested, how it resolved, what each stage did, and
what came out. Written whether the run succeeded or not.

Runtime contract fields (present in every receipt):
  package_name, pipeline_version, profile_id, schema_version.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from oxker_pipeline import PACKAGE_NAME, PIPELINE_VERSION, PROFILE_ID, SCHEMA_VERSION


# =============================================================================
# Enums
# =============================================================================

class StageName(str, Enum):
    """Pipeline stages, in execution order."""
    RESOLVE = "resolve"
    TOOLCHAIN = "toolchain"
    DEPENDENCY_CACHE = "dependency_cache"
    ARTIFACT_BUILD = "artifact_build"
    ARTIFACT_GATE = "artifact_gate"
    RUNTIME_ASSEMBLY = "runtime_assembly"


class StageStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# =============================================================================
# Stage records
# =============================================================================

class CommandRecord(BaseModel):
    """One external command run by a stage."""
    command: str
    exit_code: int
    duration_ms: int = 0
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None


class StageRecord(BaseModel):
    """What one stage did."""
    name: StageName
    status: StageStatus = StageStatus.SKIPPED
    commands: List[CommandRecord] = []
    duration_ms: int = 0
    cache_hit: Optional[bool] = None
    error: Optional[str] = None
    details: Dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Inputs
# =============================================================================

class PlatformInfo(BaseModel):
    requested_arch: str
    host_arch: Optional[str] = None


class ToolchainInfo(BaseModel):
    """Frozen copy of the resolved ToolchainSpec."""
    arch: str
    target_triple: str
    linker: Optional[str] = None
    rustflags: List[str] = []
    host_package: Optional[str] = None
    cross: bool = False
    cargo_env: Dict[str, str] = Field(default_factory=dict)


class ManifestInfo(BaseModel):
    package_name: str
    package_version: str
    manifest_sha256: str
    has_lockfile: bool
    dependencies: Dict[str, str] = Field(default_factory=dict)


class SourceInfo(BaseModel):
    snapshot_sha256: str
    file_count: int


# =============================================================================
# Outputs
# =============================================================================

class ArtifactInfo(BaseModel):
    path: str
    sha256: str
    size_bytes: int
    elf_machine: Optional[str] = None
    elf_type: Optional[str] = None
    build_id: Optional[str] = None
    static: Optional[bool] = None


class ImageInfo(BaseModel):
    path: str
    sha256: str
    manifest_digest: str
    config_digest: str
    layer_digest: str
    architecture: str
    variant: Optional[str] = None
    entrypoint: List[str]
    env: List[str]
    files: List[str]


# =============================================================================
# Top-level receipt
# =============================================================================

class PipelineInfo(BaseModel):
    package_name: str = PACKAGE_NAME
    pipeline_version: str = PIPELINE_VERSION
    schema_version: str = SCHEMA_VERSION
    profile_id: str = PROFILE_ID


class JobInfo(BaseModel):
    job_id: str
    created_at: str  # ISO 8601
    finished_at: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    error_stage: Optional[str] = None
    error_message: Optional[str] = None


class PipelineReceipt(BaseModel):
    """
    Single receipt for one pipeline run.

    One file per target: <artifacts>/<triple>/pipeline_receipt.json
    """
    pipeline: PipelineInfo = PipelineInfo()
    job: JobInfo
    platform: PlatformInfo
    toolchain: Optional[ToolchainInfo] = None
    manifest: Optional[ManifestInfo] = None
    source: Optional[SourceInfo] = None
    stages: List[StageRecord] = []
    artifact: Optional[ArtifactInfo] = None
    image: Optional[ImageInfo] = None

    def stage(self, name: StageName) -> StageRecord:
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(name.value)


# =============================================================================
# Helpers
# =============================================================================

def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
