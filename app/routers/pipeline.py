"""
Pipeline Router

Toolchain resolution and build submission for the oxker pipeline.
Builds run as background tasks in this process; status is tracked in
memory and the receipt on disk is authoritative once a run finishes.
"""
import logging
import uuid
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.config import Settings
from oxker_pipeline.core.target import resolve_target
from oxker_pipeline.errors import PipelineError, UnsupportedTargetError
from oxker_pipeline.io.writer import RECEIPT_FILE, read_receipt
from oxker_pipeline.policy.profile import Profile, TargetArch
from oxker_pipeline.runner import run_pipeline

logger = logging.getLogger(__name__)


# =============================================================================
# Dependencies
# =============================================================================

def get_settings() -> Settings:
    return Settings()


# =============================================================================
# Request / Response Models
# =============================================================================

class TargetRow(BaseModel):
    arch: str
    target_triple: str
    cross_linker: str
    host_package: str
    rustflags: List[str]


class ResolveRequest(BaseModel):
    arch: str = Field(..., description="Target architecture: amd64, arm64, arm")
    host_arch: Optional[str] = Field(None, description="Build-host architecture (default: server's)")


class ResolveResponse(BaseModel):
    arch: str
    target_triple: str
    linker: Optional[str] = None
    host_package: Optional[str] = None
    rustflags: List[str]
    cross: bool
    cargo_env: Dict[str, str]


class BuildRequest(BaseModel):
    arch: str = Field(..., description="Target architecture: amd64, arm64, arm")
    project_dir: str = Field(..., description="Crate root on the server (Cargo.toml, src/)")
    host_arch: Optional[str] = Field(None, description="Build-host architecture (default: server's)")
    ref_name: Optional[str] = Field(None, description="Image reference annotation")


class BuildResponse(BaseModel):
    job_id: str
    status: str
    message: str


# =============================================================================
# In-process job registry
# =============================================================================

_jobs: Dict[str, dict] = {}
_jobs_lock = Lock()

# Finished jobs beyond this are forgotten, oldest first
MAX_TRACKED_JOBS = 256
_FINISHED = ("SUCCESS", "FAILED")


def _set_job(job_id: str, **fields) -> None:
    with _jobs_lock:
        _jobs.setdefault(job_id, {}).update(fields)


def _evict_finished() -> None:
    with _jobs_lock:
        excess = len(_jobs) - MAX_TRACKED_JOBS
        if excess <= 0:
            return
        stale = [job_id for job_id, job in _jobs.items() if job.get("status") in _FINISHED][:excess]
        for job_id in stale:
            del _jobs[job_id]
    if stale:
        logger.debug(f"Forgot {len(stale)} finished jobs")


def _execute_build(job_id: str, request: BuildRequest, settings: Settings) -> None:
    _set_job(job_id, status="RUNNING")
    try:
        receipt = run_pipeline(
            request.arch,
            Path(request.project_dir),
            host=request.host_arch,
            settings=settings,
            job_id=job_id,
            ref_name=request.ref_name,
        )
    except PipelineError as e:
        logger.error(f"Build {job_id} failed in {e.stage}: {e}")
        _set_job(job_id, status="FAILED", error_stage=e.stage, error=str(e), diagnostics=e.diagnostics)
        return
    except Exception as e:
        logger.exception(f"Build {job_id} crashed")
        _set_job(job_id, status="FAILED", error_stage=None, error=f"{type(e).__name__}: {e}", diagnostics="")
        return
    receipt_path = settings.artifacts_dir(receipt.toolchain.target_triple) / RECEIPT_FILE
    _set_job(job_id, status="SUCCESS", receipt_path=str(receipt_path))


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


@router.get("/targets", response_model=List[TargetRow])
async def list_targets():
    """Supported architectures and their toolchain rows."""
    profile = Profile.v1()
    return [
        TargetRow(
            arch=arch.value,
            target_triple=profile.entry(arch).target_triple,
            cross_linker=profile.entry(arch).cross_linker,
            host_package=profile.entry(arch).host_package,
            rustflags=list(profile.entry(arch).rustflags),
        )
        for arch in TargetArch
    ]


@router.post("/resolve", response_model=ResolveResponse)
async def resolve(request: ResolveRequest):
    """Resolve the toolchain for a (target, host) pair."""
    try:
        spec = resolve_target(request.arch, request.host_arch)
    except UnsupportedTargetError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return ResolveResponse(
        arch=spec.arch.value,
        target_triple=spec.target_triple,
        linker=spec.linker,
        host_package=spec.host_package,
        rustflags=list(spec.rustflags),
        cross=spec.cross,
        cargo_env=spec.cargo_env(),
    )


@router.post("/builds", response_model=BuildResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_build(
    request: BuildRequest,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
):
    """
    Submit a pipeline run.

    The target is resolved up front so an unsupported architecture is
    rejected with 422 before anything is queued.
    """
    try:
        resolve_target(request.arch, request.host_arch)
    except UnsupportedTargetError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if not (Path(request.project_dir) / "Cargo.toml").is_file():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No Cargo.toml in {request.project_dir}",
        )

    job_id = uuid.uuid4().hex
    _set_job(job_id, status="QUEUED", arch=request.arch)
    _evict_finished()
    background_tasks.add_task(_execute_build, job_id, request, settings)

    return BuildResponse(
        job_id=job_id,
        status="QUEUED",
        message=f"Pipeline queued for {request.arch}",
    )


@router.get("/builds/{job_id}")
async def get_build(job_id: str):
    """Status of a submitted run; includes the receipt once it succeeded."""
    with _jobs_lock:
        job = dict(_jobs.get(job_id) or {})
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")

    response = {"job_id": job_id, **job}
    receipt_path = job.get("receipt_path")
    if receipt_path:
        receipt = read_receipt(Path(receipt_path))
        # A later run for the same target replaces the receipt
        if receipt is not None and receipt.job.job_id == job_id:
            response["receipt"] = receipt.model_dump(mode="json")
    return response
