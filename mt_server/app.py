"""
MobileTester HTTP API.

Run with:
    python -m uvicorn mt_server.app:app --port 8000

The server validates uploads, stores APKs and creates queued jobs. Jobs are
started and monitored by the mt-controller process, which shares the job
database. Cancel via the API is best-effort on the provider side: in simulated
mode the server's matrix client is a separate in-memory instance that never
sees the controller's matrices, so only the job record is cancelled.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile

from mt_common.artifacts import ArtifactStore
from mt_common.devices import DeviceCatalog
from mt_common.errors import (
    ArtifactStoreError,
    ConflictError,
    InvalidStateError,
    JobNotFoundError,
    ValidationError,
)
from mt_common.models import COMPLETED, JOB_STATUSES, Job, User
from mt_common.repository import JobRepository
from mt_controller.analysis import compute_insights
from mt_controller.matrix_client import build_matrix_client
from mt_controller.orchestrator import JobOrchestrator
from mt_persistence.artifact_store import build_artifact_store
from mt_persistence.sqlite_repository import SQLiteJobRepository

from .auth import create_get_current_user_dependency

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20

# Global instances (initialized at startup)
repository: JobRepository | None = None
artifact_store: ArtifactStore | None = None
orchestrator: JobOrchestrator | None = None
catalog = DeviceCatalog()


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - MT_DB_PATH: Custom database path (useful for testing)
    """
    return os.environ.get("MT_DB_PATH", "mobiletester.db")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Startup builds the repository, artifact store and an orchestrator used
    for submit, cancel and delete. The reconciliation loop is not started
    here; mt-controller runs it.
    """
    global repository, artifact_store, orchestrator

    repository = SQLiteJobRepository(get_database_path())
    await repository.initialize()

    artifact_store = build_artifact_store(
        os.environ.get("BLOB_READ_WRITE_TOKEN"),
        os.environ.get("MT_ARTIFACT_DIR", "artifacts"),
    )
    orchestrator = JobOrchestrator(
        repository=repository,
        matrix_client=build_matrix_client(
            os.environ.get("MT_TESTLAB_PROJECT_ID") or None,
            catalog=catalog,
            results_bucket=os.environ.get("MT_TESTLAB_RESULTS_BUCKET") or None,
        ),
        catalog=catalog,
        artifact_store=artifact_store,
    )

    yield

    if repository:
        await repository.close()


app = FastAPI(lifespan=lifespan)


def get_repository() -> JobRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


def get_artifact_store() -> ArtifactStore:
    if artifact_store is None:
        raise RuntimeError("Artifact store not initialized")
    return artifact_store


def get_orchestrator() -> JobOrchestrator:
    if orchestrator is None:
        raise RuntimeError("Orchestrator not initialized")
    return orchestrator


def get_catalog() -> DeviceCatalog:
    return catalog


# Create authentication dependency
get_current_user = create_get_current_user_dependency(get_repository)


async def get_owned_job(job_id: str, user: User, orch: JobOrchestrator) -> Job:
    """
    Fetch a job and check that the user owns it.

    Raises:
        HTTPException: 404 if the job does not exist, 403 if it belongs to someone else
    """
    try:
        job = await orch.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    # Authorization: Users can only access their own jobs
    if job.owner_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")

    return job


def parse_device_selection(raw: str | None, catalog: DeviceCatalog) -> list[str]:
    """Decode the devices form field; a missing field selects the default devices."""
    if raw is None or not raw.strip():
        return catalog.list_default()

    try:
        devices = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="devices must be a JSON list")

    if not isinstance(devices, list):
        raise HTTPException(status_code=400, detail="devices must be a JSON list")
    return devices


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint (no authentication required)."""
    return {"status": "ok"}


@app.get("/devices")
async def list_devices(
    cat: DeviceCatalog = Depends(get_catalog),
) -> dict[str, Any]:
    """List the device catalog and the default selection."""
    return {
        "devices": [device.to_dict() for device in cat.list_all()],
        "default": cat.list_default(),
    }


@app.post("/jobs", status_code=201)
async def submit_job(
    apk: UploadFile = File(...),
    devices: str | None = Form(None),
    context: str = Form(""),
    user: User = Depends(get_current_user),
    store: ArtifactStore = Depends(get_artifact_store),
    orch: JobOrchestrator = Depends(get_orchestrator),
    cat: DeviceCatalog = Depends(get_catalog),
) -> dict[str, Any]:
    """
    Upload an APK and queue a test job.

    Requires authentication. The job is started by the controller; this
    endpoint returns as soon as the job is queued.

    Returns:
        Dictionary with job_id, status and the accepted device list

    Raises:
        HTTPException: 400 for invalid uploads or device selections
        HTTPException: 502 if the artifact cannot be stored
    """
    device_ids = parse_device_selection(devices, cat)

    filename = apk.filename or ""
    data = await apk.read()
    validation = store.validate(filename, len(data))
    if not validation.valid:
        raise HTTPException(status_code=400, detail=validation.error)

    try:
        artifact_ref = await store.upload(filename, data, user.id)
    except ArtifactStoreError as e:
        logger.error(f"Upload failed for user {user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to store APK")

    try:
        job_id = await orch.submit(artifact_ref, device_ids, context, owner_id=user.id)
    except ValidationError as e:
        try:
            await store.delete(artifact_ref)
        except ArtifactStoreError as cleanup_error:
            logger.warning(f"Failed to remove rejected upload: {cleanup_error}")
        raise HTTPException(status_code=400, detail=str(e))

    job = await orch.get_job(job_id)
    return {
        "job_id": job.id,
        "status": job.status,
        "devices": job.device_selection,
    }


@app.get("/jobs")
async def list_jobs(
    status: str | None = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    user: User = Depends(get_current_user),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    List the authenticated user's jobs, newest first, with per-status counts.

    Raises:
        HTTPException: 400 for an unknown status filter
    """
    if status is not None and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    all_jobs = await orch.list_jobs(user.id)
    stats = {s: 0 for s in JOB_STATUSES}
    for job in all_jobs:
        stats[job.status] += 1
    stats["total"] = len(all_jobs)

    matching = stats[status] if status else len(all_jobs)
    jobs = await orch.list_jobs(user.id, status=status, limit=limit)

    return {
        "jobs": [job.to_summary_dict() for job in jobs],
        "stats": stats,
        "pagination": {
            "limit": limit,
            "total": matching,
            "has_more": matching > limit,
        },
    }


@app.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    user: User = Depends(get_current_user),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Get a job with its results and report.

    Completed jobs also include dashboard insights.

    Raises:
        HTTPException: 404 if job_id not found
        HTTPException: 403 if user doesn't own this job
    """
    job = await get_owned_job(job_id, user, orch)

    result = job.to_dict()
    if job.status == COMPLETED:
        result["insights"] = compute_insights(job.raw_results or []).to_dict()
    return result


@app.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    user: User = Depends(get_current_user),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Cancel a queued or running job. Cancelling a finished job is a no-op.

    Raises:
        HTTPException: 404 if job_id not found
        HTTPException: 403 if user doesn't own this job
        HTTPException: 409 if the job kept changing while cancelling
    """
    await get_owned_job(job_id, user, orch)

    try:
        cancelled = await orch.cancel(job_id)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    job = await orch.get_job(job_id)
    return {"cancelled": cancelled, "status": job.status}


@app.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    user: User = Depends(get_current_user),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Delete a completed or failed job and its APK.

    Raises:
        HTTPException: 404 if job_id not found
        HTTPException: 403 if user doesn't own this job
        HTTPException: 409 if the job is still queued or running
    """
    await get_owned_job(job_id, user, orch)

    try:
        await orch.delete(job_id)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    return {"deleted": True, "job_id": job_id}
