"""
Job checkpoint inspection endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from api.dependencies import get_checkpoint_store
from ingestion.checkpoint import CheckpointStore
from schemas.api import APIResponse, JobCheckpointsResponse
from schemas.checkpoint import ProcessingCheckpoint
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("/{job_id}/checkpoints", response_model=APIResponse[JobCheckpointsResponse])
async def list_checkpoints(
    job_id: str,
    request: Request,
    store: CheckpointStore = Depends(get_checkpoint_store)
):
    """Full checkpoint history of a job, oldest first."""
    start_time = time.perf_counter()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /jobs/{job_id}/checkpoints")

    history = await store.all(job_id)
    if not history:
        raise HTTPException(status_code=404, detail=f"No checkpoints for job {job_id}")

    latest = history[-1]
    return APIResponse(
        request_id=request_id,
        api_latency_ms=int((time.perf_counter() - start_time) * 1000),
        data=JobCheckpointsResponse(
            job_id=job_id,
            count=len(history),
            completed=latest.completed,
            latest_type=latest.checkpoint_type,
            checkpoints=history
        )
    )


@router.get("/{job_id}/checkpoints/latest", response_model=APIResponse[ProcessingCheckpoint])
async def latest_checkpoint(
    job_id: str,
    request: Request,
    store: CheckpointStore = Depends(get_checkpoint_store)
):
    """The checkpoint a resume would start from."""
    start_time = time.perf_counter()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /jobs/{job_id}/checkpoints/latest")

    latest = await store.latest(job_id)
    if latest is None:
        raise HTTPException(status_code=404, detail=f"No checkpoints for job {job_id}")

    return APIResponse(
        request_id=request_id,
        api_latency_ms=int((time.perf_counter() - start_time) * 1000),
        data=latest
    )
