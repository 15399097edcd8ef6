"""
Health check endpoint with checkpoint store status
"""

from fastapi import APIRouter, Depends, Request
from api.dependencies import get_checkpoint_store
from core.config import settings
from ingestion.checkpoint import CheckpointStore
from schemas.api import APIResponse, CheckpointStoreInfo, HealthCheckResponse
from datetime import datetime
import psutil
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

HEALTH_CHECK_PREFIX = "__health__/"


@router.get("/health", response_model=APIResponse[HealthCheckResponse])
async def health_check(request: Request, store: CheckpointStore = Depends(get_checkpoint_store)):
    """
    Health check endpoint.

    Returns:
    - Checkpoint backend reachability and write failures
    - Checkpoint counts known to this process
    - Process memory
    """
    start_time = time.perf_counter()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    reachable = True
    if store.backend is not None:
        try:
            await store.backend.list(HEALTH_CHECK_PREFIX)
        except Exception as e:
            reachable = False
            logger.error(f"[{request_id}] Checkpoint backend unreachable: {str(e)}")

    stats = store.statistics()
    health = HealthCheckResponse(
        timestamp=datetime.utcnow(),
        environment=settings.ENVIRONMENT,
        checkpoint_store=CheckpointStoreInfo(
            backend=type(store.backend).__name__ if store.backend is not None else "memory",
            reachable=reachable,
            write_failures=store.write_failures,
            tracked_jobs=stats.total_jobs,
            total_checkpoints=stats.total_checkpoints,
            completed_jobs=stats.completed_jobs,
            newest_checkpoint=stats.newest_checkpoint
        ),
        memory_bytes=psutil.Process().memory_info().rss
    )

    return APIResponse(
        request_id=request_id,
        api_latency_ms=int((time.perf_counter() - start_time) * 1000),
        data=health
    )
