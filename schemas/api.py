"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Generic, TypeVar
from datetime import datetime
from models.base import CheckpointType
from schemas.checkpoint import ProcessingCheckpoint

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T

# ============================================================================
# Health Check Schemas
# ============================================================================

class CheckpointStoreInfo(BaseModel):
    """Checkpoint store status for health check"""
    backend: str
    reachable: bool
    write_failures: int = 0
    tracked_jobs: int = 0
    total_checkpoints: int = 0
    completed_jobs: int = 0
    newest_checkpoint: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    environment: str
    checkpoint_store: CheckpointStoreInfo
    memory_bytes: int = 0
    status: Optional[str] = Field(None, description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        store = values.get("checkpoint_store")
        if store is None or not store.reachable:
            return "unhealthy"
        if store.write_failures:
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "environment": "production",
                "checkpoint_store": {
                    "backend": "file",
                    "reachable": True,
                    "write_failures": 0,
                    "tracked_jobs": 3,
                    "total_checkpoints": 42,
                    "completed_jobs": 2
                },
                "memory_bytes": 104857600,
                "status": "healthy"
            }
        }

# ============================================================================
# Job Checkpoint Schemas
# ============================================================================

class JobCheckpointsResponse(BaseModel):
    """Checkpoint history of one job, oldest first"""
    job_id: str
    count: int
    completed: bool
    latest_type: Optional[CheckpointType] = None
    checkpoints: List[ProcessingCheckpoint] = Field(default_factory=list)
