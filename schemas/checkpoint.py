"""
Pydantic schemas for processing checkpoints
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from models.base import CheckpointType


class ProcessingCheckpoint(BaseModel):
    """
    Immutable snapshot of a job's progress.

    Each progress step produces a new checkpoint; a checkpoint is never
    edited after it is written.
    """

    checkpoint_id: str
    job_id: str
    sequence: int = Field(..., ge=0)
    processed_lines: int = Field(0, ge=0)
    last_position: int = Field(0, ge=0)
    completion_pct: float = Field(0.0, ge=0.0, le=100.0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    completed: bool = False
    checkpoint_type: CheckpointType = CheckpointType.PROGRESS
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def storage_key(self) -> str:
        return f"{self.job_id}/{self.checkpoint_id}"


class CheckpointProgress(BaseModel):
    """Progress reported by the coordinator when appending a checkpoint"""

    processed_lines: int = Field(..., ge=0)
    last_position: int = Field(..., ge=0)
    completion_pct: float = Field(0.0, ge=0.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CheckpointStatistics(BaseModel):
    """Store-wide counters"""

    total_jobs: int = 0
    total_checkpoints: int = 0
    completed_jobs: int = 0
    oldest_checkpoint: Optional[datetime] = None
    newest_checkpoint: Optional[datetime] = None
