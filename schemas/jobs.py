"""
Pydantic schemas for batch jobs, resource samples and job results
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, List, Any
from datetime import datetime
from models.base import JobStatus, PressureLevel
from schemas.checkpoint import ProcessingCheckpoint
from schemas.merge import SourceBatch


class BatchProcessingConfig(BaseModel):
    """Per-job configuration, snapshotted into every checkpoint"""

    base_batch_size: int = Field(1000, ge=1)
    min_batch_size: int = Field(100, ge=1)
    max_batch_size: int = Field(5000, ge=1)
    max_memory_usage_mb: float = Field(512.0, gt=0)
    enable_checkpoints: bool = True
    enable_resource_monitoring: bool = True
    adaptive_batch_sizing: bool = True
    progress_reporting_interval: int = Field(10000, ge=1)
    resource_check_interval: int = Field(1000, ge=1)  # ms
    memory_check_interval: int = Field(5000, ge=1)  # records
    processing_timeout_seconds: Optional[float] = None
    estimated_lines_per_mb: int = Field(5000, ge=1)

    @validator("max_batch_size")
    def check_bounds(cls, v, values):
        min_size = values.get("min_batch_size")
        if min_size is not None and v < min_size:
            raise ValueError("max_batch_size must be >= min_batch_size")
        return v

    @classmethod
    def from_settings(cls, settings, **overrides) -> "BatchProcessingConfig":
        values = {
            "base_batch_size": settings.BASE_BATCH_SIZE,
            "min_batch_size": settings.MIN_BATCH_SIZE,
            "max_batch_size": settings.MAX_BATCH_SIZE,
            "max_memory_usage_mb": settings.MAX_MEMORY_USAGE_MB,
            "enable_checkpoints": settings.ENABLE_CHECKPOINTS,
            "enable_resource_monitoring": settings.ENABLE_RESOURCE_MONITORING,
            "adaptive_batch_sizing": settings.ADAPTIVE_BATCH_SIZING,
            "progress_reporting_interval": settings.PROGRESS_REPORTING_INTERVAL,
            "resource_check_interval": settings.RESOURCE_CHECK_INTERVAL,
            "memory_check_interval": settings.MEMORY_CHECK_INTERVAL,
            "processing_timeout_seconds": settings.PROCESSING_TIMEOUT_SECONDS,
            "estimated_lines_per_mb": settings.ESTIMATED_LINES_PER_MB,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def memory_threshold_bytes(self) -> int:
        return int(self.max_memory_usage_mb * 1024 * 1024)


class ResourceSample(BaseModel):
    """One observation of process memory (and optionally CPU)"""

    memory_bytes: int
    memory_pct: float
    cpu_pct: Optional[float] = None
    sampled_at: datetime = Field(default_factory=datetime.utcnow)
    level: PressureLevel = PressureLevel.NORMAL

    class Config:
        frozen = True


class LineError(BaseModel):
    """A recoverable per-line failure"""

    line: int
    error: str
    error_type: str
    content: Optional[str] = None


class MemoryUsage(BaseModel):
    initial: int = 0
    peak: int = 0
    final: int = 0


class BatchStats(BaseModel):
    total_batches: int = 0
    average_batch_size: float = 0.0
    average_batch_processing_ms: float = 0.0


class JobMetrics(BaseModel):
    total_processed_lines: int = 0
    valid_items: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    skipped_lines: int = 0
    duration_ms: float = 0.0
    throughput_lines_per_second: float = 0.0
    initial_batch_size: int = 0
    final_batch_size: int = 0
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
    batch_stats: BatchStats = Field(default_factory=BatchStats)


class JobResult(BaseModel):
    """Structured outcome returned to the job queue"""

    job_id: str
    success: bool
    status: JobStatus
    metrics: JobMetrics = Field(default_factory=JobMetrics)
    errors: List[LineError] = Field(default_factory=list)
    checkpoints: List[ProcessingCheckpoint] = Field(default_factory=list)
    error_summary: Optional[str] = None


class JobProgress(BaseModel):
    job_id: str
    status: JobStatus
    processed_lines: int
    estimated_total_lines: int
    completion_pct: float
    current_batch_size: int
    elapsed_seconds: float
    throughput_lines_per_second: float
    eta_seconds: Optional[float] = None


class WorkUnit(BaseModel):
    """A job as delivered by the queue: an archive path or an API batch"""

    job_id: Optional[str] = None
    file_path: Optional[str] = None
    api_batch: Optional[SourceBatch] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @validator("api_batch", always=True)
    def require_one_input(cls, v, values):
        has_file = bool(values.get("file_path"))
        if has_file == (v is not None):
            raise ValueError("Exactly one of file_path or api_batch is required")
        return v


class ExtractionResult(BaseModel):
    """What the downstream processor reports for a batch"""

    success: bool
    processed: int = 0
    error: Optional[str] = None


class FeedCollection(BaseModel):
    """Live feed batch plus the watermark to resume the feed from"""

    batch: SourceBatch
    records_fetched: int = 0
    watermark: Optional[int] = None


class DecompressionResult(BaseModel):
    """Line accounting for one pass over an archive"""

    file_path: str
    total_lines: int = 0
    valid_lines: int = 0
    error_lines: int = 0
    skipped_lines: int = 0
    duration_ms: float = 0.0
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
    errors: List[LineError] = Field(default_factory=list)
    unrecorded_errors: int = 0  # errors past the recording cap
