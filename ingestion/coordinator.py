# ============================================================================
# File: ingestion/coordinator.py
# Description: Batch processing orchestrator with checkpoints and memory control
# ============================================================================
"""
Batch Processing Coordinator - drives one archive or API batch through the
decompress → normalize → dedupe → batch → downstream pipeline.

This module provides:
- Explicit per-job context objects (no global job registry)
- Resumption from the latest non-completed checkpoint
- Adaptive batch sizing under memory pressure
- Emergency pause on memory exhaustion
- Cooperative cancellation
- Structured results for the job queue
"""

import asyncio
import gc
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.config import settings
from core.exceptions import (
    CheckpointNotFound,
    DownstreamProcessingError,
    IngestionError,
    JobAlreadyCompleted,
    JobCancelled,
    MemoryExhaustion,
    ValidationRejected,
)
from ingestion.checkpoint import CheckpointStore
from ingestion.checkpoint_backends import build_checkpoint_backend
from ingestion.decompressor import StreamDecompressor
from ingestion.deduplication import DuplicateDetector
from ingestion.merger import TemporalMerger
from ingestion.resource_monitor import MonitoringConfig, ResourceEvent, ResourceMonitor
from ingestion.transformers.normalizer import RecordNormalizer
from ingestion.validators import RecordValidator
from models.base import JobStatus, SourceType
from schemas.checkpoint import CheckpointProgress, ProcessingCheckpoint
from schemas.deduplication import EdgeCasePolicy
from schemas.jobs import (
    BatchProcessingConfig,
    BatchStats,
    DecompressionResult,
    ExtractionResult,
    JobMetrics,
    JobProgress,
    JobResult,
    LineError,
    MemoryUsage,
    WorkUnit,
)
from schemas.merge import MergedBatch, SourceBatch
from schemas.records import SourceRecord

logger = logging.getLogger(__name__)

RecordProcessor = Callable[[List[SourceRecord]], Awaitable[Optional[ExtractionResult]]]

MB = 1024 * 1024
SMALL_FILE_MB = 50
LARGE_FILE_MB = 500
MEMORY_HEADROOM_RATIO = 0.8
BATCH_MEMORY_BUDGET_RATIO = 0.3
AVG_RECORD_KB = 1.0
WARNING_SHRINK_FACTOR = 0.75
MAX_CONTEXT_ERRORS = 1000


@dataclass
class JobContext:
    """Everything the coordinator knows about one running job"""

    job_id: str
    config: BatchProcessingConfig
    file_path: Optional[Path] = None
    source_type: SourceType = SourceType.ARCHIVE
    status: JobStatus = JobStatus.INITIALIZED

    file_size_bytes: int = 0
    estimated_total_lines: int = 0
    initial_batch_size: int = 0
    batch_size: int = 0

    resume_from_line: int = 0
    processed_lines: int = 0
    valid_items: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    skipped_lines: int = 0

    records_since_checkpoint: int = 0
    records_since_memory_check: int = 0
    buffer: List[SourceRecord] = field(default_factory=list)
    uncommitted_keys: List[str] = field(default_factory=list)
    committed: Dict[str, int] = field(default_factory=dict)
    errors: List[LineError] = field(default_factory=list)

    total_batches: int = 0
    total_batched_records: int = 0
    total_batch_ms: float = 0.0

    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    peak_memory: int = 0

    normalizer: Optional[RecordNormalizer] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    pending_exhaustion: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    @property
    def completion_pct(self) -> float:
        if self.estimated_total_lines <= 0:
            return 0.0
        return min(100.0, self.processed_lines / self.estimated_total_lines * 100)


class BatchProcessingCoordinator:
    """
    Production-grade batch orchestrator.

    Responsibilities:
    - Own the job state machine: initialized → running → {paused, completed,
      failed, cancelled}; paused jobs resume from their emergency checkpoint
    - Hand deduplicated records to the downstream processor in batches
    - Checkpoint after every progress interval (buffer flushed first, so a
      checkpoint never covers undelivered records)
    - React to monitor events between records
    """

    def __init__(
        self,
        processor: RecordProcessor,
        *,
        config: Optional[BatchProcessingConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        decompressor: Optional[StreamDecompressor] = None,
        detector: Optional[DuplicateDetector] = None,
        validator: Optional[RecordValidator] = None,
        edge_case_policy: Optional[EdgeCasePolicy] = None,
        merger: Optional[TemporalMerger] = None
    ):
        self.processor = processor
        self.config = config or BatchProcessingConfig.from_settings(settings)
        self.checkpoints = checkpoint_store or CheckpointStore(build_checkpoint_backend())
        self.monitor = resource_monitor or ResourceMonitor()
        self.decompressor = decompressor or StreamDecompressor()
        self.policy = edge_case_policy or EdgeCasePolicy()
        self.detector = detector or DuplicateDetector(policy=self.policy)
        self.validator = validator
        self.merger = merger or TemporalMerger()

    # ------------------------------------------------------------------
    # Job setup
    # ------------------------------------------------------------------

    @staticmethod
    def generate_job_id(file_path: Union[str, Path]) -> str:
        """Stable ID per archive path, so re-submitting a file resumes it."""
        path = Path(file_path)
        digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:10]
        return f"batch_{path.name}_{digest}"

    def create_job(
        self,
        file_path: Union[str, Path],
        job_id: Optional[str] = None,
        **overrides: Any
    ) -> JobContext:
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Archive not found: {path}")

        config = self._job_config(overrides)
        size = path.stat().st_size
        batch_size = self.calculate_optimal_batch_size(size, config)

        context = JobContext(
            job_id=job_id or self.generate_job_id(path),
            config=config,
            file_path=path,
            file_size_bytes=size,
            estimated_total_lines=max(1, int(size / MB * config.estimated_lines_per_mb)),
            initial_batch_size=batch_size,
            batch_size=batch_size
        )
        logger.info(
            f"Created job {context.job_id} for {path.name} "
            f"({size / MB:.1f}MB, ~{context.estimated_total_lines} lines, batch size {batch_size})"
        )
        return context

    def calculate_optimal_batch_size(self, file_size_bytes: int, config: Optional[BatchProcessingConfig] = None) -> int:
        """
        Initial batch size from file size and memory headroom.

        Small files get double the base size, large files half of it; the
        estimated batch footprint is then capped at 30% of the free memory
        budget and the result clamped to [min, max].
        """
        config = config or self.config
        size = config.base_batch_size

        if config.adaptive_batch_sizing:
            size_mb = file_size_bytes / MB
            if size_mb < SMALL_FILE_MB:
                size = size * 2
            elif size_mb > LARGE_FILE_MB:
                size = size // 2

            used_mb = self.monitor.sample_memory() / MB
            headroom_mb = max(0.0, config.max_memory_usage_mb * MEMORY_HEADROOM_RATIO - used_mb)
            budget_mb = headroom_mb * BATCH_MEMORY_BUDGET_RATIO
            if size * AVG_RECORD_KB / 1024 > budget_mb:
                size = int(budget_mb * 1024 / AVG_RECORD_KB)

        return self._clamp(size, config)

    # ------------------------------------------------------------------
    # Archive processing
    # ------------------------------------------------------------------

    async def process_archive_file(
        self,
        file_path: Union[str, Path],
        job_id: Optional[str] = None,
        **overrides: Any
    ) -> JobResult:
        context = self.create_job(file_path, job_id=job_id, **overrides)
        return await self.execute(context)

    async def resume_job(
        self,
        job_id: str,
        file_path: Optional[Union[str, Path]] = None,
        **overrides: Any
    ) -> JobResult:
        """
        Resume a job from its latest checkpoint.

        Raises:
            CheckpointNotFound: The job has no checkpoints
            JobAlreadyCompleted: The job's terminal checkpoint is completed
        """
        history = await self.checkpoints.all(job_id)
        if not history:
            raise CheckpointNotFound("No checkpoints for job", context={"job_id": job_id})
        if history[-1].completed:
            raise JobAlreadyCompleted("Job already completed", context={"job_id": job_id})

        if file_path is None:
            file_path = history[-1].config_snapshot.get("file_path")
            if file_path is None:
                raise CheckpointNotFound(
                    "Checkpoints do not record the archive path",
                    context={"job_id": job_id}
                )

        logger.info(f"Resuming job {job_id} from checkpoint {history[-1].checkpoint_id}")
        context = self.create_job(file_path, job_id=job_id, **overrides)
        return await self.execute(context)

    async def execute(self, context: JobContext) -> JobResult:
        """
        Run a job to completion, pause, failure or cancellation.

        Returns:
            JobResult (success=False only for cancellation)

        Raises:
            MemoryExhaustion: Job paused; an emergency checkpoint was written
            JobAlreadyCompleted: The job's checkpoints are already terminal
            IngestionError: Any other fatal error (failure checkpoint written)
        """
        if context.status not in (JobStatus.INITIALIZED, JobStatus.PAUSED):
            raise IngestionError(
                f"Job cannot start from state {context.status.value}",
                context={"job_id": context.job_id}
            )

        config = context.config
        job_id = context.job_id
        self._reset_run_state(context)

        # --------------------------------------------------
        # PHASE 1: CHECKPOINT RECOVERY
        # --------------------------------------------------
        if config.enable_checkpoints:
            await self._prepare_checkpoints(context)

        context.status = JobStatus.RUNNING
        context.started_at = time.monotonic()
        context.finished_at = None
        context.pending_exhaustion = None

        try:
            # --------------------------------------------------
            # PHASE 2: MONITORING
            # --------------------------------------------------
            if config.enable_resource_monitoring:
                sample = await self.monitor.start_monitoring(job_id, MonitoringConfig(
                    memory_threshold_bytes=config.memory_threshold_bytes,
                    check_interval_ms=config.resource_check_interval,
                    on_warning=partial(self._on_memory_warning, context),
                    on_exhaustion=partial(self._on_memory_exhaustion, context)
                ))
                context.peak_memory = max(context.peak_memory, sample.memory_bytes)

            # --------------------------------------------------
            # PHASE 3: STREAM → NORMALIZE → DEDUPE → BATCH
            # --------------------------------------------------
            decompression = await self.decompressor.decompress(
                context.file_path,
                partial(self._handle_record, context),
                validator=self.validator,
                timeout=config.processing_timeout_seconds,
                start_line=context.resume_from_line,
                on_error=partial(self._on_line_error, context)
            )
            await self._flush(context)

            context.processed_lines = max(context.processed_lines, decompression.total_lines)
            context.skipped_lines = decompression.skipped_lines

            # --------------------------------------------------
            # PHASE 4: COMPLETION
            # --------------------------------------------------
            context.finished_at = time.monotonic()
            metrics = self._metrics(context, decompression)

            if config.enable_checkpoints:
                await self.checkpoints.mark_completed(
                    job_id,
                    final_metrics=metrics.model_dump(mode="json"),
                    processed_lines=context.processed_lines,
                    last_position=context.processed_lines
                )

            context.status = JobStatus.COMPLETED
            context.uncommitted_keys.clear()
            logger.info(
                f"Job {job_id} completed: {context.processed_lines} lines, "
                f"{context.valid_items} records, {context.duplicate_count} duplicates, "
                f"{context.error_count} errors in {metrics.duration_ms:.0f}ms"
            )
            return await self._result(context, success=True, metrics=metrics)

        except JobCancelled:
            await self._flush(context)
            if config.enable_checkpoints:
                await self.checkpoints.mark_cancelled(job_id, self._progress(context, cancelled=True))
            context.uncommitted_keys.clear()
            context.status = JobStatus.CANCELLED
            context.finished_at = time.monotonic()
            logger.warning(f"Job {job_id} cancelled at line {context.processed_lines}")
            return await self._result(context, success=False, error_summary="Job cancelled")

        except MemoryExhaustion:
            # Emergency checkpoint was written when the pause was taken
            self._abandon_uncommitted(context)
            context.finished_at = time.monotonic()
            raise

        except Exception as e:
            self._abandon_uncommitted(context)
            context.status = JobStatus.FAILED
            context.finished_at = time.monotonic()
            context.last_error = str(e)

            if config.enable_checkpoints:
                await self.checkpoints.mark_failed(job_id, str(e))

            logger.error(
                f"Job {job_id} failed at line {context.processed_lines}: {e}",
                extra={"error_context": (
                    e.to_dict() if isinstance(e, IngestionError)
                    else {"job_id": job_id, "error_type": type(e).__name__}
                )}
            )
            if isinstance(e, IngestionError):
                raise
            raise IngestionError(
                "Unexpected error during batch processing",
                context={"job_id": job_id, "processed_lines": context.processed_lines},
                original_exception=e
            )

        finally:
            if config.enable_resource_monitoring:
                await self.monitor.stop_monitoring(job_id)

    # ------------------------------------------------------------------
    # API batches and merging
    # ------------------------------------------------------------------

    async def process_api_batch(self, batch: SourceBatch, job_id: Optional[str] = None) -> JobResult:
        """Normalize, dedupe and hand a live-feed batch downstream."""
        context = JobContext(
            job_id=job_id or f"api_{batch.source_type.value}_{batch.batch_id or uuid.uuid4().hex[:8]}",
            config=self.config,
            source_type=batch.source_type,
            estimated_total_lines=len(batch.items)
        )
        context.batch_size = context.initial_batch_size = self._clamp(self.config.base_batch_size, self.config)
        context.status = JobStatus.RUNNING
        context.started_at = time.monotonic()

        normalizer = RecordNormalizer(batch.source_type, self.policy, batch.batch_id)
        try:
            for index, item in enumerate(batch.items, start=1):
                if isinstance(item, SourceRecord):
                    record = item
                else:
                    record = self._normalize(context, normalizer, item, index)
                context.processed_lines = index
                if record is not None:
                    self._admit(context, record)
                if len(context.buffer) >= context.batch_size:
                    await self._flush(context)
            await self._flush(context)
        except Exception as e:
            self._abandon_uncommitted(context)
            context.status = JobStatus.FAILED
            context.last_error = str(e)
            logger.error(f"API batch {context.job_id} failed: {e}")
            raise

        context.status = JobStatus.COMPLETED
        context.finished_at = time.monotonic()
        context.uncommitted_keys.clear()
        logger.info(
            f"API batch {context.job_id} ({batch.source_type.value}): "
            f"{context.valid_items} records, {context.duplicate_count} duplicates"
        )
        return await self._result(context, success=True, metrics=self._metrics(context))

    def merge_sources(self, batches: List[SourceBatch]) -> MergedBatch:
        return self.merger.merge(batches)

    async def run(self, work: WorkUnit) -> JobResult:
        """
        Job-queue entry point. Never raises for job-level failures; the
        outcome is reported as a structured result instead.
        """
        if work.file_path:
            job_id = work.job_id or self.generate_job_id(work.file_path)
        else:
            job_id = work.job_id or f"api_{work.api_batch.source_type.value}_{uuid.uuid4().hex[:8]}"

        context: Optional[JobContext] = None
        try:
            if work.file_path:
                context = self.create_job(work.file_path, job_id=job_id, **work.options)
                return await self.execute(context)
            return await self.process_api_batch(work.api_batch, job_id=job_id)
        except Exception as e:
            status = JobStatus.PAUSED if isinstance(e, MemoryExhaustion) else JobStatus.FAILED
            logger.error(f"Job {job_id} did not complete ({status.value}): {e}")
            checkpoints = await self.checkpoints.all(job_id) if self.config.enable_checkpoints else []
            return JobResult(
                job_id=job_id,
                success=False,
                status=status,
                metrics=self._metrics(context) if context else JobMetrics(),
                errors=list(context.errors) if context else [],
                checkpoints=checkpoints,
                error_summary=str(e)
            )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, context: JobContext):
        """Request cancellation; observed before the next record."""
        context.cancel_event.set()
        logger.info(f"Cancellation requested for job {context.job_id}")

    def reconfigure(self, context: JobContext, batch_size: int) -> int:
        """Explicitly set a job's batch size (the only way it grows)."""
        context.batch_size = self._clamp(batch_size, context.config)
        logger.info(f"Job {context.job_id} batch size set to {context.batch_size}")
        return context.batch_size

    def get_progress(self, context: JobContext) -> JobProgress:
        elapsed = context.elapsed_seconds
        done = max(0, context.processed_lines - context.resume_from_line)
        throughput = done / elapsed if elapsed > 0 else 0.0

        eta = None
        remaining = context.estimated_total_lines - context.processed_lines
        if throughput > 0 and remaining > 0 and context.status == JobStatus.RUNNING:
            eta = remaining / throughput

        return JobProgress(
            job_id=context.job_id,
            status=context.status,
            processed_lines=context.processed_lines,
            estimated_total_lines=context.estimated_total_lines,
            completion_pct=round(context.completion_pct, 2),
            current_batch_size=context.batch_size,
            elapsed_seconds=round(elapsed, 3),
            throughput_lines_per_second=round(throughput, 2),
            eta_seconds=round(eta, 1) if eta is not None else None
        )

    # ------------------------------------------------------------------
    # Per-record pipeline
    # ------------------------------------------------------------------

    async def _handle_record(self, context: JobContext, record: Any, line_number: int):
        config = context.config

        if context.cancel_event.is_set():
            raise JobCancelled("Job cancelled", context={"job_id": context.job_id, "line_number": line_number})

        if context.pending_exhaustion is not None:
            await self._pause_for_memory(context)

        if config.enable_resource_monitoring:
            context.records_since_memory_check += 1
            if context.records_since_memory_check >= config.memory_check_interval:
                context.records_since_memory_check = 0
                sample = await self.monitor.force_check(context.job_id)
                if sample is not None:
                    context.peak_memory = max(context.peak_memory, sample.memory_bytes)
                if context.pending_exhaustion is not None:
                    await self._pause_for_memory(context)

        normalizer = self._archive_normalizer(context)
        source_record = self._normalize(context, normalizer, record, line_number)
        if source_record is not None:
            self._admit(context, source_record)

        context.processed_lines = line_number

        if len(context.buffer) >= context.batch_size:
            await self._flush(context)

        context.records_since_checkpoint += 1
        if context.records_since_checkpoint >= config.progress_reporting_interval:
            await self._checkpoint_progress(context)

    def _on_line_error(self, context: JobContext, error: LineError):
        context.error_count += 1
        self._add_errors(context, [error])

    def _archive_normalizer(self, context: JobContext) -> RecordNormalizer:
        if context.normalizer is None:
            context.normalizer = RecordNormalizer(context.source_type, self.policy, batch_id=context.job_id)
        return context.normalizer

    def _normalize(
        self,
        context: JobContext,
        normalizer: RecordNormalizer,
        record: Any,
        position: int
    ) -> Optional[SourceRecord]:
        try:
            return normalizer.normalize(record)
        except (ValidationRejected, ValueError) as e:
            context.error_count += 1
            self._add_errors(context, [LineError(
                line=position,
                error=getattr(e, "message", str(e)),
                error_type=type(e).__name__
            )])
            return None

    def _admit(self, context: JobContext, record: SourceRecord):
        if self.detector.check(record).is_duplicate:
            context.duplicate_count += 1
            return
        context.buffer.append(record)
        context.uncommitted_keys.append(record.normalized_key)
        context.valid_items += 1

    async def _flush(self, context: JobContext):
        if not context.buffer:
            return

        batch = context.buffer
        context.buffer = []
        started = time.perf_counter()

        try:
            result = await self.processor(batch)
        except IngestionError:
            raise
        except Exception as e:
            raise DownstreamProcessingError(
                "Downstream processor raised",
                context={"job_id": context.job_id, "batch_size": len(batch)},
                original_exception=e
            )

        if result is not None and not result.success:
            raise DownstreamProcessingError(
                result.error or "Downstream processor reported failure",
                context={"job_id": context.job_id, "batch_size": len(batch)}
            )

        context.total_batches += 1
        context.total_batched_records += len(batch)
        context.total_batch_ms += (time.perf_counter() - started) * 1000

    async def _checkpoint_progress(self, context: JobContext):
        await self._flush(context)
        context.records_since_checkpoint = 0

        if context.config.enable_checkpoints:
            await self.checkpoints.append(context.job_id, self._progress(context))
        context.uncommitted_keys.clear()
        context.committed = {"processed_lines": context.processed_lines, **self._counters(context)}

        progress = self.get_progress(context)
        logger.info(
            f"Job {context.job_id}: {progress.processed_lines} lines "
            f"({progress.completion_pct:.1f}%), {progress.throughput_lines_per_second:.0f} lines/s, "
            f"batch size {context.batch_size}"
        )

    def _progress(self, context: JobContext, cancelled: bool = False) -> CheckpointProgress:
        metadata: Dict[str, Any] = {**self._counters(context), "batch_size": context.batch_size}
        if cancelled:
            metadata["reason"] = "cancelled"
        return CheckpointProgress(
            processed_lines=context.processed_lines,
            last_position=context.processed_lines,
            completion_pct=context.completion_pct,
            metadata=metadata
        )

    # ------------------------------------------------------------------
    # Memory pressure
    # ------------------------------------------------------------------

    def _on_memory_warning(self, context: JobContext, event: ResourceEvent):
        reduced = max(context.config.min_batch_size, int(context.batch_size * WARNING_SHRINK_FACTOR))
        if reduced < context.batch_size:
            logger.warning(
                f"Memory warning for {context.job_id} ({event.sample.memory_pct:.1f}%): "
                f"batch size {context.batch_size} → {reduced}"
            )
            context.batch_size = reduced

    def _on_memory_exhaustion(self, context: JobContext, event: ResourceEvent):
        context.pending_exhaustion = event.memory_bytes

    async def _pause_for_memory(self, context: JobContext):
        usage = context.pending_exhaustion or 0
        context.pending_exhaustion = None
        context.status = JobStatus.PAUSED
        context.buffer = []
        gc.collect()

        if context.config.enable_checkpoints:
            await self.checkpoints.create_emergency(context.job_id, reason="MEMORY_EXHAUSTION", memory_usage=usage)

        raise MemoryExhaustion(
            "Memory exhausted; job paused",
            memory_usage=usage,
            context={"job_id": context.job_id, "processed_lines": context.processed_lines}
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _prepare_checkpoints(self, context: JobContext):
        history = await self.checkpoints.all(context.job_id)
        latest = history[-1] if history else None

        if latest is None:
            await self.checkpoints.create_initial(
                context.job_id,
                meta={
                    "file_path": str(context.file_path),
                    "file_size_bytes": context.file_size_bytes,
                    "estimated_total_lines": context.estimated_total_lines,
                    "initial_batch_size": context.initial_batch_size,
                },
                config_snapshot={**context.config.model_dump(mode="json"), "file_path": str(context.file_path)}
            )
            return

        if latest.completed:
            raise JobAlreadyCompleted(
                "Job already completed",
                context={"job_id": context.job_id, "checkpoint_id": latest.checkpoint_id}
            )

        counters = self._committed_counters(history)
        context.resume_from_line = latest.last_position
        context.processed_lines = latest.processed_lines
        context.valid_items = counters.get("valid_items", 0)
        context.duplicate_count = counters.get("duplicates", 0)
        context.error_count = counters.get("error_count", 0)
        context.errors = [e for e in context.errors if e.line <= latest.last_position]
        logger.info(
            f"Job {context.job_id} resuming from line {latest.last_position} "
            f"({latest.checkpoint_type.value} checkpoint {latest.sequence}, "
            f"{context.valid_items} records already delivered)"
        )

    def _reset_run_state(self, context: JobContext):
        """Roll per-run counters back to the last commit point before a (re)run."""
        committed = context.committed
        context.resume_from_line = committed.get("processed_lines", 0)
        context.processed_lines = context.resume_from_line
        context.valid_items = committed.get("valid_items", 0)
        context.duplicate_count = committed.get("duplicates", 0)
        context.error_count = committed.get("error_count", 0)
        context.errors = [e for e in context.errors if e.line <= context.resume_from_line]
        context.skipped_lines = 0
        context.buffer = []
        context.records_since_checkpoint = 0
        context.records_since_memory_check = 0
        context.total_batches = 0
        context.total_batched_records = 0
        context.total_batch_ms = 0.0

    @staticmethod
    def _counters(context: JobContext) -> Dict[str, int]:
        return {
            "valid_items": context.valid_items,
            "duplicates": context.duplicate_count,
            "error_count": context.error_count,
        }

    @staticmethod
    def _committed_counters(history: List[ProcessingCheckpoint]) -> Dict[str, Any]:
        """
        Counters of the newest checkpoint at the resume position.

        Failure and emergency checkpoints copy the position of the
        checkpoint before them but not its counters.
        """
        position = history[-1].last_position
        for checkpoint in reversed(history):
            if checkpoint.last_position != position:
                break
            if "valid_items" in checkpoint.metadata:
                return checkpoint.metadata
        return {}

    def _abandon_uncommitted(self, context: JobContext):
        """Records admitted after the last checkpoint will be re-read on resume."""
        context.buffer = []
        if context.uncommitted_keys:
            self.detector.forget(context.uncommitted_keys)
            context.uncommitted_keys.clear()

    def _add_errors(self, context: JobContext, errors: List[LineError]):
        room = MAX_CONTEXT_ERRORS - len(context.errors)
        if room > 0:
            context.errors.extend(errors[:room])

    def _job_config(self, overrides: Dict[str, Any]) -> BatchProcessingConfig:
        if not overrides:
            return self.config
        return BatchProcessingConfig(**{**self.config.model_dump(), **overrides})

    @staticmethod
    def _clamp(size: int, config: BatchProcessingConfig) -> int:
        return max(config.min_batch_size, min(config.max_batch_size, size))

    def _metrics(self, context: JobContext, decompression: Optional[DecompressionResult] = None) -> JobMetrics:
        elapsed = context.elapsed_seconds
        lines_this_run = max(0, context.processed_lines - context.resume_from_line)

        memory = decompression.memory_usage if decompression else MemoryUsage()
        memory = memory.model_copy(update={"peak": max(memory.peak, context.peak_memory)})

        return JobMetrics(
            total_processed_lines=context.processed_lines,
            valid_items=context.valid_items,
            error_count=context.error_count,
            duplicate_count=context.duplicate_count,
            skipped_lines=context.skipped_lines,
            duration_ms=round(elapsed * 1000, 2),
            throughput_lines_per_second=round(lines_this_run / elapsed, 2) if elapsed > 0 else 0.0,
            initial_batch_size=context.initial_batch_size,
            final_batch_size=context.batch_size,
            memory_usage=memory,
            batch_stats=BatchStats(
                total_batches=context.total_batches,
                average_batch_size=(
                    round(context.total_batched_records / context.total_batches, 2)
                    if context.total_batches else 0.0
                ),
                average_batch_processing_ms=(
                    round(context.total_batch_ms / context.total_batches, 3)
                    if context.total_batches else 0.0
                )
            )
        )

    async def _result(
        self,
        context: JobContext,
        success: bool,
        metrics: Optional[JobMetrics] = None,
        error_summary: Optional[str] = None
    ) -> JobResult:
        checkpoints = []
        if context.config.enable_checkpoints and context.file_path is not None:
            checkpoints = await self.checkpoints.all(context.job_id)
        return JobResult(
            job_id=context.job_id,
            success=success,
            status=context.status,
            metrics=metrics or self._metrics(context),
            errors=list(context.errors),
            checkpoints=checkpoints,
            error_summary=error_summary
        )
