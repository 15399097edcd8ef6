# ============================================================================
# File: ingestion/checkpoint.py
# Description: Append-only checkpoint history per job with durable persistence
# ============================================================================
"""
Checkpoint store - resumable progress tracking for long-running jobs.

Responsibilities:
- Append immutable checkpoints per job (initial, progress, terminal)
- Enforce monotonic progress within a job
- Persist through a pluggable backend; persistence failures never stop a job
- Retention: per-job cap and age-based purge
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import settings
from core.exceptions import (
    CheckpointError,
    CheckpointWriteFailed,
    JobAlreadyCompleted,
    NoInitialCheckpoint,
)
from ingestion.checkpoint_backends import CheckpointBackend
from models.base import CheckpointType
from pydantic import ValidationError
from schemas.checkpoint import CheckpointProgress, CheckpointStatistics, ProcessingCheckpoint

logger = logging.getLogger(__name__)

# completion_pct only reaches 100 on the completion checkpoint
MAX_IN_PROGRESS_PCT = 99.0


class CheckpointStore:
    """
    In-memory checkpoint history backed by an optional persistence backend.

    A checkpoint becomes visible through latest()/all() only after its
    write attempt has finished. Writes for one job are serialized with a
    per-job lock; different jobs never contend.
    """

    def __init__(
        self,
        backend: Optional[CheckpointBackend] = None,
        max_checkpoints_per_job: Optional[int] = None,
        retention_period_seconds: Optional[int] = None
    ):
        self.backend = backend
        self.max_checkpoints_per_job = max_checkpoints_per_job or settings.MAX_CHECKPOINTS_PER_JOB
        self.retention_period = timedelta(
            seconds=retention_period_seconds or settings.CHECKPOINT_RETENTION_PERIOD
        )
        self.write_failures = 0
        self._history: Dict[str, List[ProcessingCheckpoint]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_initial(
        self,
        job_id: str,
        meta: Optional[Dict[str, Any]] = None,
        config_snapshot: Optional[Dict[str, Any]] = None
    ) -> ProcessingCheckpoint:
        """Write checkpoint 0 for a new job."""
        async with self._lock(job_id):
            history = await self._load(job_id)
            checkpoint = self._build(
                job_id,
                history,
                processed_lines=0,
                last_position=0,
                completion_pct=0.0,
                checkpoint_type=CheckpointType.INITIAL,
                config_snapshot=config_snapshot or {},
                metadata=dict(meta or {})
            )
            await self._write(checkpoint)
            logger.info(f"Initial checkpoint created for {job_id}")
            return checkpoint

    async def append(
        self,
        job_id: str,
        progress: CheckpointProgress,
        checkpoint_type: CheckpointType = CheckpointType.PROGRESS
    ) -> ProcessingCheckpoint:
        """
        Append a progress checkpoint.

        Raises:
            NoInitialCheckpoint: The job has no checkpoints yet
            JobAlreadyCompleted: The job already has a completion checkpoint
            CheckpointError: processed_lines went backwards
        """
        async with self._lock(job_id):
            history = await self._load(job_id)
            last = self._require_open(job_id, history)

            if progress.processed_lines < last.processed_lines:
                raise CheckpointError(
                    "Progress regression",
                    context={
                        "job_id": job_id,
                        "operation": "append",
                        "previous_lines": last.processed_lines,
                        "processed_lines": progress.processed_lines
                    }
                )

            completion_pct = min(max(progress.completion_pct, last.completion_pct), MAX_IN_PROGRESS_PCT)
            metadata = dict(progress.metadata)
            metadata["progress_since_last"] = progress.processed_lines - last.processed_lines

            checkpoint = self._build(
                job_id,
                history,
                processed_lines=progress.processed_lines,
                last_position=max(progress.last_position, last.last_position),
                completion_pct=completion_pct,
                checkpoint_type=checkpoint_type,
                config_snapshot=last.config_snapshot,
                metadata=metadata
            )
            await self._write(checkpoint)
            logger.debug(
                f"Checkpoint {checkpoint.sequence} for {job_id}: "
                f"{checkpoint.processed_lines} lines ({checkpoint.completion_pct:.1f}%)"
            )
            return checkpoint

    async def mark_completed(
        self,
        job_id: str,
        final_metrics: Optional[Dict[str, Any]] = None,
        processed_lines: Optional[int] = None,
        last_position: Optional[int] = None
    ) -> ProcessingCheckpoint:
        """Write the terminal completion checkpoint (100%, completed=True)."""
        async with self._lock(job_id):
            history = await self._load(job_id)
            last = self._require_open(job_id, history)

            lines = last.processed_lines if processed_lines is None else max(processed_lines, last.processed_lines)
            position = last.last_position if last_position is None else max(last_position, last.last_position)

            checkpoint = self._build(
                job_id,
                history,
                processed_lines=lines,
                last_position=position,
                completion_pct=100.0,
                completed=True,
                checkpoint_type=CheckpointType.COMPLETION,
                config_snapshot=last.config_snapshot,
                metadata={
                    "final_metrics": final_metrics or {},
                    "progress_since_last": lines - last.processed_lines,
                }
            )
            await self._write(checkpoint)
            logger.info(f"Job {job_id} marked completed at {lines} lines")
            return checkpoint

    async def mark_failed(self, job_id: str, error: str) -> Optional[ProcessingCheckpoint]:
        """Record a failure at the last known good progress."""
        return await self._copy_last(
            job_id,
            CheckpointType.FAILURE,
            {"error": error}
        )

    async def create_emergency(
        self,
        job_id: str,
        reason: str,
        memory_usage: Optional[int] = None
    ) -> Optional[ProcessingCheckpoint]:
        """Record an emergency stop (e.g. memory exhaustion) at the last good progress."""
        return await self._copy_last(
            job_id,
            CheckpointType.EMERGENCY,
            {"reason": reason, "memory_usage": memory_usage}
        )

    async def mark_cancelled(self, job_id: str, progress: CheckpointProgress) -> ProcessingCheckpoint:
        return await self.append(job_id, progress, checkpoint_type=CheckpointType.CANCELLED)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def latest(self, job_id: str) -> Optional[ProcessingCheckpoint]:
        async with self._lock(job_id):
            history = await self._load(job_id)
            return history[-1] if history else None

    async def all(self, job_id: str) -> List[ProcessingCheckpoint]:
        async with self._lock(job_id):
            return list(await self._load(job_id))

    async def get(self, job_id: str, checkpoint_id: str) -> Optional[ProcessingCheckpoint]:
        for checkpoint in await self.all(job_id):
            if checkpoint.checkpoint_id == checkpoint_id:
                return checkpoint
        return None

    def statistics(self) -> CheckpointStatistics:
        checkpoints = [cp for history in self._history.values() for cp in history]
        timestamps = [cp.timestamp for cp in checkpoints]
        return CheckpointStatistics(
            total_jobs=sum(1 for history in self._history.values() if history),
            total_checkpoints=len(checkpoints),
            completed_jobs=sum(1 for history in self._history.values() if history and history[-1].completed),
            oldest_checkpoint=min(timestamps) if timestamps else None,
            newest_checkpoint=max(timestamps) if timestamps else None
        )

    # ------------------------------------------------------------------
    # Deletion / retention
    # ------------------------------------------------------------------

    async def delete(self, job_id: str) -> int:
        """Remove every checkpoint of a job, in memory and in the backend."""
        async with self._lock(job_id):
            removed = len(self._history.pop(job_id, []))
            if self.backend is not None:
                removed = max(removed, await self.backend.delete(f"{job_id}/"))
            logger.info(f"Deleted {removed} checkpoints for {job_id}")
            return removed

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop checkpoints older than the retention period.

        The newest checkpoint of a job that has not completed is always
        kept so the job stays resumable.
        """
        cutoff = (now or datetime.utcnow()) - self.retention_period
        await self._load_all()

        purged = 0
        for job_id in list(self._history):
            async with self._lock(job_id):
                history = self._history.get(job_id, [])
                if not history:
                    continue
                newest = history[-1]
                keep_newest = not newest.completed

                expired = [
                    cp for cp in history
                    if cp.timestamp < cutoff and not (keep_newest and cp is newest)
                ]
                if not expired:
                    continue

                await self._drop(job_id, expired)
                purged += len(expired)
                if not self._history.get(job_id):
                    self._history.pop(job_id, None)

        if purged:
            logger.info(f"Purged {purged} expired checkpoints (cutoff {cutoff.isoformat()})")
        return purged

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _lock(self, job_id: str):
        """Per-job lock, discarded once no task holds or waits on it."""
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                self._locks.pop(job_id, None)

    def _require_open(self, job_id: str, history: List[ProcessingCheckpoint]) -> ProcessingCheckpoint:
        if not history:
            raise NoInitialCheckpoint(
                "No initial checkpoint for job",
                context={"job_id": job_id}
            )
        last = history[-1]
        if last.completed:
            raise JobAlreadyCompleted(
                "Job already has a completion checkpoint",
                context={"job_id": job_id, "checkpoint_id": last.checkpoint_id}
            )
        return last

    def _build(
        self,
        job_id: str,
        history: List[ProcessingCheckpoint],
        **fields
    ) -> ProcessingCheckpoint:
        sequence = history[-1].sequence + 1 if history else 0
        timestamp = datetime.utcnow()
        if history and timestamp < history[-1].timestamp:
            timestamp = history[-1].timestamp
        checkpoint_id = f"checkpoint_{job_id}_{sequence:04d}_{int(timestamp.timestamp() * 1000)}"
        return ProcessingCheckpoint(
            checkpoint_id=checkpoint_id,
            job_id=job_id,
            sequence=sequence,
            timestamp=timestamp,
            **fields
        )

    async def _copy_last(
        self,
        job_id: str,
        checkpoint_type: CheckpointType,
        metadata: Dict[str, Any]
    ) -> Optional[ProcessingCheckpoint]:
        async with self._lock(job_id):
            history = await self._load(job_id)
            if not history or history[-1].completed:
                logger.warning(f"No open checkpoint to record {checkpoint_type.value} for {job_id}")
                return None

            last = history[-1]
            checkpoint = self._build(
                job_id,
                history,
                processed_lines=last.processed_lines,
                last_position=last.last_position,
                completion_pct=last.completion_pct,
                checkpoint_type=checkpoint_type,
                config_snapshot=last.config_snapshot,
                metadata={**metadata, "progress_since_last": 0}
            )
            await self._write(checkpoint)
            logger.warning(f"{checkpoint_type.value.capitalize()} checkpoint recorded for {job_id}: {metadata}")
            return checkpoint

    async def _write(self, checkpoint: ProcessingCheckpoint):
        if self.backend is not None:
            try:
                await self.backend.put(checkpoint.storage_key, checkpoint.model_dump(mode="json"))
            except Exception as e:
                self.write_failures += 1
                failure = CheckpointWriteFailed(
                    "Failed to persist checkpoint",
                    context={
                        "job_id": checkpoint.job_id,
                        "checkpoint_id": checkpoint.checkpoint_id,
                        "operation": "put"
                    },
                    original_exception=e
                )
                logger.error(str(failure))

        history = self._history.setdefault(checkpoint.job_id, [])
        history.append(checkpoint)

        overflow = len(history) - self.max_checkpoints_per_job
        if overflow > 0:
            await self._drop(checkpoint.job_id, history[:overflow])

    async def _drop(self, job_id: str, checkpoints: List[ProcessingCheckpoint]):
        doomed = {cp.checkpoint_id for cp in checkpoints}
        self._history[job_id] = [cp for cp in self._history.get(job_id, []) if cp.checkpoint_id not in doomed]

        if self.backend is None:
            return
        for checkpoint in checkpoints:
            try:
                await self.backend.delete(checkpoint.storage_key)
            except Exception as e:
                logger.error(f"Failed to delete checkpoint {checkpoint.checkpoint_id}: {e}")

    async def _load(self, job_id: str) -> List[ProcessingCheckpoint]:
        if job_id in self._history:
            return self._history[job_id]

        history: List[ProcessingCheckpoint] = []
        if self.backend is not None:
            try:
                payloads = await self.backend.list(f"{job_id}/")
            except Exception as e:
                logger.error(f"Failed to load checkpoints for {job_id}: {e}")
                payloads = []
            history = self._parse(payloads)

        # Unknown jobs are not cached, so lookups of arbitrary IDs stay free
        if history:
            logger.info(f"Loaded {len(history)} checkpoints for {job_id} from storage")
            self._history[job_id] = history
        return history

    async def _load_all(self):
        if self.backend is None:
            return
        try:
            payloads = await self.backend.list("")
        except Exception as e:
            logger.error(f"Failed to load checkpoints for retention: {e}")
            return

        by_job: Dict[str, List[Dict[str, Any]]] = {}
        for payload in payloads:
            by_job.setdefault(str(payload.get("job_id")), []).append(payload)
        for job_id, job_payloads in by_job.items():
            if job_id not in self._history:
                self._history[job_id] = self._parse(job_payloads)

    def _parse(self, payloads: List[Dict[str, Any]]) -> List[ProcessingCheckpoint]:
        checkpoints = []
        for payload in payloads:
            try:
                checkpoints.append(ProcessingCheckpoint.model_validate(payload))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed checkpoint payload: {e.error_count()} errors")
        checkpoints.sort(key=lambda cp: (cp.timestamp, cp.sequence))
        return checkpoints
