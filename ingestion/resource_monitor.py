"""
Per-job memory/CPU monitoring with typed pressure events.

Each monitored job gets its own asyncio task that samples process memory
at a fixed interval and publishes a ResourceEvent to the job's callbacks
when usage crosses the warning (80%) or exhaustion (95%) threshold.
Callbacks are advisory: they should set flags or adjust parameters on the
job context and return; the coordinator acts on them between records.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

import psutil

from models.base import PressureLevel
from schemas.jobs import ResourceSample

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_PCT = 80.0
EXHAUSTION_THRESHOLD_PCT = 95.0


@dataclass(frozen=True)
class ResourceEvent:
    """Published when a sample crosses a pressure threshold"""
    job_id: str
    level: PressureLevel
    sample: ResourceSample

    @property
    def memory_bytes(self) -> int:
        return self.sample.memory_bytes


ResourceCallback = Callable[[ResourceEvent], Union[None, Awaitable[None]]]


@dataclass
class MonitoringConfig:
    memory_threshold_bytes: int
    check_interval_ms: int = 1000
    on_warning: Optional[ResourceCallback] = None
    on_exhaustion: Optional[ResourceCallback] = None
    enable_cpu_monitoring: bool = False
    history_size: int = 10


@dataclass
class _JobMonitor:
    config: MonitoringConfig
    history: Deque[ResourceSample]
    task: Optional[asyncio.Task] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    warnings: int = 0
    exhaustions: int = 0


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


def _process_cpu() -> float:
    return psutil.Process().cpu_percent(interval=None)


class ResourceMonitor:
    """
    Samples resource usage for any number of concurrently running jobs.

    State is per job: stopping one job's monitor never affects another.
    Samplers are injectable so tests can drive exact memory readings.
    """

    def __init__(
        self,
        memory_sampler: Optional[Callable[[], int]] = None,
        cpu_sampler: Optional[Callable[[], float]] = None
    ):
        self._sample_memory = memory_sampler or _process_rss
        self._sample_cpu = cpu_sampler or _process_cpu
        self._jobs: Dict[str, _JobMonitor] = {}

    async def start_monitoring(self, job_id: str, config: MonitoringConfig) -> ResourceSample:
        """
        Begin sampling for a job.

        The first sample is taken and evaluated before this returns, so a
        job already over its threshold is signalled immediately.
        """
        if job_id in self._jobs:
            logger.warning(f"Job {job_id} is already monitored; restarting monitor")
            await self.stop_monitoring(job_id)

        monitor = _JobMonitor(config=config, history=deque(maxlen=max(2, config.history_size)))
        self._jobs[job_id] = monitor

        sample = await self._check(job_id, monitor)
        monitor.task = asyncio.create_task(self._run(job_id, monitor), name=f"resource-monitor-{job_id}")

        logger.info(
            f"Resource monitoring started for {job_id} "
            f"(threshold={config.memory_threshold_bytes / 1024 / 1024:.1f}MB, "
            f"interval={config.check_interval_ms}ms)"
        )
        return sample

    def sample_memory(self) -> int:
        """Current process memory in bytes, outside any job's schedule"""
        return self._sample_memory()

    def get_current_stats(self, job_id: str) -> Optional[ResourceSample]:
        monitor = self._jobs.get(job_id)
        if monitor is None or not monitor.history:
            return None
        return monitor.history[-1]

    async def force_check(self, job_id: str) -> Optional[ResourceSample]:
        """Take a sample now, outside the regular interval."""
        monitor = self._jobs.get(job_id)
        if monitor is None:
            return None
        return await self._check(job_id, monitor)

    async def stop_monitoring(self, job_id: str):
        """Stop a job's monitor and drop its state. Safe to call repeatedly."""
        monitor = self._jobs.pop(job_id, None)
        if monitor is None:
            return

        if monitor.task is not None and not monitor.task.done():
            monitor.task.cancel()
            try:
                await monitor.task
            except asyncio.CancelledError:
                pass

        logger.info(
            f"Resource monitoring stopped for {job_id} "
            f"(warnings={monitor.warnings}, exhaustions={monitor.exhaustions})"
        )

    def is_monitoring(self, job_id: str) -> bool:
        return job_id in self._jobs

    def memory_growth_rate(self, job_id: str) -> float:
        """Bytes per second between the oldest and newest retained samples"""
        monitor = self._jobs.get(job_id)
        if monitor is None or len(monitor.history) < 2:
            return 0.0

        first, last = monitor.history[0], monitor.history[-1]
        elapsed = (last.sampled_at - first.sampled_at).total_seconds()
        if elapsed <= 0:
            return 0.0
        return (last.memory_bytes - first.memory_bytes) / elapsed

    def is_memory_usage_safe(self, job_id: str) -> bool:
        sample = self.get_current_stats(job_id)
        return sample is None or sample.level == PressureLevel.NORMAL

    async def _run(self, job_id: str, monitor: _JobMonitor):
        interval = monitor.config.check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self._check(job_id, monitor)
            except Exception as e:
                logger.error(f"Resource check failed for {job_id}: {e}")

    async def _check(self, job_id: str, monitor: _JobMonitor) -> ResourceSample:
        config = monitor.config
        used = self._sample_memory()
        pct = (used / config.memory_threshold_bytes) * 100 if config.memory_threshold_bytes > 0 else 100.0

        if pct >= EXHAUSTION_THRESHOLD_PCT:
            level = PressureLevel.EXHAUSTED
        elif pct >= WARNING_THRESHOLD_PCT:
            level = PressureLevel.WARNING
        else:
            level = PressureLevel.NORMAL

        sample = ResourceSample(
            memory_bytes=used,
            memory_pct=round(pct, 2),
            cpu_pct=self._sample_cpu() if config.enable_cpu_monitoring else None,
            level=level
        )
        monitor.history.append(sample)

        if level == PressureLevel.EXHAUSTED:
            monitor.exhaustions += 1
            logger.error(f"Memory exhaustion for {job_id}: {used} bytes ({pct:.1f}% of threshold)")
            await self._notify(config.on_exhaustion, ResourceEvent(job_id, level, sample))
        elif level == PressureLevel.WARNING:
            monitor.warnings += 1
            logger.warning(f"Memory warning for {job_id}: {used} bytes ({pct:.1f}% of threshold)")
            await self._notify(config.on_warning, ResourceEvent(job_id, level, sample))

        return sample

    async def _notify(self, callback: Optional[ResourceCallback], event: ResourceEvent):
        if callback is None:
            return
        try:
            outcome: Any = callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Resource callback failed for {event.job_id} ({event.level.value}): {e}")
