"""
Unit tests for the checkpoint store
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from core.exceptions import CheckpointError, JobAlreadyCompleted, NoInitialCheckpoint
from ingestion.checkpoint import CheckpointStore
from models.base import CheckpointType
from schemas.checkpoint import CheckpointProgress


def progress(lines: int, pct: float = 0.0, **metadata) -> CheckpointProgress:
    return CheckpointProgress(processed_lines=lines, last_position=lines, completion_pct=pct, metadata=metadata)


class TestCheckpointLifecycle:
    """Test initial → progress → terminal checkpoints"""

    @pytest.mark.asyncio
    async def test_initial_checkpoint(self, checkpoint_store):
        checkpoint = await checkpoint_store.create_initial("job", meta={"file_path": "/data/RS.zst"})

        assert checkpoint.sequence == 0
        assert checkpoint.processed_lines == 0
        assert checkpoint.checkpoint_type == CheckpointType.INITIAL
        assert checkpoint.metadata["file_path"] == "/data/RS.zst"
        assert checkpoint.checkpoint_id.startswith("checkpoint_job_0000_")
        assert checkpoint.storage_key == f"job/{checkpoint.checkpoint_id}"

    @pytest.mark.asyncio
    async def test_append_requires_initial(self, checkpoint_store):
        with pytest.raises(NoInitialCheckpoint):
            await checkpoint_store.append("unknown", progress(10))

    @pytest.mark.asyncio
    async def test_each_step_is_a_new_checkpoint(self, checkpoint_store):
        """Test progress never mutates earlier checkpoints"""
        initial = await checkpoint_store.create_initial("job")
        first = await checkpoint_store.append("job", progress(100, 10.0))
        second = await checkpoint_store.append("job", progress(250, 25.0))

        history = await checkpoint_store.all("job")

        assert [cp.sequence for cp in history] == [0, 1, 2]
        assert history[0] == initial
        assert first.processed_lines == 100
        assert second.metadata["progress_since_last"] == 150
        assert (await checkpoint_store.latest("job")) == second

    @pytest.mark.asyncio
    async def test_progress_regression_rejected(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(500))

        with pytest.raises(CheckpointError):
            await checkpoint_store.append("job", progress(499))

    @pytest.mark.asyncio
    async def test_completion_pct_is_monotonic_and_capped(self, checkpoint_store):
        """Test in-progress checkpoints stay within [previous, 99]"""
        await checkpoint_store.create_initial("job")
        high = await checkpoint_store.append("job", progress(100, 60.0))
        lower = await checkpoint_store.append("job", progress(200, 40.0))
        over = await checkpoint_store.append("job", progress(300, 250.0))

        assert high.completion_pct == 60.0
        assert lower.completion_pct == 60.0
        assert over.completion_pct == 99.0

    @pytest.mark.asyncio
    async def test_mark_completed(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(900, 90.0))

        completed = await checkpoint_store.mark_completed("job", final_metrics={"valid_items": 1000}, processed_lines=1000)

        assert completed.completed is True
        assert completed.completion_pct == 100.0
        assert completed.processed_lines == 1000
        assert completed.checkpoint_type == CheckpointType.COMPLETION
        assert completed.metadata["final_metrics"] == {"valid_items": 1000}

    @pytest.mark.asyncio
    async def test_no_progress_after_completion(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.mark_completed("job")

        with pytest.raises(JobAlreadyCompleted):
            await checkpoint_store.append("job", progress(10))
        with pytest.raises(JobAlreadyCompleted):
            await checkpoint_store.mark_completed("job")

    @pytest.mark.asyncio
    async def test_failure_copies_last_good_progress(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(500, 50.0))

        failed = await checkpoint_store.mark_failed("job", "downstream unavailable")

        assert failed.checkpoint_type == CheckpointType.FAILURE
        assert failed.processed_lines == 500
        assert failed.last_position == 500
        assert failed.completed is False
        assert failed.metadata["error"] == "downstream unavailable"

    @pytest.mark.asyncio
    async def test_emergency_checkpoint(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(300))

        emergency = await checkpoint_store.create_emergency("job", reason="MEMORY_EXHAUSTION", memory_usage=123)

        assert emergency.checkpoint_type == CheckpointType.EMERGENCY
        assert emergency.processed_lines == 300
        assert emergency.metadata["reason"] == "MEMORY_EXHAUSTION"
        assert emergency.metadata["memory_usage"] == 123

    @pytest.mark.asyncio
    async def test_terminal_copies_need_an_open_job(self, checkpoint_store):
        assert await checkpoint_store.mark_failed("nobody", "boom") is None

        await checkpoint_store.create_initial("done")
        await checkpoint_store.mark_completed("done")
        assert await checkpoint_store.create_emergency("done", reason="MEMORY_EXHAUSTION") is None

    @pytest.mark.asyncio
    async def test_cancelled_checkpoint_is_resumable(self, checkpoint_store):
        await checkpoint_store.create_initial("job")

        cancelled = await checkpoint_store.mark_cancelled("job", progress(42))

        assert cancelled.checkpoint_type == CheckpointType.CANCELLED
        assert cancelled.completed is False
        await checkpoint_store.append("job", progress(50))


class TestCheckpointRetention:
    """Test the per-job cap and age-based purge"""

    @pytest.mark.asyncio
    async def test_cap_trims_oldest(self):
        store = CheckpointStore(max_checkpoints_per_job=3)
        await store.create_initial("job")
        for lines in (10, 20, 30, 40):
            await store.append("job", progress(lines))

        history = await store.all("job")

        assert [cp.processed_lines for cp in history] == [20, 30, 40]

    @pytest.mark.asyncio
    async def test_purge_keeps_newest_of_open_jobs(self, checkpoint_store):
        await checkpoint_store.create_initial("open")
        await checkpoint_store.append("open", progress(10))
        await checkpoint_store.create_initial("done")
        await checkpoint_store.mark_completed("done")

        purged = await checkpoint_store.purge_expired(now=datetime.utcnow() + timedelta(days=30))

        assert purged == 3
        assert [cp.processed_lines for cp in await checkpoint_store.all("open")] == [10]
        assert await checkpoint_store.all("done") == []

    @pytest.mark.asyncio
    async def test_purge_ignores_fresh_checkpoints(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(10))

        assert await checkpoint_store.purge_expired() == 0
        assert len(await checkpoint_store.all("job")) == 2

    @pytest.mark.asyncio
    async def test_delete(self, checkpoint_store):
        await checkpoint_store.create_initial("job")
        await checkpoint_store.append("job", progress(10))

        assert await checkpoint_store.delete("job") == 2
        assert await checkpoint_store.latest("job") is None
        assert "job" not in checkpoint_store._history
        assert not checkpoint_store._locks

    @pytest.mark.asyncio
    async def test_unknown_job_lookups_leave_no_state(self, checkpoint_store):
        """Test lookups of job IDs that never ran do not grow the store"""
        for i in range(50):
            assert await checkpoint_store.latest(f"ghost-{i}") is None
            assert await checkpoint_store.all(f"ghost-{i}") == []

        assert checkpoint_store._history == {}
        assert checkpoint_store._locks == {}

    @pytest.mark.asyncio
    async def test_unknown_job_is_reloaded_once_persisted(self):
        backend = AsyncMock()
        backend.list.return_value = []
        store = CheckpointStore(backend=backend)

        assert await store.latest("job") is None
        await store.create_initial("job")

        assert (await store.latest("job")).sequence == 0
        assert "job" in store._history


class TestCheckpointPersistence:
    """Test backend interaction and failure tolerance"""

    @pytest.mark.asyncio
    async def test_write_failure_is_not_raised(self):
        """Test a failing backend never stops the job"""
        backend = AsyncMock()
        backend.list.return_value = []
        backend.put.side_effect = OSError("disk full")
        store = CheckpointStore(backend=backend)

        checkpoint = await store.create_initial("job")

        assert store.write_failures == 1
        assert (await store.latest("job")) == checkpoint

    @pytest.mark.asyncio
    async def test_checkpoints_are_written_as_json(self):
        backend = AsyncMock()
        backend.list.return_value = []
        store = CheckpointStore(backend=backend)

        checkpoint = await store.create_initial("job")

        key, payload = backend.put.call_args.args
        assert key == checkpoint.storage_key
        assert payload["job_id"] == "job"
        assert isinstance(payload["timestamp"], str)

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_serialized(self, checkpoint_store):
        await checkpoint_store.create_initial("job")

        await asyncio.gather(*(checkpoint_store.append("job", progress(10)) for _ in range(5)))

        sequences = [cp.sequence for cp in await checkpoint_store.all("job")]
        assert sequences == [0, 1, 2, 3, 4, 5]
        assert checkpoint_store._locks == {}

    @pytest.mark.asyncio
    async def test_statistics(self, checkpoint_store):
        await checkpoint_store.create_initial("a")
        await checkpoint_store.create_initial("b")
        await checkpoint_store.mark_completed("b")

        stats = checkpoint_store.statistics()

        assert stats.total_jobs == 2
        assert stats.total_checkpoints == 3
        assert stats.completed_jobs == 1
