"""
Pytest configuration and fixtures
"""

import gzip
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Union

import orjson
import pytest
import pytest_asyncio
import zstandard
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ingestion.checkpoint import CheckpointStore
from ingestion.resource_monitor import ResourceMonitor
from models.base import Base
from schemas.jobs import BatchProcessingConfig, ExtractionResult
from schemas.records import SourceRecord

# 2023-01-01T00:00:00Z
BASE_TIMESTAMP = 1672531200


def make_post(index: int, created_utc: int = BASE_TIMESTAMP, **fields: Any) -> Dict[str, Any]:
    post = {
        "id": f"p{index}",
        "name": f"t3_p{index}",
        "title": f"Post {index}",
        "selftext": f"Body of post {index}",
        "author": f"user{index % 7}",
        "subreddit": "python",
        "score": index % 50,
        "num_comments": index % 5,
        "created_utc": created_utc,
        "permalink": f"/r/python/comments/p{index}/post_{index}/",
    }
    post.update(fields)
    return post


def make_comment(index: int, created_utc: int = BASE_TIMESTAMP, **fields: Any) -> Dict[str, Any]:
    comment = {
        "id": f"c{index}",
        "name": f"t1_c{index}",
        "body": f"Comment {index}",
        "author": f"user{index % 7}",
        "subreddit": "python",
        "score": index % 20,
        "link_id": "t3_p1",
        "parent_id": "t3_p1",
        "created_utc": created_utc,
    }
    comment.update(fields)
    return comment


def write_archive(path: Path, lines: Iterable[Union[Dict[str, Any], str]]) -> Path:
    """Write NDJSON lines, compressed according to the file suffix"""

    def encoded():
        for line in lines:
            if isinstance(line, dict):
                yield orjson.dumps(line) + b"\n"
            else:
                yield line.encode("utf-8") + b"\n"

    if path.suffix == ".zst":
        cctx = zstandard.ZstdCompressor(level=3)
        with open(path, "wb") as fh, cctx.stream_writer(fh) as writer:
            for chunk in encoded():
                writer.write(chunk)
    elif path.suffix == ".gz":
        with gzip.open(path, "wb") as fh:
            for chunk in encoded():
                fh.write(chunk)
    else:
        with open(path, "wb") as fh:
            for chunk in encoded():
                fh.write(chunk)
    return path


class CollectingProcessor:
    """Downstream processor double that keeps every delivered batch"""

    def __init__(self, fail_after_records: int = None):
        self.batches: List[List[SourceRecord]] = []
        self.fail_after_records = fail_after_records

    @property
    def records(self) -> List[SourceRecord]:
        return [record for batch in self.batches for record in batch]

    async def __call__(self, records: List[SourceRecord]) -> ExtractionResult:
        if self.fail_after_records is not None and len(self.records) + len(records) > self.fail_after_records:
            return ExtractionResult(success=False, error="downstream unavailable")
        self.batches.append(list(records))
        return ExtractionResult(success=True, processed=len(records))


@pytest.fixture
def archive_factory(tmp_path) -> Callable[..., Path]:
    """Build an archive under tmp_path: archive_factory("name.zst", lines)"""

    def factory(name: str, lines: Iterable[Union[Dict[str, Any], str]]) -> Path:
        return write_archive(tmp_path / name, lines)

    return factory


@pytest.fixture
def post_archive(archive_factory) -> Path:
    """1000 distinct posts, one per minute"""
    return archive_factory(
        "RS_2023-01.zst",
        (make_post(i, BASE_TIMESTAMP + i * 60) for i in range(1, 1001))
    )


@pytest.fixture
def checkpoint_store() -> CheckpointStore:
    return CheckpointStore(backend=None, max_checkpoints_per_job=100)


@pytest.fixture
def quiet_monitor() -> ResourceMonitor:
    """Monitor that always reports 1KB of memory"""
    return ResourceMonitor(memory_sampler=lambda: 1024)


@pytest.fixture
def job_config() -> BatchProcessingConfig:
    return BatchProcessingConfig(
        base_batch_size=100,
        min_batch_size=10,
        max_batch_size=500,
        max_memory_usage_mb=512,
        progress_reporting_interval=100,
        resource_check_interval=50,
        memory_check_interval=100,
        adaptive_batch_sizing=False,
    )


@pytest.fixture
def processor() -> CollectingProcessor:
    return CollectingProcessor()


@pytest_asyncio.fixture(scope="function")
async def sqlite_engine(tmp_path):
    """SQLite engine with the checkpoint table created"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'checkpoints.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sqlite_session_maker(sqlite_engine) -> async_sessionmaker:
    return async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(name="make_post")
def make_post_fixture() -> Callable[..., Dict[str, Any]]:
    return make_post


@pytest.fixture(name="make_comment")
def make_comment_fixture() -> Callable[..., Dict[str, Any]]:
    return make_comment


@pytest.fixture(name="collecting_processor")
def collecting_processor_fixture() -> Callable[..., CollectingProcessor]:
    """Factory for processors, e.g. collecting_processor(fail_after_records=550)"""
    return CollectingProcessor
