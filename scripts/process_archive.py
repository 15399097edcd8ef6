"""
Script to process (or resume) one compressed archive into an NDJSON sink
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import orjson

from core.config import settings
from core.exceptions import IngestionError, MemoryExhaustion
from core.logging import setup_logging
from ingestion.checkpoint import CheckpointStore
from ingestion.checkpoint_backends import build_checkpoint_backend
from ingestion.coordinator import BatchProcessingCoordinator
from ingestion.validators import RedditRecordValidator
from schemas.jobs import ExtractionResult
from schemas.records import SourceRecord

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PAUSED = 3


class NDJSONSink:
    """Downstream processor that appends each record as one JSON line"""

    def __init__(self, path: Path):
        self.path = path
        self.written = 0

    async def __call__(self, records: List[SourceRecord]) -> ExtractionResult:
        lines = b"".join(
            orjson.dumps({
                "key": record.normalized_key,
                "source_type": record.source_type.value,
                "timestamp": record.timestamp_sec,
                "payload": record.payload,
            }, default=str) + b"\n"
            for record in records
        )
        await asyncio.to_thread(self._append, lines)
        self.written += len(records)
        return ExtractionResult(success=True, processed=len(records))

    def _append(self, data: bytes):
        with open(self.path, "ab") as f:
            f.write(data)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process a .zst/.gz NDJSON archive")
    parser.add_argument("archive", type=Path, help="Archive to process")
    parser.add_argument("-o", "--output", type=Path, help="NDJSON output (default: <archive>.ndjson)")
    parser.add_argument("--job-id", help="Job ID (default: derived from the archive path)")
    parser.add_argument("--resume", action="store_true", help="Require and resume from an existing checkpoint")
    parser.add_argument("--backend", choices=["file", "database", "memory"], default=settings.CHECKPOINT_BACKEND)
    parser.add_argument("--batch-size", type=int, help="Base batch size")
    parser.add_argument("--max-memory-mb", type=float, help="Memory threshold in MB")
    parser.add_argument("--timeout", type=float, help="Processing timeout in seconds")
    parser.add_argument("--exclude-deleted", action="store_true", help="Drop [deleted] records")
    parser.add_argument("--min-score", type=int, help="Drop records scoring below this")
    return parser.parse_args(argv)


async def process(args: argparse.Namespace) -> int:
    output = args.output or args.archive.with_suffix(args.archive.suffix + ".ndjson")
    sink = NDJSONSink(output)

    coordinator = BatchProcessingCoordinator(
        sink,
        checkpoint_store=CheckpointStore(build_checkpoint_backend(args.backend)),
        validator=RedditRecordValidator(exclude_deleted=args.exclude_deleted, min_score=args.min_score)
    )

    overrides = {}
    if args.batch_size:
        overrides["base_batch_size"] = args.batch_size
    if args.max_memory_mb:
        overrides["max_memory_usage_mb"] = args.max_memory_mb
    if args.timeout:
        overrides["processing_timeout_seconds"] = args.timeout

    job_id = args.job_id or coordinator.generate_job_id(args.archive)
    try:
        if args.resume:
            result = await coordinator.resume_job(job_id, args.archive, **overrides)
        else:
            result = await coordinator.process_archive_file(args.archive, job_id=job_id, **overrides)
    except MemoryExhaustion as e:
        logger.error(f"Job {job_id} paused: {e}. Re-run with --resume once memory is available.")
        return EXIT_PAUSED
    except (IngestionError, FileNotFoundError) as e:
        logger.error(f"Job {job_id} failed: {e}")
        return EXIT_FAILED

    metrics = result.metrics
    logger.info(
        f"Job {result.job_id} {result.status.value}: "
        f"{metrics.total_processed_lines} lines, {metrics.valid_items} records → {output}, "
        f"{metrics.duplicate_count} duplicates, {metrics.error_count} errors, "
        f"{metrics.throughput_lines_per_second:.0f} lines/s"
    )
    return EXIT_OK if result.success else EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    return asyncio.run(process(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
