"""
Archive and live-feed ingestion components.

This package contains everything between a compressed archive (or a live
API batch) and the downstream processor:

Modules:
    decompressor: Streaming zstd/gzip NDJSON reader with per-line error accounting
    validators: Record validators (Reddit submissions and comments)
    resource_monitor: Per-job memory monitoring with pressure events
    checkpoint: Immutable, per-job checkpoint history with retention
    checkpoint_backends: File, database and in-memory checkpoint persistence
    deduplication: Cross-source duplicate detection with edge-case policies
    merger: Temporal merge of archive and API batches with gap detection
    coordinator: Job orchestration (batching, checkpoints, pause/resume)
    base: Abstract base class for live feeds with watermark tracking
    scheduler: APScheduler job that purges expired checkpoints

Subpackages:
    extractors: Live feed collectors (Reddit listings)
    transformers: Raw payload → SourceRecord normalization

Architecture:
    One job processes one archive strictly in line order:

    1. Decompress - Stream lines without materializing the file
    2. Normalize - Parse, validate and identify each record
    3. Deduplicate - First sighting of an identifier wins
    4. Batch - Hand records downstream in adaptively sized batches
    5. Checkpoint - Record progress so the job can resume after any failure

Usage:
    from ingestion.coordinator import BatchProcessingCoordinator
    from ingestion.checkpoint import CheckpointStore
    from ingestion.merger import TemporalMerger

Example:
    async def processor(records):
        await sink.write(records)
        return ExtractionResult(success=True, processed=len(records))

    coordinator = BatchProcessingCoordinator(processor)
    result = await coordinator.process_archive_file("RS_2023-01.zst")

    print(f"Processed {result.metrics.total_processed_lines} lines")

Error Handling:
    All components raise exceptions from core.exceptions. Job-level failures
    leave a failure (or emergency) checkpoint behind and are resumable.
"""

__all__ = [
    "base",
    "checkpoint",
    "checkpoint_backends",
    "coordinator",
    "decompressor",
    "deduplication",
    "merger",
    "resource_monitor",
    "scheduler",
    "validators",
]
