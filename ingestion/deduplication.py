"""
Cross-source duplicate detection for posts and comments.

The first sighting of a normalized identifier is canonical; every later
sighting, from any source, is a duplicate attributed to the tracked
entry's source.
"""

import logging
import time
from collections import Counter, OrderedDict
from typing import Dict, Iterable, List, Optional

from core.config import settings
from core.exceptions import ConflictingSourceError
from models.base import SourceType
from schemas.deduplication import (
    BatchDuplicateAnalysis,
    ConflictingSourceStrategy,
    DeduplicationStats,
    DuplicateCheckResult,
    DuplicateTrackingEntry,
    EdgeCasePolicy,
    OverlapPattern,
    SourceOverlapAnalysis,
    TemporalOverlapStats,
)
from schemas.records import SourceRecord

logger = logging.getLogger(__name__)

TOP_OVERLAP_PATTERNS = 5

# (label, upper bound in hours)
TIME_DIFF_BUCKETS = [
    ("0-1h", 1),
    ("1-6h", 6),
    ("6-24h", 24),
    ("1-7d", 24 * 7),
    (">7d", float("inf")),
]


class DuplicateDetector:
    """
    Tracks first-seen identifiers for one detection session.

    Memory grows with the number of distinct identifiers; pass cache_size
    to bound it (least recently seen identifiers are evicted first, after
    which a re-sighting counts as new).
    """

    def __init__(
        self,
        policy: Optional[EdgeCasePolicy] = None,
        cache_size: Optional[int] = None
    ):
        self.policy = policy or EdgeCasePolicy()
        self.cache_size = cache_size if cache_size is not None else settings.DEDUP_CACHE_SIZE
        self._seen: "OrderedDict[str, DuplicateTrackingEntry]" = OrderedDict()
        self._stats = DeduplicationStats()

    def check(self, record: SourceRecord) -> DuplicateCheckResult:
        """Classify one record and track it if it is new."""
        key = record.normalized_key
        original = self._seen.get(key)

        if original is None:
            self._track(key, self._entry_for(record))
            self._stats.total_items_processed += 1
            return DuplicateCheckResult(
                identifier=record.identifier,
                is_duplicate=False,
                current_source=record.source_type
            )

        self._seen.move_to_end(key)
        self._resolve_conflict(key, original, record)

        self._stats.total_items_processed += 1
        self._stats.total_duplicates_detected += 1
        return DuplicateCheckResult(
            identifier=record.identifier,
            is_duplicate=True,
            original=original,
            current_source=record.source_type,
            time_diff_seconds=abs(record.timestamp_sec - original.timestamp_sec)
        )

    def check_batch(self, records: Iterable[SourceRecord]) -> BatchDuplicateAnalysis:
        """
        Classify a batch in order and summarize cross-source overlap.

        Duplicates within the batch are caught as well: the first
        occurrence in the batch is tracked before the next is checked.
        """
        started = time.perf_counter()
        results = [self.check(record) for record in records]

        total = len(results)
        duplicates = sum(1 for r in results if r.is_duplicate)

        self._stats.sessions_completed += 1
        sessions = self._stats.sessions_completed
        self._stats.avg_session_size += (total - self._stats.avg_session_size) / sessions
        self._refresh_rate()

        analysis = BatchDuplicateAnalysis(
            total_items=total,
            duplicates_found=duplicates,
            unique_items=total - duplicates,
            duplicate_rate=round(duplicates / total * 100, 2) if total else 0.0,
            results=results,
            source_overlap=self._analyze_overlap(results),
            processing_time_ms=(time.perf_counter() - started) * 1000
        )

        logger.info(
            f"Duplicate check: {analysis.total_items} items, "
            f"{analysis.duplicates_found} duplicates ({analysis.duplicate_rate}%)"
        )
        return analysis

    def filter_unique(self, records: Iterable[SourceRecord]) -> List[SourceRecord]:
        """Records that are not duplicates, in input order."""
        return [record for record in records if not self.check(record).is_duplicate]

    def forget(self, keys: Iterable[str]) -> int:
        """Stop tracking identifiers (e.g. admitted but never committed)."""
        removed = 0
        for key in keys:
            if self._seen.pop(key, None) is not None:
                removed += 1
        return removed

    def is_tracked(self, key: str) -> bool:
        return key in self._seen

    def tracked_entry(self, key: str) -> Optional[DuplicateTrackingEntry]:
        return self._seen.get(key)

    def reset(self):
        """Start a fresh detection session"""
        cleared = len(self._seen)
        self._seen.clear()
        self._stats = DeduplicationStats()
        logger.info(f"Duplicate detector reset ({cleared} identifiers cleared)")

    def stats(self) -> DeduplicationStats:
        self._refresh_rate()
        return self._stats.model_copy(update={"tracked_identifiers": len(self._seen)})

    # ------------------------------------------------------------------

    def _entry_for(self, record: SourceRecord) -> DuplicateTrackingEntry:
        return DuplicateTrackingEntry(
            identifier=record.identifier,
            first_seen_source=record.source_type,
            timestamp_sec=record.timestamp_sec,
            batch_id=record.batch_id
        )

    def _track(self, key: str, entry: DuplicateTrackingEntry):
        self._seen[key] = entry
        if self.cache_size and len(self._seen) > self.cache_size:
            self._seen.popitem(last=False)
            self._stats.evictions += 1

    def _resolve_conflict(self, key: str, original: DuplicateTrackingEntry, record: SourceRecord):
        if original.first_seen_source == record.source_type:
            return

        strategy = self.policy.conflicting_source
        if strategy == ConflictingSourceStrategy.ERROR:
            raise ConflictingSourceError(
                "Identifier delivered by conflicting sources",
                context={
                    "key": key,
                    "original_source": original.first_seen_source.value,
                    "current_source": record.source_type.value
                }
            )
        if strategy == ConflictingSourceStrategy.LAST_WINS:
            self._seen[key] = original.model_copy(update={
                "first_seen_source": record.source_type,
                "batch_id": record.batch_id,
            })

    def _refresh_rate(self):
        processed = self._stats.total_items_processed
        self._stats.overall_duplicate_rate = (
            round(self._stats.total_duplicates_detected / processed * 100, 2) if processed else 0.0
        )

    def _analyze_overlap(self, results: List[DuplicateCheckResult]) -> SourceOverlapAnalysis:
        breakdown: Dict[SourceType, int] = {source_type: 0 for source_type in SourceType}
        matrix: Counter = Counter()
        temporal = TemporalOverlapStats()
        diffs: List[float] = []

        for result in results:
            breakdown[result.current_source] += 1
            if not result.is_duplicate or result.original is None:
                continue

            matrix[f"{result.original.first_seen_source.value}->{result.current_source.value}"] += 1

            hours = (result.time_diff_seconds or 0) / 3600
            diffs.append(hours)
            for label, upper in TIME_DIFF_BUCKETS:
                if hours < upper:
                    temporal.distribution[label] += 1
                    break

        if diffs:
            temporal.avg_time_diff_hours = round(sum(diffs) / len(diffs), 2)
            temporal.max_time_diff_hours = round(max(diffs), 2)

        total_overlaps = sum(matrix.values())
        patterns = [
            OverlapPattern(
                pattern=pattern,
                count=count,
                percentage=round(count / total_overlaps * 100, 2)
            )
            for pattern, count in matrix.most_common(TOP_OVERLAP_PATTERNS)
        ]

        return SourceOverlapAnalysis(
            source_breakdown=breakdown,
            overlap_matrix=dict(matrix),
            common_overlap_patterns=patterns,
            temporal_overlap=temporal
        )
