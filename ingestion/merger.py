"""
Temporal merge of archive and live-feed batches into one ordered stream
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from core.config import settings
from core.exceptions import IngestionError
from ingestion.deduplication import DuplicateDetector
from ingestion.transformers.normalizer import MAX_TIMESTAMP_SEC, RecordNormalizer
from models.base import SOURCE_PRIORITY, ContentKind, SourceType
from schemas.deduplication import EdgeCasePolicy, MalformedTimestampStrategy, MissingIdStrategy
from schemas.merge import (
    ExtractionComment,
    ExtractionInput,
    ExtractionPost,
    Gap,
    MergedBatch,
    MergeValidationResult,
    RejectedItem,
    SourceBatch,
    TemporalRange,
)
from schemas.records import SourceRecord

logger = logging.getLogger(__name__)


@dataclass
class MergeConfig:
    gap_threshold_hours: float = field(default_factory=lambda: settings.GAP_THRESHOLD_HOURS)
    enable_gap_detection: bool = True
    deduplicate: bool = True
    priority_order: List[SourceType] = field(default_factory=lambda: list(SOURCE_PRIORITY))
    medium_severity_hours: float = 6.0
    high_severity_hours: float = 24.0


class TemporalMerger:
    """
    Merge SourceBatches into a MergedBatch.

    Steps:
    1. Normalize raw items (failures become rejected items)
    2. Drop duplicates in submission order (first submission wins)
    3. Stable sort by (timestamp, source priority, normalized key)
    4. Detect coverage gaps between adjacent items
    5. Compute source breakdown and temporal range
    """

    def __init__(
        self,
        config: Optional[MergeConfig] = None,
        detector: Optional[DuplicateDetector] = None
    ):
        self.config = config or MergeConfig()
        self.detector = detector
        self._priority: Dict[SourceType, int] = {
            source_type: index for index, source_type in enumerate(self.config.priority_order)
        }

    def merge(self, source_batches: List[SourceBatch]) -> MergedBatch:
        started = time.perf_counter()
        batch_id = str(uuid.uuid4())

        records: List[SourceRecord] = []
        rejected: List[RejectedItem] = []
        for source_batch in source_batches:
            self._collect(source_batch, records, rejected)

        duplicates = 0
        detector = self.detector
        if detector is None and self.config.deduplicate:
            detector = DuplicateDetector()
        if detector is not None:
            unique = []
            for record in records:
                if detector.check(record).is_duplicate:
                    duplicates += 1
                else:
                    unique.append(record)
            records = unique

        ordered = sorted(records, key=self._sort_key)

        breakdown = {source_type: 0 for source_type in SourceType}
        for record in ordered:
            breakdown[record.source_type] += 1

        merged = MergedBatch(
            batch_id=batch_id,
            items=ordered,
            rejected=rejected,
            total_items=len(ordered) + len(rejected),
            valid_items=len(ordered),
            invalid_items=len(rejected),
            duplicates_detected=duplicates,
            source_breakdown=breakdown,
            temporal_range=self._temporal_range(ordered),
            gaps=self.detect_gaps(ordered) if self.config.enable_gap_detection else [],
            merge_duration_ms=(time.perf_counter() - started) * 1000
        )

        logger.info(
            f"Merged {len(source_batches)} batches into {merged.batch_id}: "
            f"{merged.valid_items} valid, {merged.invalid_items} invalid, "
            f"{merged.duplicates_detected} duplicates, {len(merged.gaps)} gaps"
        )
        return merged

    def detect_gaps(self, ordered: List[SourceRecord]) -> List[Gap]:
        """Gaps wider than the threshold between adjacent (sorted) items"""
        threshold_sec = self.config.gap_threshold_hours * 3600
        gaps = []

        for previous, current in zip(ordered, ordered[1:]):
            delta = current.timestamp_sec - previous.timestamp_sec
            if delta <= threshold_sec:
                continue

            hours = delta / 3600
            affected = [previous.source_type]
            if current.source_type != previous.source_type:
                affected.append(current.source_type)

            gaps.append(Gap(
                start_time=previous.timestamp_sec,
                end_time=current.timestamp_sec,
                duration_hours=round(hours, 2),
                affected_sources=affected,
                severity=self._severity(hours),
                description=(
                    f"No content between {_iso(previous.timestamp_sec)} and "
                    f"{_iso(current.timestamp_sec)} ({hours:.1f}h)"
                )
            ))

        return gaps

    def validate(self, batch: MergedBatch) -> MergeValidationResult:
        """Check ordering/accounting invariants and score batch quality."""
        issues = []
        warnings = []

        for previous, current in zip(batch.items, batch.items[1:]):
            if self._sort_key(current) < self._sort_key(previous):
                issues.append(
                    f"Temporal inconsistency: {current.normalized_key} precedes {previous.normalized_key}"
                )
                break

        if batch.total_items != batch.valid_items + batch.invalid_items:
            issues.append("Item accounting mismatch")

        high_gaps = [gap for gap in batch.gaps if gap.severity == "high"]
        if high_gaps:
            warnings.append(f"{len(high_gaps)} high-severity coverage gaps")
        if batch.invalid_items:
            warnings.append(f"{batch.invalid_items} items could not be normalized")

        score = 100.0
        score -= 25.0 * len(issues)
        score -= 5.0 * len(high_gaps)
        if batch.total_items:
            score -= 20.0 * batch.invalid_items / batch.total_items

        return MergeValidationResult(
            is_valid=not issues,
            issues=issues,
            warnings=warnings,
            quality_score=round(max(0.0, min(100.0, score)), 2)
        )

    def convert_to_downstream_input(self, batch: MergedBatch) -> ExtractionInput:
        """Split a merged batch into post and comment payloads for extraction."""
        posts = []
        comments = []

        for record in batch.items:
            payload = record.payload
            created_at = _utc_datetime(record.timestamp_sec)
            url = payload.get("url") or _permalink_url(payload.get("permalink"))

            if record.kind == ContentKind.POST:
                posts.append(ExtractionPost(
                    post_id=record.identifier.id,
                    title=str(payload.get("title") or ""),
                    content=str(payload.get("selftext") or ""),
                    author=payload.get("author"),
                    subreddit=payload.get("subreddit"),
                    upvotes=_as_int(payload.get("score")),
                    comment_count=_as_int(payload.get("num_comments")),
                    created_at=created_at,
                    url=url,
                    source_type=record.source_type
                ))
            else:
                comments.append(ExtractionComment(
                    comment_id=record.identifier.id,
                    post_id=_strip_prefix(payload.get("link_id")),
                    parent_id=_strip_prefix(payload.get("parent_id")),
                    content=str(payload.get("body") or ""),
                    author=payload.get("author"),
                    upvotes=_as_int(payload.get("score")),
                    created_at=created_at,
                    url=_permalink_url(payload.get("permalink")),
                    source_type=record.source_type
                ))

        return ExtractionInput(
            posts=posts,
            comments=comments,
            source_metadata={
                "batch_id": batch.batch_id,
                "merged_at": batch.merged_at.isoformat(),
                "source_breakdown": {k.value: v for k, v in batch.source_breakdown.items()},
                "temporal_range": batch.temporal_range.model_dump(),
                "gap_count": len(batch.gaps),
            }
        )

    # ------------------------------------------------------------------

    def _collect(self, source_batch: SourceBatch, records: List[SourceRecord], rejected: List[RejectedItem]):
        # Inside a merge, records that cannot be normalized are reported, not dropped
        normalizer = RecordNormalizer(
            source_batch.source_type,
            policy=EdgeCasePolicy(
                missing_id=MissingIdStrategy.ERROR,
                malformed_timestamp=MalformedTimestampStrategy.ERROR
            ),
            batch_id=source_batch.batch_id
        )

        for item in source_batch.items:
            if isinstance(item, SourceRecord):
                reason = _timestamp_problem(item.timestamp_sec)
                if reason:
                    rejected.append(RejectedItem(
                        source_type=item.source_type,
                        reason=reason,
                        payload=item.payload
                    ))
                else:
                    records.append(item)
                continue

            try:
                records.append(normalizer.normalize(item))
            except (IngestionError, ValueError) as e:
                rejected.append(RejectedItem(
                    source_type=source_batch.source_type,
                    reason=getattr(e, "message", str(e)),
                    payload=dict(item)
                ))

    def _sort_key(self, record: SourceRecord):
        return (
            record.timestamp_sec,
            self._priority.get(record.source_type, len(self._priority)),
            record.normalized_key,
        )

    def _severity(self, hours: float) -> str:
        if hours > self.config.high_severity_hours:
            return "high"
        if hours > self.config.medium_severity_hours:
            return "medium"
        return "low"

    def _temporal_range(self, ordered: List[SourceRecord]) -> TemporalRange:
        if not ordered:
            return TemporalRange()
        earliest = ordered[0].timestamp_sec
        latest = ordered[-1].timestamp_sec
        return TemporalRange(
            earliest=earliest,
            latest=latest,
            span_hours=round((latest - earliest) / 3600, 2)
        )


def _timestamp_problem(timestamp_sec: int) -> Optional[str]:
    if timestamp_sec <= 0:
        return "Timestamp must be positive"
    if timestamp_sec > MAX_TIMESTAMP_SEC:
        return "Timestamp out of range"
    return None


def _utc_datetime(timestamp_sec: int) -> datetime:
    # Clamped so hand-built batches with out-of-range timestamps still convert
    return datetime.fromtimestamp(min(max(timestamp_sec, 0), MAX_TIMESTAMP_SEC), tz=timezone.utc)


def _iso(timestamp_sec: int) -> str:
    if 0 <= timestamp_sec <= MAX_TIMESTAMP_SEC:
        return datetime.fromtimestamp(timestamp_sec, tz=timezone.utc).isoformat()
    return f"epoch {timestamp_sec}"


def _as_int(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _strip_prefix(fullname: Optional[str]) -> Optional[str]:
    if not fullname:
        return None
    return fullname.split("_", 1)[1] if fullname[:1] == "t" and "_" in fullname[:3] else fullname


def _permalink_url(permalink: Optional[str]) -> Optional[str]:
    if not permalink:
        return None
    if permalink.startswith("http"):
        return permalink
    return f"https://www.reddit.com{permalink}"
