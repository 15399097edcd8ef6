"""
Unit tests for cross-source duplicate detection
"""

import pytest
from core.exceptions import ConflictingSourceError
from ingestion.deduplication import DuplicateDetector
from models.base import ContentKind, SourceType
from schemas.deduplication import ConflictingSourceStrategy, EdgeCasePolicy
from schemas.records import ContentIdentifier, SourceRecord


def record(raw_id: str, source: SourceType, ts: int = 1672531200, kind: ContentKind = ContentKind.POST) -> SourceRecord:
    return SourceRecord(
        identifier=ContentIdentifier.from_raw(raw_id, kind),
        source_type=source,
        timestamp_sec=ts,
        batch_id=f"{source.value}-batch"
    )


class TestDuplicateDetector:
    """Test first-sighting-wins identity tracking"""

    def test_archive_then_api_is_duplicate(self):
        """Test the second sighting reports the archive as original"""
        detector = DuplicateDetector()

        first = detector.check(record("abc123", SourceType.ARCHIVE))
        second = detector.check(record("abc123", SourceType.API_CHRONOLOGICAL, ts=1672531200 + 90))

        assert first.is_duplicate is False
        assert second.is_duplicate is True
        assert second.original.first_seen_source == SourceType.ARCHIVE
        assert second.current_source == SourceType.API_CHRONOLOGICAL
        assert second.time_diff_seconds == 90

    def test_prefix_and_case_are_normalized(self):
        detector = DuplicateDetector()
        detector.check(record("t3_ABC123", SourceType.ARCHIVE))

        assert detector.check(record("abc123", SourceType.API_ON_DEMAND)).is_duplicate

    def test_posts_and_comments_do_not_collide(self):
        detector = DuplicateDetector()
        detector.check(record("x1", SourceType.ARCHIVE, kind=ContentKind.POST))

        assert not detector.check(record("x1", SourceType.ARCHIVE, kind=ContentKind.COMMENT)).is_duplicate

    def test_last_wins_reattributes_source(self):
        detector = DuplicateDetector(policy=EdgeCasePolicy(conflicting_source=ConflictingSourceStrategy.LAST_WINS))
        detector.check(record("abc", SourceType.ARCHIVE))
        detector.check(record("abc", SourceType.API_KEYWORD_SEARCH))

        third = detector.check(record("abc", SourceType.API_ON_DEMAND))

        assert third.original.first_seen_source == SourceType.API_KEYWORD_SEARCH

    def test_first_wins_keeps_original(self):
        detector = DuplicateDetector()
        detector.check(record("abc", SourceType.ARCHIVE))
        detector.check(record("abc", SourceType.API_KEYWORD_SEARCH))

        assert detector.tracked_entry("post:abc").first_seen_source == SourceType.ARCHIVE

    def test_error_policy_raises_on_conflict(self):
        detector = DuplicateDetector(policy=EdgeCasePolicy(conflicting_source=ConflictingSourceStrategy.ERROR))
        detector.check(record("abc", SourceType.ARCHIVE))

        assert detector.check(record("abc", SourceType.ARCHIVE)).is_duplicate
        with pytest.raises(ConflictingSourceError):
            detector.check(record("abc", SourceType.API_CHRONOLOGICAL))

    def test_cache_size_evicts_least_recent(self):
        detector = DuplicateDetector(cache_size=2)
        detector.check(record("a", SourceType.ARCHIVE))
        detector.check(record("b", SourceType.ARCHIVE))
        detector.check(record("c", SourceType.ARCHIVE))

        assert not detector.is_tracked("post:a")
        assert detector.stats().evictions == 1
        assert not detector.check(record("a", SourceType.ARCHIVE)).is_duplicate

    def test_forget_and_reset(self):
        detector = DuplicateDetector()
        detector.check(record("a", SourceType.ARCHIVE))
        detector.check(record("b", SourceType.ARCHIVE))

        assert detector.forget(["post:a", "post:missing"]) == 1
        assert not detector.check(record("a", SourceType.ARCHIVE)).is_duplicate

        detector.reset()
        assert detector.stats().tracked_identifiers == 0

    def test_filter_unique(self):
        detector = DuplicateDetector()
        records = [
            record("a", SourceType.ARCHIVE),
            record("a", SourceType.API_CHRONOLOGICAL),
            record("b", SourceType.API_CHRONOLOGICAL),
        ]

        unique = detector.filter_unique(records)

        assert [r.identifier.id for r in unique] == ["a", "b"]
        assert unique[0].source_type == SourceType.ARCHIVE


class TestBatchAnalysis:
    """Test batch duplicate statistics"""

    def test_overlap_matrix_and_buckets(self):
        detector = DuplicateDetector()
        base = 1672531200
        analysis = detector.check_batch([
            record("a", SourceType.ARCHIVE, base),
            record("b", SourceType.ARCHIVE, base),
            record("a", SourceType.API_CHRONOLOGICAL, base + 1800),
            record("b", SourceType.API_CHRONOLOGICAL, base + 3 * 3600),
            record("a", SourceType.API_KEYWORD_SEARCH, base + 10 * 86400),
        ])

        assert analysis.total_items == 5
        assert analysis.duplicates_found == 3
        assert analysis.unique_items == 2
        assert analysis.duplicate_rate == 60.0

        overlap = analysis.source_overlap
        assert overlap.overlap_matrix == {
            "archive->api_chronological": 2,
            "archive->api_keyword_search": 1,
        }
        assert overlap.common_overlap_patterns[0].pattern == "archive->api_chronological"
        assert overlap.source_breakdown[SourceType.ARCHIVE] == 2
        assert overlap.source_breakdown[SourceType.API_ON_DEMAND] == 0
        assert overlap.temporal_overlap.distribution["0-1h"] == 1
        assert overlap.temporal_overlap.distribution["1-6h"] == 1
        assert overlap.temporal_overlap.distribution[">7d"] == 1
        assert overlap.temporal_overlap.max_time_diff_hours == 240.0

    def test_empty_batch(self):
        analysis = DuplicateDetector().check_batch([])

        assert analysis.total_items == 0
        assert analysis.duplicate_rate == 0.0

    def test_stats_accumulate_across_batches(self):
        detector = DuplicateDetector()
        detector.check_batch([record("a", SourceType.ARCHIVE), record("b", SourceType.ARCHIVE)])
        detector.check_batch([record("a", SourceType.API_CHRONOLOGICAL), record("c", SourceType.API_CHRONOLOGICAL)])

        stats = detector.stats()

        assert stats.total_items_processed == 4
        assert stats.total_duplicates_detected == 1
        assert stats.overall_duplicate_rate == 25.0
        assert stats.sessions_completed == 2
        assert stats.avg_session_size == 2.0
        assert stats.tracked_identifiers == 3
