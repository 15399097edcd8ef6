"""
Unit tests for the temporal merger
"""

import pytest
from datetime import datetime, timezone
from ingestion.deduplication import DuplicateDetector
from ingestion.merger import MergeConfig, TemporalMerger
from models.base import ContentKind, SourceType
from schemas.merge import SourceBatch
from schemas.records import ContentIdentifier, SourceRecord

JAN_2021 = int(datetime(2021, 1, 1, tzinfo=timezone.utc).timestamp())
JAN_2023 = int(datetime(2023, 1, 1, tzinfo=timezone.utc).timestamp())


def batch(source: SourceType, items, batch_id: str = None) -> SourceBatch:
    return SourceBatch(source_type=source, items=items, batch_id=batch_id or source.value)


class TestTemporalMerge:
    """Test ordering, dedup and accounting"""

    def test_gap_between_archive_and_api(self, make_post):
        """Test two years between sources produce one high-severity gap"""
        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2021), make_post(2, JAN_2021 + 60)]),
            batch(SourceType.API_CHRONOLOGICAL, [make_post(3, JAN_2023), make_post(4, JAN_2023 + 60)]),
        ])

        assert len(merged.gaps) == 1
        gap = merged.gaps[0]
        assert gap.duration_hours > 17000
        assert gap.severity == "high"
        assert gap.start_time == JAN_2021 + 60
        assert gap.end_time == JAN_2023
        assert gap.affected_sources == [SourceType.ARCHIVE, SourceType.API_CHRONOLOGICAL]

    def test_empty_archive_with_api_items(self, make_post):
        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, []),
            batch(SourceType.API_CHRONOLOGICAL, [make_post(1, JAN_2023), make_post(2, JAN_2023 + 5)]),
        ])

        assert merged.total_items == 2
        assert merged.valid_items == 2
        assert merged.source_breakdown[SourceType.ARCHIVE] == 0
        assert merged.source_breakdown[SourceType.API_CHRONOLOGICAL] == 2

    def test_all_empty_inputs(self):
        merged = TemporalMerger().merge([batch(SourceType.ARCHIVE, []), batch(SourceType.API_ON_DEMAND, [])])

        assert merged.total_items == 0
        assert merged.items == []
        assert merged.gaps == []
        assert merged.temporal_range.span_hours == 0.0

    def test_items_sorted_by_time_then_priority(self, make_post):
        merged = TemporalMerger().merge([
            batch(SourceType.API_KEYWORD_SEARCH, [make_post(9, JAN_2023 + 10), make_post(5, JAN_2023)]),
            batch(SourceType.ARCHIVE, [make_post(7, JAN_2023), make_post(1, JAN_2023 - 10)]),
        ])

        assert [r.identifier.id for r in merged.items] == ["p1", "p7", "p5", "p9"]
        assert [r.timestamp_sec for r in merged.items] == sorted(r.timestamp_sec for r in merged.items)
        assert merged.temporal_range.earliest == JAN_2023 - 10
        assert merged.temporal_range.latest == JAN_2023 + 10

    def test_duplicates_keep_first_submission(self, make_post):
        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)]),
            batch(SourceType.API_CHRONOLOGICAL, [make_post(1, JAN_2023 + 30), make_post(2, JAN_2023 + 60)]),
        ])

        assert merged.duplicates_detected == 1
        assert merged.valid_items == 2
        assert merged.items[0].source_type == SourceType.ARCHIVE

    def test_injected_detector_spans_merges(self, make_post):
        detector = DuplicateDetector()
        merger = TemporalMerger(detector=detector)

        merger.merge([batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)])])
        second = merger.merge([batch(SourceType.API_CHRONOLOGICAL, [make_post(1, JAN_2023)])])

        assert second.duplicates_detected == 1
        assert second.valid_items == 0

    def test_fresh_detector_per_merge_by_default(self, make_post):
        merger = TemporalMerger()

        merger.merge([batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)])])
        second = merger.merge([batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)])])

        assert second.duplicates_detected == 0

    def test_invalid_items_are_rejected(self, make_post):
        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, [
                make_post(1, JAN_2023),
                make_post(2, created_utc=-5),
                make_post(3, created_utc="not a time"),
                {"id": "mystery", "created_utc": JAN_2023},
                make_post(4, id=None, name=None),
            ]),
        ])

        assert merged.valid_items == 1
        assert merged.invalid_items == 4
        assert merged.total_items == merged.valid_items + merged.invalid_items
        assert all(r.source_type == SourceType.ARCHIVE for r in merged.rejected)

    def test_millisecond_epochs_are_scaled(self, make_post):
        """Test an API item stamped in milliseconds merges as seconds"""
        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)]),
            batch(SourceType.API_CHRONOLOGICAL, [make_post(2, 1_700_000_000_000)]),
        ])

        assert merged.valid_items == 2
        assert merged.items[-1].timestamp_sec == 1_700_000_000
        assert len(merged.gaps) == 1
        assert "2023-11-14" in merged.gaps[0].description

    def test_out_of_range_records_are_rejected(self, make_post):
        far_future = SourceRecord(
            identifier=ContentIdentifier.from_raw("p2", ContentKind.POST),
            source_type=SourceType.API_ON_DEMAND,
            timestamp_sec=10 ** 15,
            payload=make_post(2)
        )

        merged = TemporalMerger().merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2023)]),
            batch(SourceType.API_ON_DEMAND, [far_future]),
        ])

        assert merged.valid_items == 1
        assert merged.rejected[0].reason == "Timestamp out of range"

        gaps = TemporalMerger().detect_gaps([merged.items[0], far_future])
        assert "epoch 1000000000000000" in gaps[0].description

    def test_gap_severity_thresholds(self, make_post):
        hour = 3600
        merged = TemporalMerger(MergeConfig(gap_threshold_hours=4)).merge([
            batch(SourceType.ARCHIVE, [
                make_post(1, JAN_2023),
                make_post(2, JAN_2023 + 5 * hour),
                make_post(3, JAN_2023 + 12 * hour),
                make_post(4, JAN_2023 + 40 * hour),
                make_post(5, JAN_2023 + 42 * hour),
            ]),
        ])

        assert [g.severity for g in merged.gaps] == ["low", "medium", "high"]

    def test_gap_detection_can_be_disabled(self, make_post):
        merged = TemporalMerger(MergeConfig(enable_gap_detection=False)).merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2021), make_post(2, JAN_2023)]),
        ])

        assert merged.gaps == []


class TestMergeValidationAndConversion:
    """Test quality scoring and downstream conversion"""

    def test_validate_clean_batch(self, make_post):
        merger = TemporalMerger()
        merged = merger.merge([batch(SourceType.ARCHIVE, [make_post(1, JAN_2023), make_post(2, JAN_2023 + 60)])])

        result = merger.validate(merged)

        assert result.is_valid
        assert result.quality_score == 100.0

    def test_validate_penalizes_gaps_and_rejects(self, make_post):
        merger = TemporalMerger()
        merged = merger.merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2021), make_post(2, created_utc=0)]),
            batch(SourceType.API_CHRONOLOGICAL, [make_post(3, JAN_2023)]),
        ])

        result = merger.validate(merged)

        assert result.is_valid
        assert result.quality_score < 100.0
        assert len(result.warnings) == 2

    def test_convert_to_downstream_input(self, make_post, make_comment):
        merger = TemporalMerger()
        merged = merger.merge([
            batch(SourceType.ARCHIVE, [make_post(1, JAN_2023), make_comment(1, JAN_2023 + 60)]),
        ])

        extraction = merger.convert_to_downstream_input(merged)

        assert len(extraction.posts) == 1
        assert len(extraction.comments) == 1
        post = extraction.posts[0]
        assert post.post_id == "p1"
        assert post.title == "Post 1"
        assert post.url == "https://www.reddit.com/r/python/comments/p1/post_1/"
        comment = extraction.comments[0]
        assert comment.post_id == "p1"
        assert comment.content == "Comment 1"
        assert extraction.source_metadata["batch_id"] == merged.batch_id
        assert extraction.source_metadata["source_breakdown"]["archive"] == 2

    @pytest.mark.parametrize("score", ["12", 12.7, None, "n/a"])
    def test_conversion_tolerates_odd_scores(self, make_post, score):
        merger = TemporalMerger()
        merged = merger.merge([batch(SourceType.ARCHIVE, [make_post(1, JAN_2023, score=score)])])

        upvotes = merger.convert_to_downstream_input(merged).posts[0].upvotes

        assert upvotes in (12, 0)
