"""
Pydantic schemas for temporal merging and downstream hand-off
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, List, Any, Union
from datetime import datetime
from models.base import SourceType
from schemas.records import SourceRecord


class SourceBatch(BaseModel):
    """Records from one source, submitted together to the merger"""

    source_type: SourceType
    items: List[Union[SourceRecord, Dict[str, Any]]] = Field(default_factory=list)
    batch_id: Optional[str] = None
    collected_at: datetime = Field(default_factory=datetime.utcnow)


class Gap(BaseModel):
    """A stretch of time between adjacent merged items with no coverage"""

    start_time: int
    end_time: int
    duration_hours: float
    affected_sources: List[SourceType]
    severity: str  # low, medium, high
    gap_type: str = "missing_coverage"
    description: str = ""


class TemporalRange(BaseModel):
    earliest: int = 0
    latest: int = 0
    span_hours: float = 0.0


class RejectedItem(BaseModel):
    """An input item that could not be normalized into a SourceRecord"""

    source_type: SourceType
    reason: str
    payload: Dict[str, Any] = Field(default_factory=dict)


def _empty_breakdown() -> Dict[SourceType, int]:
    return {source_type: 0 for source_type in SourceType}


class MergedBatch(BaseModel):
    """
    Time-ordered, duplicate-free union of archive and live-feed records.

    Invariants:
    - items ascend by timestamp_sec; equal timestamps ordered by source
      priority, then normalized key
    - total_items == valid_items + invalid_items
    - source_breakdown has an entry for every SourceType
    """

    batch_id: str
    items: List[SourceRecord] = Field(default_factory=list)
    rejected: List[RejectedItem] = Field(default_factory=list)
    total_items: int = 0
    valid_items: int = 0
    invalid_items: int = 0
    duplicates_detected: int = 0
    source_breakdown: Dict[SourceType, int] = Field(default_factory=_empty_breakdown)
    temporal_range: TemporalRange = Field(default_factory=TemporalRange)
    gaps: List[Gap] = Field(default_factory=list)
    merged_at: datetime = Field(default_factory=datetime.utcnow)
    merge_duration_ms: float = 0.0


class MergeValidationResult(BaseModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    quality_score: float = 100.0


# ============================================================================
# Downstream extraction input
# ============================================================================

class ExtractionPost(BaseModel):
    post_id: str
    title: str
    content: str = ""
    author: Optional[str] = None
    subreddit: Optional[str] = None
    upvotes: int = 0
    comment_count: int = 0
    created_at: datetime
    url: Optional[str] = None
    source_type: SourceType


class ExtractionComment(BaseModel):
    comment_id: str
    post_id: Optional[str] = None
    parent_id: Optional[str] = None
    content: str
    author: Optional[str] = None
    upvotes: int = 0
    created_at: datetime
    url: Optional[str] = None
    source_type: SourceType


class ExtractionInput(BaseModel):
    """Payload handed to the downstream entity-extraction step"""

    posts: List[ExtractionPost] = Field(default_factory=list)
    comments: List[ExtractionComment] = Field(default_factory=list)
    source_metadata: Dict[str, Any] = Field(default_factory=dict)
