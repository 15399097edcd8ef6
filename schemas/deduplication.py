"""
Pydantic schemas for duplicate detection
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime
from models.base import SourceType
from schemas.records import ContentIdentifier


class MissingIdStrategy(str, Enum):
    SKIP = "skip"
    GENERATE = "generate"
    ERROR = "error"


class MalformedTimestampStrategy(str, Enum):
    SKIP = "skip"
    USE_CURRENT = "use_current"
    ERROR = "error"


class ConflictingSourceStrategy(str, Enum):
    FIRST_WINS = "first_wins"
    LAST_WINS = "last_wins"
    ERROR = "error"


class EdgeCasePolicy(BaseModel):
    """How malformed or conflicting records are handled"""

    missing_id: MissingIdStrategy = MissingIdStrategy.SKIP
    malformed_timestamp: MalformedTimestampStrategy = MalformedTimestampStrategy.SKIP
    conflicting_source: ConflictingSourceStrategy = ConflictingSourceStrategy.FIRST_WINS


class DuplicateTrackingEntry(BaseModel):
    """First sighting of an identifier within a detection session"""

    identifier: ContentIdentifier
    first_seen_source: SourceType
    first_seen_at: datetime = Field(default_factory=datetime.utcnow)
    timestamp_sec: int
    batch_id: Optional[str] = None

    class Config:
        frozen = True


class DuplicateCheckResult(BaseModel):
    identifier: ContentIdentifier
    is_duplicate: bool
    original: Optional[DuplicateTrackingEntry] = None
    current_source: SourceType
    time_diff_seconds: Optional[int] = None


class TemporalOverlapStats(BaseModel):
    """Distribution of the time between first sighting and duplicate"""

    avg_time_diff_hours: float = 0.0
    max_time_diff_hours: float = 0.0
    distribution: Dict[str, int] = Field(default_factory=lambda: {
        "0-1h": 0,
        "1-6h": 0,
        "6-24h": 0,
        "1-7d": 0,
        ">7d": 0,
    })


class OverlapPattern(BaseModel):
    pattern: str
    count: int
    percentage: float


class SourceOverlapAnalysis(BaseModel):
    source_breakdown: Dict[SourceType, int] = Field(default_factory=dict)
    overlap_matrix: Dict[str, int] = Field(default_factory=dict)
    common_overlap_patterns: List[OverlapPattern] = Field(default_factory=list)
    temporal_overlap: TemporalOverlapStats = Field(default_factory=TemporalOverlapStats)


class BatchDuplicateAnalysis(BaseModel):
    total_items: int = 0
    duplicates_found: int = 0
    unique_items: int = 0
    duplicate_rate: float = 0.0  # percent
    results: List[DuplicateCheckResult] = Field(default_factory=list)
    source_overlap: SourceOverlapAnalysis = Field(default_factory=SourceOverlapAnalysis)
    processing_time_ms: float = 0.0


class DeduplicationStats(BaseModel):
    """Cumulative counters for a detector session"""

    total_items_processed: int = 0
    total_duplicates_detected: int = 0
    overall_duplicate_rate: float = 0.0
    sessions_completed: int = 0
    avg_session_size: float = 0.0
    tracked_identifiers: int = 0
    evictions: int = 0
