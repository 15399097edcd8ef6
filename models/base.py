from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Where a record was collected from"""
    ARCHIVE = "archive"
    API_CHRONOLOGICAL = "api_chronological"
    API_KEYWORD_SEARCH = "api_keyword_search"
    API_ON_DEMAND = "api_on_demand"


# Merge tie-break order: lower index wins on equal timestamps
SOURCE_PRIORITY = [
    SourceType.ARCHIVE,
    SourceType.API_CHRONOLOGICAL,
    SourceType.API_KEYWORD_SEARCH,
    SourceType.API_ON_DEMAND,
]


class ContentKind(str, enum.Enum):
    """Reddit content kinds"""
    POST = "post"
    COMMENT = "comment"


class JobStatus(str, enum.Enum):
    """Batch processing job state"""
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointType(str, enum.Enum):
    """Why a checkpoint was written"""
    INITIAL = "initial"
    PROGRESS = "progress"
    EMERGENCY = "emergency"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    COMPLETION = "completion"


class PressureLevel(str, enum.Enum):
    """Memory pressure classification of a resource sample"""
    NORMAL = "normal"
    WARNING = "warning"
    EXHAUSTED = "exhausted"
