"""
SQLAlchemy ORM models and shared enums.

Models:
    base: Base declarative class and shared enums (SourceType, ContentKind,
          JobStatus, CheckpointType, PressureLevel)
    checkpoint: Key-value checkpoint rows for the database checkpoint backend

Database Schema:
    Only checkpoint persistence lives in the database. Content records flow
    through the pipeline and are handed to the downstream processor; their
    storage is owned elsewhere.

Usage:
    from models.base import Base, SourceType, JobStatus
    from models.checkpoint import CheckpointEntry
"""

from models.base import (
    Base,
    SourceType,
    SOURCE_PRIORITY,
    ContentKind,
    JobStatus,
    CheckpointType,
    PressureLevel,
)
from models.checkpoint import CheckpointEntry

__all__ = [
    "Base",
    "SourceType",
    "SOURCE_PRIORITY",
    "ContentKind",
    "JobStatus",
    "CheckpointType",
    "PressureLevel",
    "CheckpointEntry",
]
