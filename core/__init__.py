"""
Core utilities and configuration for the archive ingestion service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session management for checkpoint persistence
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker
    from core.exceptions import DecodeError, MemoryExhaustion
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Session factory for the checkpoint database
    session_maker = create_session_maker(create_engine())
"""

from core.config import settings
from core.database import create_engine, create_session_maker, get_engine
from core.logging import setup_logging
from core.exceptions import (
    IngestionError,
    RetryableError,
    NonRetryableError,
    DecodeError,
    RecordParseError,
    ValidationRejected,
    ProcessingTimeout,
    MemoryExhaustion,
    CheckpointError,
    CheckpointWriteFailed,
    NoInitialCheckpoint,
    CheckpointNotFound,
    JobAlreadyCompleted,
    DuplicateDetectionError,
    MissingIdentifierError,
    MalformedTimestampError,
    ConflictingSourceError,
    MergeError,
    TimestampNormalizationError,
    MergeValidationError,
    DownstreamProcessingError,
    JobCancelled,
    ExtractionError,
    APIExtractionError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)

__all__ = [
    "settings",
    "create_engine",
    "create_session_maker",
    "get_engine",
    "setup_logging",
    # Exceptions
    "IngestionError",
    "RetryableError",
    "NonRetryableError",
    "DecodeError",
    "RecordParseError",
    "ValidationRejected",
    "ProcessingTimeout",
    "MemoryExhaustion",
    "CheckpointError",
    "CheckpointWriteFailed",
    "NoInitialCheckpoint",
    "CheckpointNotFound",
    "JobAlreadyCompleted",
    "DuplicateDetectionError",
    "MissingIdentifierError",
    "MalformedTimestampError",
    "ConflictingSourceError",
    "MergeError",
    "TimestampNormalizationError",
    "MergeValidationError",
    "DownstreamProcessingError",
    "JobCancelled",
    "ExtractionError",
    "APIExtractionError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
