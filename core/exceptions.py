"""
Custom exceptions for the ingestion pipeline with structured error context.

This module provides the exception hierarchy used by the archive
decompressor, checkpoint store, duplicate detector, temporal merger,
batch coordinator and live-feed extractors. Each exception carries
context information for debugging and monitoring.

Exception Hierarchy:
    IngestionError (base)
    ├── DecodeError
    ├── RecordParseError
    ├── ValidationRejected
    ├── ProcessingTimeout
    ├── MemoryExhaustion
    ├── CheckpointError
    │   ├── CheckpointWriteFailed
    │   ├── NoInitialCheckpoint
    │   ├── CheckpointNotFound
    │   └── JobAlreadyCompleted
    ├── DuplicateDetectionError
    │   ├── MissingIdentifierError
    │   ├── MalformedTimestampError
    │   └── ConflictingSourceError
    ├── MergeError
    │   ├── TimestampNormalizationError
    │   └── MergeValidationError
    ├── DownstreamProcessingError
    ├── JobCancelled
    ├── ExtractionError
    │   └── APIExtractionError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class IngestionError(Exception):
    """
    Base exception for all ingestion-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job_id, line_number, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(IngestionError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Memory pressure that clears after a pause
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(IngestionError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Corrupt archives
    - Authentication failures (HTTP 401, 403)
    - Invalid caller input
    """
    pass


# ============================================================================
# Stream Errors
# ============================================================================

class DecodeError(NonRetryableError):
    """
    Raised when the compressed stream itself cannot be decoded.

    Context should include:
        - file_path: Archive path
        - line_number: Last line read before the failure
    """
    pass


class RecordParseError(IngestionError):
    """
    A single line is not a JSON object. Recoverable: counted and skipped.

    Context should include:
        - line_number: Line number in the archive
        - content: Line content truncated to 100 characters
    """
    pass


class ValidationRejected(IngestionError):
    """
    A parsed record was rejected by a validator. Recoverable: counted and skipped.

    Context should include:
        - line_number: Line number in the archive (if applicable)
        - reason: Why the validator rejected it
    """
    pass


class ProcessingTimeout(IngestionError):
    """Wall-clock limit for a decompression call was exceeded."""

    def __init__(
        self,
        message: str,
        lines_processed: int = 0,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.lines_processed = lines_processed
        self.context["lines_processed"] = lines_processed


class MemoryExhaustion(RetryableError):
    """Job paused because memory crossed the exhaustion threshold."""

    def __init__(
        self,
        message: str,
        memory_usage: int = 0,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.memory_usage = memory_usage
        self.context["memory_usage"] = memory_usage


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(IngestionError):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - job_id: Job the checkpoint belongs to
        - operation: Operation that failed (create, append, load, delete)
    """
    pass


class CheckpointWriteFailed(CheckpointError):
    """Persisting a checkpoint failed. Logged, never raised to the job."""
    pass


class NoInitialCheckpoint(NonRetryableError, CheckpointError):
    """A progress checkpoint was requested before the initial one existed."""
    pass


class CheckpointNotFound(NonRetryableError, CheckpointError):
    """Resume requested for a job with no checkpoints."""
    pass


class JobAlreadyCompleted(NonRetryableError, CheckpointError):
    """Resume requested for a job whose terminal checkpoint is completed."""
    pass


# ============================================================================
# Duplicate Detection Errors
# ============================================================================

class DuplicateDetectionError(IngestionError):
    """Base exception for duplicate detection failures."""
    pass


class MissingIdentifierError(NonRetryableError, DuplicateDetectionError):
    """A record has no platform identifier and the policy is 'error'."""
    pass


class MalformedTimestampError(NonRetryableError, DuplicateDetectionError):
    """A record timestamp could not be parsed and the policy is 'error'."""
    pass


class ConflictingSourceError(NonRetryableError, DuplicateDetectionError):
    """The same identifier arrived from two sources and the policy is 'error'."""
    pass


# ============================================================================
# Merge Errors
# ============================================================================

class MergeError(IngestionError):
    """Base exception for temporal merge failures."""
    pass


class TimestampNormalizationError(MergeError):
    """
    A timestamp value could not be converted to epoch seconds.

    Context should include:
        - value: Offending value (stringified)
    """
    pass


class MergeValidationError(MergeError):
    """A merged batch violated an ordering or accounting invariant."""
    pass


# ============================================================================
# Job Errors
# ============================================================================

class DownstreamProcessingError(IngestionError):
    """
    The downstream processor reported failure for a batch.

    Context should include:
        - job_id: Job identifier
        - batch_size: Number of records in the failed batch
    """
    pass


class JobCancelled(IngestionError):
    """Cooperative cancellation was observed between records."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(IngestionError):
    """Base exception for live-feed extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when API data extraction fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated if large)
        - retry_count: Number of retries attempted
    """
    pass


class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, ExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass
