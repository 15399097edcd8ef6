"""
Pydantic schemas for data validation and serialization.

This package defines the typed values that flow through the ingestion
pipeline and out of the operational API:

Schemas:
    records: Content identifiers, SourceRecords and Reddit record variants
    checkpoint: Processing checkpoints and checkpoint statistics
    deduplication: Edge-case policies, duplicate results and overlap analysis
    merge: Source batches, merged batches, gaps and downstream input
    jobs: Per-job configuration, resource samples, metrics and results
    api: API endpoint response schemas

Features:
    - Automatic data validation
    - Immutable (frozen) identity and checkpoint values
    - JSON serialization for checkpoint persistence
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.records import ContentIdentifier, SourceRecord
    from schemas.jobs import BatchProcessingConfig, JobResult

Example:
    identifier = ContentIdentifier.from_raw("t3_ABC123", ContentKind.POST)

    assert identifier.id == "abc123"
    assert identifier.normalized_key == "post:abc123"
"""

__all__ = [
    "api",
    "checkpoint",
    "deduplication",
    "jobs",
    "merge",
    "records",
]
