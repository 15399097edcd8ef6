"""
Transform raw archive/API payloads into SourceRecords with edge-case policies
"""

import hashlib
from typing import Dict, Any, Optional, Union
from datetime import datetime, timezone
from pydantic import BaseModel
import orjson
from models.base import SourceType
from schemas.records import ContentIdentifier, SourceRecord, detect_kind
from schemas.deduplication import (
    EdgeCasePolicy,
    MissingIdStrategy,
    MalformedTimestampStrategy,
)
from core.exceptions import (
    MissingIdentifierError,
    MalformedTimestampError,
    TimestampNormalizationError,
    ValidationRejected,
)
import logging

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = ("created_utc", "created", "timestamp")

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_TIMESTAMP_SEC = 253402300799
# Epoch values at or above this are read as milliseconds (1e11 s is year 5138)
MILLISECOND_EPOCH_THRESHOLD = 10 ** 11


def parse_timestamp(value: Any) -> int:
    """
    Convert a timestamp to integer epoch seconds.

    Accepts ints/floats, numeric strings and ISO-8601 strings. Epoch values
    of 1e11 and above are taken to be milliseconds. Values that are missing,
    non-positive, unparseable or past year 9999 raise
    TimestampNormalizationError.
    """
    if value is None or isinstance(value, bool):
        raise TimestampNormalizationError(
            "Timestamp is missing",
            context={"value": repr(value)}
        )

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        seconds = int(value.timestamp())
    elif isinstance(value, (int, float)):
        try:
            seconds = int(value)
        except (ValueError, OverflowError) as e:
            raise TimestampNormalizationError(
                "Non-finite timestamp",
                context={"value": repr(value)},
                original_exception=e
            )
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = int(float(text))
        except (ValueError, OverflowError):
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as e:
                raise TimestampNormalizationError(
                    "Unparseable timestamp",
                    context={"value": text[:50]},
                    original_exception=e
                )
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            seconds = int(parsed.timestamp())
    else:
        raise TimestampNormalizationError(
            f"Unsupported timestamp type {type(value).__name__}",
            context={"value": repr(value)[:50]}
        )

    if seconds >= MILLISECOND_EPOCH_THRESHOLD:
        seconds //= 1000

    if seconds <= 0:
        raise TimestampNormalizationError(
            "Timestamp must be positive",
            context={"value": seconds}
        )
    if seconds > MAX_TIMESTAMP_SEC:
        raise TimestampNormalizationError(
            "Timestamp out of range",
            context={"value": seconds}
        )
    return seconds


class RecordNormalizer:
    """
    Normalize raw payloads from one source into SourceRecords.

    Handles:
    - Post/comment detection
    - Identifier normalization (prefix stripping, lower-casing)
    - Missing identifiers (skip / generate / error)
    - Malformed timestamps (skip / use current time / error)
    """

    def __init__(
        self,
        source_type: SourceType,
        policy: Optional[EdgeCasePolicy] = None,
        batch_id: Optional[str] = None
    ):
        self.source_type = source_type
        self.policy = policy or EdgeCasePolicy()
        self.batch_id = batch_id
        self.skipped = 0

    def normalize(self, raw_record: Union[Dict[str, Any], BaseModel]) -> Optional[SourceRecord]:
        """
        Normalize one payload.

        Returns:
            SourceRecord, or None when a 'skip' policy dropped the record

        Raises:
            ValidationRejected: Neither a post nor a comment
            MissingIdentifierError / MalformedTimestampError: 'error' policies
        """
        if isinstance(raw_record, BaseModel):
            payload = raw_record.model_dump()
        else:
            payload = dict(raw_record)

        kind = detect_kind(payload)
        if kind is None:
            raise ValidationRejected(
                "Record is neither a post nor a comment",
                context={"source_type": self.source_type.value, "record_id": payload.get("id")}
            )

        raw_id = payload.get("id") or payload.get("name")
        if raw_id is None or not str(raw_id).strip():
            raw_id = self._handle_missing_id(payload)
            if raw_id is None:
                return None

        timestamp = self._resolve_timestamp(payload)
        if timestamp is None:
            return None

        return SourceRecord(
            identifier=ContentIdentifier.from_raw(raw_id, kind),
            source_type=self.source_type,
            timestamp_sec=timestamp,
            payload=payload,
            batch_id=self.batch_id
        )

    def _handle_missing_id(self, payload: Dict[str, Any]) -> Optional[str]:
        strategy = self.policy.missing_id
        if strategy == MissingIdStrategy.ERROR:
            raise MissingIdentifierError(
                "Record has no identifier",
                context={"source_type": self.source_type.value}
            )
        if strategy == MissingIdStrategy.GENERATE:
            digest = hashlib.sha256(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS, default=str)).hexdigest()
            return f"gen_{digest[:16]}"

        self.skipped += 1
        logger.debug(f"Skipping {self.source_type.value} record without identifier")
        return None

    def _resolve_timestamp(self, payload: Dict[str, Any]) -> Optional[int]:
        value = next((payload[f] for f in TIMESTAMP_FIELDS if payload.get(f) is not None), None)
        try:
            return parse_timestamp(value)
        except TimestampNormalizationError as e:
            strategy = self.policy.malformed_timestamp
            if strategy == MalformedTimestampStrategy.ERROR:
                raise MalformedTimestampError(
                    "Record timestamp is malformed",
                    context={"source_type": self.source_type.value, "record_id": payload.get("id")},
                    original_exception=e
                )
            if strategy == MalformedTimestampStrategy.USE_CURRENT:
                return int(datetime.now(timezone.utc).timestamp())

            self.skipped += 1
            logger.debug(f"Skipping record {payload.get('id')} with malformed timestamp")
            return None
