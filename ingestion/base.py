"""
Abstract base class for live content feeds with watermark tracking
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from models.base import SourceType
from schemas.jobs import FeedCollection
from schemas.merge import SourceBatch
import logging
import uuid

logger = logging.getLogger(__name__)


class ContentSource(ABC):
    """
    Abstract base class for all live feeds.

    Responsibilities:
    - Fetch raw records newer than a watermark
    - Package them as a SourceBatch for merging/coordination
    - Compute the next watermark (newest timestamp seen)
    """

    def __init__(self, source_type: SourceType, source_name: str):
        self.source_type = source_type
        self.source_name = source_name

    @abstractmethod
    async def fetch_records(self, since: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Fetch records from the feed.

        Args:
            since: Epoch seconds; only records created after it are wanted

        Returns:
            List of raw record dictionaries
        """
        pass

    @abstractmethod
    def extract_record_id(self, record: Dict[str, Any]) -> str:
        """Extract unique identifier from a record"""
        pass

    @abstractmethod
    def extract_timestamp(self, record: Dict[str, Any]) -> Optional[int]:
        """Extract creation time (epoch seconds) from a record"""
        pass

    async def collect(self, since: Optional[int] = None) -> FeedCollection:
        """Fetch one batch and advance the watermark."""
        records = await self.fetch_records(since)

        batch = SourceBatch(
            source_type=self.source_type,
            items=records,
            batch_id=f"{self.source_name}_{uuid.uuid4().hex[:12]}"
        )
        watermark = self._calculate_watermark(records, since)

        logger.info(
            f"Collected {len(records)} records from {self.source_name} "
            f"(watermark: {since} → {watermark})"
        )
        return FeedCollection(batch=batch, records_fetched=len(records), watermark=watermark)

    def _calculate_watermark(self, records: List[Dict[str, Any]], since: Optional[int]) -> Optional[int]:
        timestamps = [
            ts for ts in (self.extract_timestamp(r) for r in records)
            if ts is not None
        ]
        if since is not None:
            timestamps.append(since)
        return max(timestamps) if timestamps else None
