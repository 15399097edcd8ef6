"""
Reddit listing collector with authentication, rate limiting, and retry logic.

This module provides live-feed extraction with:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent cascading failures
- Rate limiting protection (429 + Retry-After)
- Cursor pagination that stops at the caller's watermark
"""

import httpx
import asyncio
from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta
from ingestion.base import ContentSource
from models.base import SourceType
from core.config import settings
from core.exceptions import (
    APIExtractionError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class RedditAPIExtractor(ContentSource):
    """
    Collect new posts from one subreddit, newest first.

    Without a query this reads /r/<sub>/new.json (chronological feed);
    with a query it reads /r/<sub>/search.json sorted by new (keyword feed).

    Attributes:
        max_retries: Maximum number of attempts per request (default: settings.MAX_RETRIES)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        max_pages: Upper bound on pages per collection (default: 10)
    """

    def __init__(
        self,
        subreddit: str,
        query: Optional[str] = None,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        page_limit: Optional[int] = None,
        max_pages: int = 10,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        timeout: float = 30.0
    ):
        source_type = SourceType.API_KEYWORD_SEARCH if query else SourceType.API_CHRONOLOGICAL
        super().__init__(source_type=source_type, source_name=f"r/{subreddit}")
        self.subreddit = subreddit
        self.query = query
        self.base_url = (base_url or settings.REDDIT_API_BASE_URL).rstrip("/")
        self.api_token = api_token or settings.REDDIT_API_TOKEN
        self.user_agent = user_agent or settings.REDDIT_USER_AGENT
        self.page_limit = page_limit or settings.REDDIT_PAGE_LIMIT
        self.max_pages = max_pages
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = retry_delay
        self.timeout = timeout

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    @property
    def listing_url(self) -> str:
        endpoint = "search.json" if self.query else "new.json"
        return f"{self.base_url}/r/{self.subreddit}/{endpoint}"

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.source_name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.source_name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    async def _make_request_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Dict[str, Any]
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Raises:
            APIExtractionError: Circuit open or unexpected failure
            NetworkError: Server errors / timeouts after max retries
            RateLimitError: Still rate limited after max retries
            AuthenticationError / ResourceNotFoundError: Immediately, no retry
        """
        if self._is_circuit_open():
            raise APIExtractionError(
                f"Circuit breaker is open for {self.source_name}",
                context={
                    "source_name": self.source_name,
                    "api_url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        for attempt in range(self.max_retries):
            delay = self.retry_delay * (2 ** attempt)
            last_attempt = attempt == self.max_retries - 1

            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await client.get(url, headers=self._headers(), params=params, timeout=self.timeout)
            except httpx.TimeoutException as e:
                if not last_attempt:
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Request timeout after {self.max_retries} retries",
                    context={"api_url": url, "source_name": self.source_name, "timeout": self.timeout},
                    original_exception=e
                )
            except httpx.TransportError as e:
                if not last_attempt:
                    logger.warning(f"Network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Network error after {self.max_retries} retries",
                    context={"api_url": url, "source_name": self.source_name},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self._record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": response.status_code, "api_url": url}
                )

            if response.status_code == 404:
                self._record_failure()
                raise ResourceNotFoundError(
                    f"Subreddit not found: {self.subreddit}",
                    context={"status_code": 404, "api_url": url}
                )

            if response.status_code == 429:
                retry_after = _retry_after(response, delay)
                if not last_attempt:
                    logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                self._record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={"status_code": 429, "api_url": url, "retry_count": attempt + 1},
                    retry_after=int(retry_after)
                )

            if response.status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"Server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        "status_code": response.status_code,
                        "api_url": url,
                        "response_body": response.text[:500]
                    }
                )

            response.raise_for_status()
            self._record_success()
            return response

        raise APIExtractionError(
            "Max retries exceeded",
            context={"api_url": url, "source_name": self.source_name}
        )

    async def fetch_records(self, since: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Page through the listing until reaching the watermark.

        Args:
            since: Epoch seconds of the newest record from the last collection

        Returns:
            Records created after `since`, newest first
        """
        params: Dict[str, Any] = {"limit": self.page_limit, "raw_json": 1}
        if self.query:
            params.update({"q": self.query, "sort": "new", "restrict_sr": 1})

        records: List[Dict[str, Any]] = []
        page = 0

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while page < self.max_pages:
                    page += 1
                    response = await self._make_request_with_retry(client, self.listing_url, params)

                    try:
                        listing = response.json()
                    except ValueError as e:
                        raise APIExtractionError(
                            "Failed to parse listing response",
                            context={"api_url": self.listing_url, "page": page, "response_body": response.text[:500]},
                            original_exception=e
                        )

                    data = listing.get("data", {}) if isinstance(listing, dict) else {}
                    children = data.get("children") or []
                    reached_watermark = False

                    for child in children:
                        record = dict(child.get("data") or {})
                        if child.get("kind"):
                            record.setdefault("kind", child["kind"])
                        created = self.extract_timestamp(record)
                        if since is not None and created is not None and created <= since:
                            reached_watermark = True
                            break
                        records.append(record)

                    after = data.get("after")
                    if reached_watermark or not children or not after:
                        break
                    params["after"] = after

            logger.info(f"Fetched {len(records)} records from {self.source_name} ({page} pages)")
            return records

        except (APIExtractionError, ResourceNotFoundError):
            raise

        except Exception as e:
            raise APIExtractionError(
                "Unexpected error during listing fetch",
                context={"api_url": self.listing_url, "page": page, "records_fetched": len(records)},
                original_exception=e
            )

    def extract_record_id(self, record: Dict[str, Any]) -> str:
        return str(record.get("id") or record.get("name") or "")

    def extract_timestamp(self, record: Dict[str, Any]) -> Optional[int]:
        value = record.get("created_utc")
        try:
            return int(float(value)) if value is not None else None
        except (TypeError, ValueError, OverflowError):
            return None


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except (TypeError, ValueError):
        return default
