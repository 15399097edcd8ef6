"""
Unit tests for the Reddit listing extractor
"""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
)
from ingestion.extractors.reddit_api_extractor import RedditAPIExtractor
from models.base import SourceType

BASE = 1672531200


def response(status_code: int = 200, payload=None, headers=None) -> Mock:
    mock_response = Mock(status_code=status_code, headers=headers or {}, text="")
    mock_response.json.return_value = payload
    mock_response.raise_for_status = Mock()
    return mock_response


def listing(timestamps, after=None, kind="t3"):
    return {
        "kind": "Listing",
        "data": {
            "after": after,
            "children": [
                {"kind": kind, "data": {"id": f"p{ts}", "title": "t", "created_utc": float(ts)}}
                for ts in timestamps
            ],
        },
    }


def patched_client(*responses):
    """Patch httpx.AsyncClient so client.get returns the given responses in order"""
    client = Mock()
    client.get = AsyncMock(side_effect=list(responses))
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=client)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return patch("httpx.AsyncClient", factory), client


def extractor(**kwargs) -> RedditAPIExtractor:
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("max_retries", 3)
    return RedditAPIExtractor("python", base_url="https://api.example.com", **kwargs)


class TestRedditAPIExtractor:
    """Test listing pagination, retries and the circuit breaker"""

    def test_source_type_follows_query(self):
        assert extractor().source_type == SourceType.API_CHRONOLOGICAL
        assert extractor().listing_url == "https://api.example.com/r/python/new.json"

        search = extractor(query="asyncio")
        assert search.source_type == SourceType.API_KEYWORD_SEARCH
        assert search.listing_url == "https://api.example.com/r/python/search.json"
        assert search.source_name == "r/python"

    def test_token_sent_as_bearer(self):
        headers = extractor(api_token="secret")._headers()

        assert headers["Authorization"] == "Bearer secret"
        assert "User-Agent" in headers

    @pytest.mark.asyncio
    async def test_pages_until_after_is_empty(self):
        patcher, client = patched_client(
            response(payload=listing([BASE + 30, BASE + 20], after="t3_b")),
            response(payload=listing([BASE + 10], after=None)),
        )

        with patcher:
            records = await extractor().fetch_records()

        assert [r["id"] for r in records] == [f"p{BASE + 30}", f"p{BASE + 20}", f"p{BASE + 10}"]
        assert records[0]["kind"] == "t3"
        assert client.get.await_count == 2
        assert client.get.await_args.kwargs["params"]["after"] == "t3_b"

    @pytest.mark.asyncio
    async def test_stops_at_watermark(self):
        """Test records at or before `since` end the collection"""
        patcher, client = patched_client(
            response(payload=listing([BASE + 30, BASE + 20, BASE + 10], after="t3_next")),
        )

        with patcher:
            records = await extractor().fetch_records(since=BASE + 20)

        assert [r["id"] for r in records] == [f"p{BASE + 30}"]
        assert client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_max_pages_bounds_collection(self):
        patcher, client = patched_client(
            response(payload=listing([BASE + 3], after="a")),
            response(payload=listing([BASE + 2], after="b")),
        )

        with patcher:
            records = await extractor(max_pages=2).fetch_records()

        assert len(records) == 2
        assert client.get.await_count == 2

    @pytest.mark.asyncio
    async def test_search_params(self):
        patcher, client = patched_client(response(payload=listing([])))

        with patcher:
            await extractor(query="asyncio").fetch_records()

        params = client.get.await_args.kwargs["params"]
        assert params["q"] == "asyncio"
        assert params["sort"] == "new"

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        patcher, client = patched_client(
            response(status_code=503),
            response(status_code=502),
            response(payload=listing([BASE])),
        )

        with patcher:
            records = await extractor().fetch_records()

        assert len(records) == 1
        assert client.get.await_count == 3

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self):
        patcher, _ = patched_client(*(response(status_code=500) for _ in range(3)))

        with patcher:
            with pytest.raises(NetworkError):
                await extractor().fetch_records()

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        patcher, _ = patched_client(
            response(status_code=429, headers={"Retry-After": "0"}),
            response(payload=listing([BASE])),
        )

        with patcher, patch("asyncio.sleep", new=AsyncMock()) as sleep:
            records = await extractor().fetch_records()

        assert len(records) == 1
        sleep.assert_awaited_once_with(0.0)

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self):
        patcher, _ = patched_client(*(response(status_code=429) for _ in range(3)))

        with patcher:
            with pytest.raises(RateLimitError):
                await extractor().fetch_records()

    @pytest.mark.asyncio
    async def test_timeouts_become_network_errors(self):
        patcher, client = patched_client(*(httpx.ReadTimeout("slow") for _ in range(3)))

        with patcher:
            with pytest.raises(NetworkError) as exc_info:
                await extractor().fetch_records()

        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
        assert client.get.await_count == 3

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self):
        patcher, client = patched_client(response(status_code=401))

        with patcher:
            with pytest.raises(AuthenticationError):
                await extractor().fetch_records()

        assert client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_subreddit(self):
        patcher, _ = patched_client(response(status_code=404))

        with patcher:
            with pytest.raises(ResourceNotFoundError):
                await extractor().fetch_records()

    @pytest.mark.asyncio
    async def test_unparseable_body(self):
        bad = response()
        bad.json.side_effect = ValueError("not json")
        patcher, _ = patched_client(bad)

        with patcher:
            with pytest.raises(APIExtractionError, match="parse"):
                await extractor().fetch_records()

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens_after_failures(self):
        source = extractor()
        client = Mock()
        client.get = AsyncMock(return_value=response(status_code=403))

        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await source._make_request_with_retry(client, source.listing_url, {})

        with pytest.raises(APIExtractionError, match="Circuit breaker"):
            await source._make_request_with_retry(client, source.listing_url, {})
        assert client.get.await_count == 5

    def test_extract_helpers(self):
        source = extractor()

        assert source.extract_record_id({"name": "t3_abc"}) == "t3_abc"
        assert source.extract_timestamp({"created_utc": "1672531200.0"}) == BASE
        assert source.extract_timestamp({"created_utc": "soon"}) is None
        assert source.extract_timestamp({}) is None


class TestFeedCollection:
    """Test batch packaging and watermark advance"""

    @pytest.mark.asyncio
    async def test_collect_advances_watermark(self):
        patcher, _ = patched_client(response(payload=listing([BASE + 50, BASE + 40])))

        with patcher:
            collection = await extractor().collect(since=BASE)

        assert collection.records_fetched == 2
        assert collection.watermark == BASE + 50
        assert collection.batch.source_type == SourceType.API_CHRONOLOGICAL
        assert collection.batch.batch_id.startswith("r/python_")
        assert len(collection.batch.items) == 2

    @pytest.mark.asyncio
    async def test_empty_collection_keeps_watermark(self):
        patcher, _ = patched_client(response(payload=listing([])))

        with patcher:
            collection = await extractor().collect(since=BASE)

        assert collection.records_fetched == 0
        assert collection.watermark == BASE
