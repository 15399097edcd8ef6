# ============================================================================
# File: ingestion/decompressor.py
# Description: Streaming line-by-line reader for compressed NDJSON archives
# ============================================================================
"""
Archive decompressor - streams compressed NDJSON without materializing it.

This module provides:
- Streaming decode of .zst (long-window Pushshift dumps), .gz and plain NDJSON
- Per-line JSON parsing with optional typed validation
- Recoverable per-line errors (counted, recorded, skipped)
- Wall-clock timeout and resumption from a line offset
- Process memory high-water tracking
"""

import asyncio
import gzip
import inspect
import io
import logging
import time
import zlib
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, TextIO, Union

import orjson
import psutil
import zstandard

from core.config import settings
from core.exceptions import DecodeError, ProcessingTimeout, RecordParseError, ValidationRejected
from ingestion.validators import RecordValidator
from schemas.jobs import DecompressionResult, LineError, MemoryUsage

logger = logging.getLogger(__name__)

ZSTD_SUFFIXES = (".zst", ".zstd")
GZIP_SUFFIXES = (".gz", ".gzip")

# Pushshift dumps are written with --long=31
ZSTD_MAX_WINDOW_SIZE = 2 ** 31

CONTENT_SNIPPET_LENGTH = 100

DECODE_ERRORS = (zstandard.ZstdError, gzip.BadGzipFile, EOFError, zlib.error)

RecordCallback = Callable[[Any, int], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[LineError], None]


def current_rss() -> int:
    """Resident set size of this process in bytes"""
    return psutil.Process().memory_info().rss


@contextmanager
def open_archive(path: Path) -> Iterator[TextIO]:
    """Open an archive as a text stream, picking the codec from the suffix."""
    suffix = path.suffix.lower()

    if suffix in ZSTD_SUFFIXES:
        with open(path, "rb") as fh:
            dctx = zstandard.ZstdDecompressor(max_window_size=ZSTD_MAX_WINDOW_SIZE)
            text = io.TextIOWrapper(dctx.stream_reader(fh), encoding="utf-8", errors="replace")
            try:
                yield text
            finally:
                text.close()
    elif suffix in GZIP_SUFFIXES:
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as text:
            yield text
    else:
        with open(path, "r", encoding="utf-8", errors="replace") as text:
            yield text


class StreamDecompressor:
    """
    Stream an archive line by line, handing each accepted record to a callback.

    Lines are delivered strictly in file order and the callback is awaited
    before the next line is read, so a single job never runs ahead of its
    consumer. Control returns to the event loop every `yield_interval`
    lines so monitors and other jobs keep running.

    Attributes:
        timeout: Default wall-clock limit per call in seconds (None = no limit)
        yield_interval: Lines between event-loop yields and memory samples
        max_recorded_errors: Cap on per-line errors kept in the result
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        yield_interval: int = 1000,
        max_recorded_errors: int = 1000,
        memory_sampler: Optional[Callable[[], int]] = None
    ):
        self.timeout = timeout if timeout is not None else settings.PROCESSING_TIMEOUT_SECONDS
        self.yield_interval = max(1, yield_interval)
        self.max_recorded_errors = max_recorded_errors
        self._sample_memory = memory_sampler or current_rss

    async def decompress(
        self,
        file_path: Union[str, Path],
        on_record: RecordCallback,
        *,
        validator: Optional[RecordValidator] = None,
        timeout: Optional[float] = None,
        start_line: int = 0,
        max_lines: Optional[int] = None,
        on_error: Optional[ErrorCallback] = None
    ) -> DecompressionResult:
        """
        Decompress and parse an archive.

        Args:
            file_path: Path to a .zst, .gz or plain NDJSON file
            on_record: Called as on_record(record, line_number); may be async.
                An exception raised here aborts the stream and propagates.
            validator: Optional validator turning dicts into typed records
            timeout: Overrides the default wall-clock limit (seconds)
            start_line: Lines 1..start_line are skipped without parsing
            max_lines: Stop after this many lines past start_line
            on_error: Called with each recoverable line error as it happens

        Returns:
            DecompressionResult with line accounting and memory stats

        Raises:
            DecodeError: The compressed stream is corrupt
            ProcessingTimeout: The wall-clock limit was exceeded
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Archive not found: {path}")

        limit = self.timeout if timeout is None else timeout
        started = time.monotonic()
        deadline = started + limit if limit else None

        initial_memory = self._sample_memory()
        peak_memory = initial_memory

        result = DecompressionResult(file_path=str(path))
        line_number = 0

        logger.info(
            f"Starting decompression of {path.name} "
            f"(start_line={start_line}, timeout={limit})"
        )

        with open_archive(path) as stream:
            lines = iter(stream)
            while True:
                try:
                    line = next(lines)
                except StopIteration:
                    break
                except DECODE_ERRORS as e:
                    raise DecodeError(
                        "Compressed stream could not be decoded",
                        context={"file_path": str(path), "line_number": line_number},
                        original_exception=e
                    )

                line_number += 1

                if deadline is not None and time.monotonic() > deadline:
                    raise ProcessingTimeout(
                        f"Decompression exceeded {limit}s",
                        lines_processed=line_number - 1,
                        context={"file_path": str(path)}
                    )

                if line_number % self.yield_interval == 0:
                    peak_memory = max(peak_memory, self._sample_memory())
                    await asyncio.sleep(0)

                if line_number <= start_line:
                    result.skipped_lines += 1
                    continue

                if max_lines is not None and line_number - start_line > max_lines:
                    line_number -= 1
                    break

                stripped = line.strip()
                if not stripped:
                    continue

                try:
                    record = self._parse_line(stripped, line_number)
                    if validator is not None:
                        record = self._validate(validator, record, line_number)
                except (RecordParseError, ValidationRejected) as e:
                    self._record_error(result, e, line_number, stripped, on_error)
                    continue

                result.valid_lines += 1
                outcome = on_record(record, line_number)
                if inspect.isawaitable(outcome):
                    await outcome

        result.total_lines = line_number
        final_memory = self._sample_memory()
        result.memory_usage = MemoryUsage(
            initial=initial_memory,
            peak=max(peak_memory, final_memory),
            final=final_memory
        )
        result.duration_ms = (time.monotonic() - started) * 1000

        logger.info(
            f"Decompression of {path.name} finished: total={result.total_lines}, "
            f"valid={result.valid_lines}, errors={result.error_lines}, "
            f"skipped={result.skipped_lines} in {result.duration_ms:.0f}ms"
        )
        return result

    async def sample(self, file_path: Union[str, Path], lines: int = 10) -> Dict[str, int]:
        """
        Validate the first `lines` lines of an archive.

        Returns counts of parseable and unparseable lines; raises DecodeError
        if the stream itself is corrupt.
        """
        counts = {"parseable": 0, "unparseable": 0}

        def count(record: Any, line_number: int) -> None:
            counts["parseable"] += 1

        result = await self.decompress(file_path, count, max_lines=lines, timeout=0)
        counts["unparseable"] = result.error_lines
        return counts

    def _parse_line(self, line: str, line_number: int) -> Dict[str, Any]:
        try:
            data = orjson.loads(line)
        except orjson.JSONDecodeError as e:
            raise RecordParseError(
                "Invalid JSON",
                context={"line_number": line_number},
                original_exception=e
            )
        if not isinstance(data, dict):
            raise RecordParseError(
                f"Expected a JSON object, got {type(data).__name__}",
                context={"line_number": line_number}
            )
        return data

    def _validate(self, validator: RecordValidator, record: Dict[str, Any], line_number: int) -> Any:
        try:
            return validator.validate(record)
        except ValidationRejected:
            raise
        except Exception as e:
            # A validator bug on one record must not end the stream
            raise ValidationRejected(
                f"Validator failed: {type(e).__name__}",
                context={"line_number": line_number, "record_id": record.get("id")},
                original_exception=e
            )

    def _record_error(
        self,
        result: DecompressionResult,
        error: Exception,
        line_number: int,
        line: str,
        on_error: Optional[ErrorCallback] = None
    ):
        result.error_lines += 1
        snippet = line[:CONTENT_SNIPPET_LENGTH]
        line_error = LineError(
            line=line_number,
            error=getattr(error, "message", str(error)),
            error_type=type(error).__name__,
            content=snippet
        )

        if len(result.errors) < self.max_recorded_errors:
            result.errors.append(line_error)
        else:
            result.unrecorded_errors += 1
        if on_error is not None:
            on_error(line_error)

        logger.debug(f"Skipping line {line_number}: {error.__class__.__name__} ({snippet})")
