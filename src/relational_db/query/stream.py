"""
Streaming SELECT execution.

Rows are fetched in LIMIT/OFFSET pages so the full result set is never held
in memory. ``execute_streaming_select`` keeps a bounded sample of rows and
counts everything else.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import psutil

from ..core.statement import ExecutionResult
from ..exceptions import ValidationError
from .builder import SelectQuery, build_select_query

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 5000
DEFAULT_SAMPLE_SIZE = 50
MAX_SAMPLE_SIZE = 5000


@dataclass(frozen=True)
class StreamChunk:
    index: int
    rows: List[Dict[str, Any]]
    offset: int


ChunkCallback = Callable[[StreamChunk], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class StreamingOptions:
    """
    Attributes:
        chunk_size: Rows fetched per page (1..MAX_CHUNK_SIZE)
        max_rows: Optional cap on the total rows streamed
        sample_size: Rows kept in the result payload (0..MAX_SAMPLE_SIZE)
        collect_all_rows: Keep every row instead of a sample
        benchmark: Also run the non-streaming path for comparison; re-executes
            the statement, so only use it for side-effect-free queries
        cancel_event: Stop streaming once this event is set
        on_chunk: Called with every ``StreamChunk``; may be a coroutine function
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_rows: Optional[int] = None
    sample_size: int = DEFAULT_SAMPLE_SIZE
    collect_all_rows: bool = False
    benchmark: bool = False
    cancel_event: Optional[asyncio.Event] = None
    on_chunk: Optional[ChunkCallback] = None


@dataclass
class MemoryUsage:
    start_rss: int = 0
    peak_rss: int = 0
    end_rss: int = 0
    delta_rss: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'start_rss': self.start_rss,
            'peak_rss': self.peak_rss,
            'end_rss': self.end_rss,
            'delta_rss': self.delta_rss,
        }


@dataclass
class StreamingSelectResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    chunk_count: int = 0
    cancelled: bool = False
    execution_time: float = 0.0
    memory_usage: MemoryUsage = field(default_factory=MemoryUsage)

    @property
    def sampled_row_count(self) -> int:
        return len(self.rows)

    @property
    def streamed_row_count(self) -> int:
        return self.row_count

    def summary(self) -> Dict[str, Any]:
        return {
            'chunk_count': self.chunk_count,
            'sampled_row_count': self.sampled_row_count,
            'streamed_row_count': self.streamed_row_count,
            'cancelled': self.cancelled,
            'execution_time': self.execution_time,
            'memory_usage': self.memory_usage.to_dict(),
        }


@dataclass(frozen=True)
class StreamingBenchmarkResult:
    non_streaming_execution_time: float
    non_streaming_peak_rss: int
    streaming_execution_time: float
    streaming_peak_rss: int
    memory_saved_bytes: int
    memory_saved_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'non_streaming_execution_time': self.non_streaming_execution_time,
            'non_streaming_peak_rss': self.non_streaming_peak_rss,
            'streaming_execution_time': self.streaming_execution_time,
            'streaming_peak_rss': self.streaming_peak_rss,
            'memory_saved_bytes': self.memory_saved_bytes,
            'memory_saved_percent': self.memory_saved_percent,
        }


class StreamCancelled(Exception):
    """Raised inside the chunk generator when the cancel event is set."""


def _bounded_int(value: Any, name: str, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= maximum:
        raise ValidationError(f"{name} must be an integer between {minimum} and {maximum}")
    return value


def _positive_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def resolve_streaming_options(options: Optional[StreamingOptions] = None) -> StreamingOptions:
    options = options or StreamingOptions()
    _bounded_int(options.chunk_size, 'chunk_size', 1, MAX_CHUNK_SIZE)
    _bounded_int(options.sample_size, 'sample_size', 0, MAX_SAMPLE_SIZE)
    _positive_int(options.max_rows, 'max_rows')
    return options


def _total_rows_limit(query: SelectQuery, options: StreamingOptions) -> Optional[int]:
    limit = _positive_int(query.limit, 'limit')
    max_rows = options.max_rows
    if limit is None:
        return max_rows
    if max_rows is None:
        return limit
    return min(limit, max_rows)


def _current_rss() -> int:
    return psutil.Process().memory_info().rss


async def stream_select_chunks(executor, query: SelectQuery,
                               options: Optional[StreamingOptions] = None) -> AsyncIterator[StreamChunk]:
    """
    Yield SELECT rows page by page.

    Args:
        executor: ``ConnectionManager`` or ``Transaction`` (anything with ``execute``)
        query: Select descriptor; its limit and offset bound the whole stream
        options: Streaming options

    Raises:
        StreamCancelled: When ``options.cancel_event`` is set between pages
    """
    options = resolve_streaming_options(options)
    base_offset = query.offset or 0
    total_limit = _total_rows_limit(query, options)

    streamed = 0
    index = 0
    while True:
        if options.cancel_event is not None and options.cancel_event.is_set():
            raise StreamCancelled("Stream cancelled by caller")

        remaining = options.chunk_size if total_limit is None else total_limit - streamed
        if remaining <= 0:
            return

        page_limit = min(options.chunk_size, remaining)
        page_offset = base_offset + streamed
        statement = build_select_query(replace(query, limit=page_limit, offset=page_offset))

        result: ExecutionResult = await executor.execute(statement)
        if not result.rows:
            return

        yield StreamChunk(index=index, rows=result.rows, offset=page_offset)

        streamed += len(result.rows)
        index += 1
        if len(result.rows) < page_limit:
            return


async def execute_streaming_select(executor, query: SelectQuery,
                                   options: Optional[StreamingOptions] = None) -> StreamingSelectResult:
    """
    Run a SELECT in streaming mode, keeping only a sample of the rows.

    Args:
        executor: ``ConnectionManager`` or ``Transaction``
        query: Select descriptor
        options: Streaming options

    Returns:
        Counts, the retained rows, cancellation flag and an RSS snapshot
    """
    options = resolve_streaming_options(options)
    start_time = time.time()
    result = StreamingSelectResult()

    start_rss = _current_rss()
    peak_rss = start_rss

    try:
        async for chunk in stream_select_chunks(executor, query, options):
            result.chunk_count += 1
            result.row_count += len(chunk.rows)

            if options.collect_all_rows:
                result.rows.extend(chunk.rows)
            elif len(result.rows) < options.sample_size:
                result.rows.extend(chunk.rows[:options.sample_size - len(result.rows)])

            if options.on_chunk is not None:
                outcome = options.on_chunk(chunk)
                if inspect.isawaitable(outcome):
                    await outcome

            peak_rss = max(peak_rss, _current_rss())
    except StreamCancelled:
        result.cancelled = True

    end_rss = _current_rss()
    result.memory_usage = MemoryUsage(
        start_rss=start_rss,
        peak_rss=max(peak_rss, end_rss),
        end_rss=end_rss,
        delta_rss=end_rss - start_rss,
    )
    result.execution_time = time.time() - start_time

    logger.debug(f"Streaming SELECT on {query.table}: {result.row_count} rows in {result.chunk_count} chunks "
                 f"({result.execution_time:.3f}s, cancelled={result.cancelled})")
    return result


async def benchmark_streaming_select(executor, query: SelectQuery,
                                     options: Optional[StreamingOptions] = None) -> StreamingBenchmarkResult:
    """
    Compare a plain SELECT with the streaming path.

    Executes the statement twice more, so only use it for side-effect-free queries.
    """
    options = resolve_streaming_options(options)

    non_streaming_start_rss = _current_rss()
    non_streaming_start = time.time()
    await executor.execute(build_select_query(query))
    non_streaming_time = time.time() - non_streaming_start
    non_streaming_peak = max(non_streaming_start_rss, _current_rss())

    streaming = await execute_streaming_select(
        executor, query, replace(options, collect_all_rows=False, sample_size=0, on_chunk=None)
    )

    saved = max(non_streaming_peak - streaming.memory_usage.peak_rss, 0)
    saved_percent = (saved / non_streaming_peak) * 100 if non_streaming_peak > 0 else 0.0

    logger.debug(f"Streaming benchmark on {query.table}: non-streaming {non_streaming_time:.3f}s, "
                 f"streaming {streaming.execution_time:.3f}s, saved {saved} bytes")

    return StreamingBenchmarkResult(
        non_streaming_execution_time=non_streaming_time,
        non_streaming_peak_rss=non_streaming_peak,
        streaming_execution_time=streaming.execution_time,
        streaming_peak_rss=streaming.memory_usage.peak_rss,
        memory_saved_bytes=saved,
        memory_saved_percent=saved_percent,
    )
