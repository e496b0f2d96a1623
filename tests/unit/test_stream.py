"""Unit tests for streaming SELECT execution."""

import asyncio

import pytest

from relational_db.core.statement import ExecutionResult
from relational_db.exceptions import ValidationError
from relational_db.query.builder import SelectQuery
from relational_db.query.stream import (
    StreamingOptions,
    benchmark_streaming_select,
    execute_streaming_select,
    resolve_streaming_options,
    stream_select_chunks,
)


class PagingExecutor:
    """Serves LIMIT/OFFSET pages from an in-memory table."""

    def __init__(self, row_count):
        self.rows = [{'id': i} for i in range(1, row_count + 1)]
        self.statements = []

    async def execute(self, statement):
        self.statements.append(statement)
        if 'OFFSET' in statement.sql:
            limit, offset = statement.params[-2:]
        else:
            limit, offset = statement.params[-1], 0
        return ExecutionResult(rows=self.rows[offset:offset + limit])


def users_query(**kwargs):
    return SelectQuery(table='users', vendor='sqlite', **kwargs)


class TestStreamingOptions:
    """Test option validation."""

    @pytest.mark.parametrize("options,message", [
        (StreamingOptions(chunk_size=0), "chunk_size must be an integer between 1 and 5000"),
        (StreamingOptions(chunk_size=5001), "chunk_size must be an integer between 1 and 5000"),
        (StreamingOptions(sample_size=-1), "sample_size must be an integer between 0 and 5000"),
        (StreamingOptions(max_rows=0), "max_rows must be a positive integer"),
    ])
    def test_invalid_options(self, options, message):
        """Test that out-of-range options are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            resolve_streaming_options(options)
        assert str(exc_info.value) == message


class TestStreamSelectChunks:
    """Test page-by-page fetching."""

    async def test_pages_until_short_page(self):
        """Test that streaming stops after a short page."""
        executor = PagingExecutor(25)
        chunks = [chunk async for chunk in stream_select_chunks(executor, users_query(),
                                                               StreamingOptions(chunk_size=10))]

        assert [len(chunk.rows) for chunk in chunks] == [10, 10, 5]
        assert [chunk.offset for chunk in chunks] == [0, 10, 20]
        assert [chunk.index for chunk in chunks] == [0, 1, 2]
        assert len(executor.statements) == 3

    async def test_exact_multiple_needs_empty_page(self):
        """Test that a full final page is followed by one empty fetch."""
        executor = PagingExecutor(20)
        chunks = [chunk async for chunk in stream_select_chunks(executor, users_query(),
                                                               StreamingOptions(chunk_size=10))]
        assert len(chunks) == 2
        assert len(executor.statements) == 3

    async def test_query_limit_and_offset_bound_stream(self):
        """Test that the query's own limit and offset frame the stream."""
        executor = PagingExecutor(100)
        chunks = [chunk async for chunk in stream_select_chunks(
            executor, users_query(limit=15, offset=50), StreamingOptions(chunk_size=10))]

        ids = [row['id'] for chunk in chunks for row in chunk.rows]
        assert ids == list(range(51, 66))
        assert [chunk.offset for chunk in chunks] == [50, 60]


class TestExecuteStreamingSelect:
    """Test the streaming result summary."""

    async def test_sample_and_counts(self):
        """Test that only a sample is kept while all rows are counted."""
        executor = PagingExecutor(230)
        result = await execute_streaming_select(
            executor, users_query(), StreamingOptions(chunk_size=50, sample_size=20)
        )

        assert result.row_count == 230
        assert result.chunk_count == 5
        assert result.sampled_row_count == 20
        assert result.rows[0] == {'id': 1}
        assert result.cancelled is False
        assert result.memory_usage.peak_rss >= result.memory_usage.start_rss > 0

    async def test_collect_all_rows(self):
        """Test that collect_all_rows keeps everything."""
        executor = PagingExecutor(30)
        result = await execute_streaming_select(
            executor, users_query(), StreamingOptions(chunk_size=7, sample_size=1, collect_all_rows=True)
        )
        assert len(result.rows) == 30

    async def test_max_rows(self):
        """Test that max_rows caps the stream without marking it cancelled."""
        executor = PagingExecutor(100)
        result = await execute_streaming_select(
            executor, users_query(), StreamingOptions(chunk_size=10, max_rows=25)
        )
        assert result.row_count == 25
        assert result.chunk_count == 3
        assert result.cancelled is False

    async def test_cancel_event(self):
        """Test that setting the cancel event stops streaming."""
        executor = PagingExecutor(100)
        cancel_event = asyncio.Event()

        def on_chunk(chunk):
            if chunk.index == 1:
                cancel_event.set()

        result = await execute_streaming_select(
            executor, users_query(),
            StreamingOptions(chunk_size=10, cancel_event=cancel_event, on_chunk=on_chunk),
        )
        assert result.cancelled is True
        assert result.chunk_count == 2
        assert result.row_count == 20

    async def test_async_chunk_callback(self):
        """Test that chunk callbacks may be coroutine functions."""
        executor = PagingExecutor(15)
        seen = []

        async def on_chunk(chunk):
            seen.append(chunk.index)

        await execute_streaming_select(executor, users_query(),
                                       StreamingOptions(chunk_size=10, on_chunk=on_chunk))
        assert seen == [0, 1]

    async def test_summary(self):
        """Test the summary payload."""
        executor = PagingExecutor(5)
        result = await execute_streaming_select(executor, users_query(), StreamingOptions(chunk_size=10))
        summary = result.summary()
        assert summary['streamed_row_count'] == 5
        assert summary['sampled_row_count'] == 5
        assert set(summary['memory_usage']) == {'start_rss', 'peak_rss', 'end_rss', 'delta_rss'}


class TestStreamingBenchmark:
    """Test the streaming benchmark."""

    async def test_benchmark(self):
        """Test that the benchmark runs both paths."""
        executor = PagingExecutor(40)
        result = await benchmark_streaming_select(executor, users_query(limit=40),
                                                  StreamingOptions(chunk_size=10))

        # One plain SELECT plus four full pages
        assert len(executor.statements) == 5
        assert result.memory_saved_bytes >= 0
        assert result.to_dict()['streaming_peak_rss'] > 0
