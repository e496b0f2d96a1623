"""Unit tests for batched execution."""

import pytest

from relational_db.exceptions import BatchAbortedError, ValidationError
from relational_db.query.batch import (
    BatchExecutionTask,
    BatchOptions,
    benchmark_batch_execution,
    chunk_items,
    execute_batched_task,
    resolve_batch_options,
)


class TestBatchOptions:
    """Test option validation."""

    def test_defaults(self):
        """Test default options."""
        options = resolve_batch_options()
        assert options.batch_size == 100
        assert options.continue_on_error is True
        assert options.max_retries == 0

    @pytest.mark.parametrize("overrides,message", [
        ({'batch_size': 0}, "batch_size must be an integer between 1 and 5000"),
        ({'batch_size': 5001}, "batch_size must be an integer between 1 and 5000"),
        ({'max_retries': 6}, "max_retries must be an integer between 0 and 5"),
        ({'retry_delay': 61}, "retry_delay must be a number between 0 and 60 seconds"),
        ({'retry_delay': -1}, "retry_delay must be a number between 0 and 60 seconds"),
    ])
    def test_out_of_range(self, overrides, message):
        """Test that out-of-range values are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            resolve_batch_options(BatchOptions(**overrides))
        assert str(exc_info.value) == message

    def test_chunk_items(self):
        """Test that chunking keeps order and the remainder."""
        assert chunk_items([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunk_items([], 3) == []


class TestExecuteBatchedTask:
    """Test sequential batch execution."""

    async def test_all_batches_succeed(self):
        """Test counts and progress for a clean run."""
        seen = []
        progress = []

        async def execute_batch(items, batch_index):
            seen.append((batch_index, items))
            return len(items)

        task = BatchExecutionTask('insert', list(range(5)), execute_batch)
        result = await execute_batched_task(task, BatchOptions(batch_size=2, on_progress=progress.append))

        assert seen == [(0, [0, 1]), (1, [2, 3]), (2, [4])]
        assert result.total_batches == 3
        assert result.successful_items == 5
        assert result.failed_items == 0
        assert result.partial_success is False
        assert [p.processed_items for p in progress] == [2, 4, 5]
        assert progress[-1].total_batches == 3

    async def test_async_progress_callback(self):
        """Test that progress callbacks may be coroutine functions."""
        calls = []

        async def on_progress(progress):
            calls.append(progress.batch_index)

        async def execute_batch(items, batch_index):
            return None

        task = BatchExecutionTask('update', [1, 2, 3], execute_batch)
        await execute_batched_task(task, BatchOptions(batch_size=1, on_progress=on_progress))
        assert calls == [0, 1, 2]

    async def test_continue_on_error(self):
        """Test that a failed batch is recorded and the run continues."""
        async def execute_batch(items, batch_index):
            if batch_index == 1:
                raise RuntimeError("duplicate key")
            return items

        task = BatchExecutionTask('insert', list(range(6)), execute_batch)
        result = await execute_batched_task(task, BatchOptions(batch_size=2))

        assert result.successful_items == 4
        assert result.failed_items == 2
        assert result.successful_items + result.failed_items == result.total_items
        assert result.partial_success is True
        assert result.failures[0].batch_index == 1
        assert result.failures[0].error == "duplicate key"
        assert result.summary()['failures'][0]['attempts'] == 1

    async def test_abort_on_error(self):
        """Test that continue_on_error=False aborts with batch position."""
        executed = []

        async def execute_batch(items, batch_index):
            executed.append(batch_index)
            if batch_index == 1:
                raise RuntimeError("boom")
            return items

        task = BatchExecutionTask('insert', list(range(6)), execute_batch)
        with pytest.raises(BatchAbortedError) as exc_info:
            await execute_batched_task(task, BatchOptions(batch_size=2, continue_on_error=False))

        assert str(exc_info.value) == "Batch 2/3 failed for insert: boom"
        assert exc_info.value.batch_index == 1
        assert exc_info.value.total_batches == 3
        assert executed == [0, 1]

    async def test_retries(self):
        """Test that a batch is retried before it counts as failed."""
        attempts = []

        async def execute_batch(items, batch_index):
            attempts.append(batch_index)
            if len(attempts) < 3:
                raise RuntimeError("deadlock detected")
            return items

        task = BatchExecutionTask('update', [1, 2], execute_batch)
        result = await execute_batched_task(task, BatchOptions(batch_size=2, max_retries=2, retry_delay=0.001))

        assert attempts == [0, 0, 0]
        assert result.retries == 2
        assert result.successful_items == 2
        assert result.failures == []

    async def test_retries_exhausted(self):
        """Test that attempts are reported once retries run out."""
        async def execute_batch(items, batch_index):
            raise RuntimeError("still failing")

        task = BatchExecutionTask('update', [1], execute_batch)
        result = await execute_batched_task(task, BatchOptions(max_retries=1))

        assert result.failed_items == 1
        assert result.failures[0].attempts == 2
        assert result.partial_success is False

    async def test_success_count_is_clamped(self):
        """Test that reported success counts stay within the batch size."""
        async def execute_batch(items, batch_index):
            return 10 if batch_index == 0 else -3

        task = BatchExecutionTask('update', [1, 2, 3, 4], execute_batch,
                                  get_batch_success_count=lambda result, items: result)
        result = await execute_batched_task(task, BatchOptions(batch_size=2))

        assert result.successful_items == 2
        assert result.failed_items == 2
        assert result.partial_success is True

    async def test_empty_items(self):
        """Test that no items means no batches."""
        async def execute_batch(items, batch_index):
            raise AssertionError("should not run")

        result = await execute_batched_task(BatchExecutionTask('insert', [], execute_batch))
        assert result.total_batches == 0
        assert result.total_items == 0


class TestBatchBenchmark:
    """Test batch benchmarking."""

    async def test_benchmark(self):
        """Test that both paths run and the report is consistent."""
        individual = []
        batched = []

        async def run_individual(item, index):
            individual.append(item)

        async def run_batch(items, batch_index):
            batched.append(list(items))

        result = await benchmark_batch_execution([1, 2, 3, 4, 5], run_individual, run_batch, batch_size=2)

        assert individual == [1, 2, 3, 4, 5]
        assert batched == [[1, 2], [3, 4], [5]]
        assert result.item_count == 5
        assert result.batch_count == 3
        assert result.time_saved >= 0
        assert 0 <= result.speedup_percent <= 100
