"""
Batched execution with retries and progress reporting.

Items are split into fixed-size batches that run one after another. A failed
batch is retried up to ``max_retries`` times with a fixed delay; once retries
are exhausted it is recorded as a failure, and the run either continues or
aborts with ``BatchAbortedError`` depending on ``continue_on_error``.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar, Union

from ..exceptions import BatchAbortedError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 5000
MAX_RETRY_ATTEMPTS = 5
MAX_RETRY_DELAY = 60.0

ItemT = TypeVar('ItemT')
ResultT = TypeVar('ResultT')


@dataclass(frozen=True)
class BatchProgress:
    """Payload passed to ``on_progress`` after every batch."""
    operation: str
    batch_index: int
    total_batches: int
    batch_size: int
    processed_items: int
    total_items: int
    successful_items: int
    failed_items: int
    last_batch_succeeded: bool


@dataclass(frozen=True)
class BatchFailure:
    operation: str
    batch_index: int
    batch_size: int
    attempts: int
    error: str

    def to_dict(self):
        return {
            'operation': self.operation,
            'batch_index': self.batch_index,
            'batch_size': self.batch_size,
            'attempts': self.attempts,
            'error': self.error,
        }


ProgressCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class BatchOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    continue_on_error: bool = True
    max_retries: int = 0
    retry_delay: float = 0.0
    on_progress: Optional[ProgressCallback] = None


@dataclass
class BatchExecutionTask(Generic[ItemT, ResultT]):
    """
    One batched workload.

    Attributes:
        operation: Label used in logs, progress and errors ('insert', 'update', ...)
        items: Ordered items to process
        execute_batch: Coroutine function called as ``execute_batch(batch_items, batch_index)``
        get_batch_success_count: Optional ``(result, batch_items) -> int``; defaults
            to counting every item of a completed batch as successful
    """
    operation: str
    items: Sequence[ItemT]
    execute_batch: Callable[[List[ItemT], int], Awaitable[ResultT]]
    get_batch_success_count: Optional[Callable[[ResultT, List[ItemT]], int]] = None


@dataclass
class BatchExecutionResult(Generic[ResultT]):
    results: List[ResultT] = field(default_factory=list)
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    total_batches: int = 0
    retries: int = 0
    partial_success: bool = False
    execution_time: float = 0.0
    failures: List[BatchFailure] = field(default_factory=list)

    def summary(self):
        """Counts without the per-batch results, suitable for caller payloads."""
        return {
            'total_items': self.total_items,
            'processed_items': self.processed_items,
            'successful_items': self.successful_items,
            'failed_items': self.failed_items,
            'total_batches': self.total_batches,
            'retries': self.retries,
            'partial_success': self.partial_success,
            'execution_time': self.execution_time,
            'failures': [failure.to_dict() for failure in self.failures],
        }


@dataclass(frozen=True)
class BatchBenchmarkResult:
    item_count: int
    batch_size: int
    batch_count: int
    individual_execution_time: float
    batched_execution_time: float
    time_saved: float
    speedup_ratio: float
    speedup_percent: float


def _bounded_int(value: Any, name: str, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= maximum:
        raise ValidationError(f"{name} must be an integer between {minimum} and {maximum}")
    return value


def resolve_batch_options(options: Optional[BatchOptions] = None, **overrides: Any) -> BatchOptions:
    """
    Validate batch options and fill in defaults.

    Raises:
        ValidationError: If a value is outside its allowed range
    """
    options = options or BatchOptions()
    values = {
        'batch_size': options.batch_size,
        'continue_on_error': options.continue_on_error,
        'max_retries': options.max_retries,
        'retry_delay': options.retry_delay,
        'on_progress': options.on_progress,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})

    _bounded_int(values['batch_size'], 'batch_size', 1, MAX_BATCH_SIZE)
    _bounded_int(values['max_retries'], 'max_retries', 0, MAX_RETRY_ATTEMPTS)

    delay = values['retry_delay']
    if isinstance(delay, bool) or not isinstance(delay, (int, float)) or not 0 <= delay <= MAX_RETRY_DELAY:
        raise ValidationError(f"retry_delay must be a number between 0 and {MAX_RETRY_DELAY:g} seconds")

    values['retry_delay'] = float(delay)
    values['continue_on_error'] = bool(values['continue_on_error'])
    return BatchOptions(**values)


def chunk_items(items: Sequence[ItemT], chunk_size: int) -> List[List[ItemT]]:
    return [list(items[start:start + chunk_size]) for start in range(0, len(items), chunk_size)]


async def _notify(callback: Optional[ProgressCallback], progress: BatchProgress) -> None:
    if callback is None:
        return
    outcome = callback(progress)
    if inspect.isawaitable(outcome):
        await outcome


async def execute_batched_task(task: BatchExecutionTask[ItemT, ResultT],
                               options: Optional[BatchOptions] = None) -> BatchExecutionResult[ResultT]:
    """
    Run ``task`` in sequential batches.

    Args:
        task: Workload description
        options: Batch options, validated by ``resolve_batch_options``

    Returns:
        Execution summary; ``successful_items + failed_items == total_items``
        whenever the run completes

    Raises:
        BatchAbortedError: When a batch exhausts its retries and
            ``continue_on_error`` is False
    """
    start_time = time.time()
    resolved = resolve_batch_options(options)
    items = list(task.items)
    batches = chunk_items(items, resolved.batch_size)
    total_batches = len(batches)

    result: BatchExecutionResult[ResultT] = BatchExecutionResult(
        total_items=len(items), total_batches=total_batches
    )

    logger.debug(f"Starting batched {task.operation}: {len(items)} items in {total_batches} batches "
                 f"(batch_size={resolved.batch_size}, max_retries={resolved.max_retries}, "
                 f"continue_on_error={resolved.continue_on_error})")

    def progress(batch_index: int, batch_size: int, succeeded: bool) -> BatchProgress:
        return BatchProgress(
            operation=task.operation,
            batch_index=batch_index,
            total_batches=total_batches,
            batch_size=batch_size,
            processed_items=result.processed_items,
            total_items=result.total_items,
            successful_items=result.successful_items,
            failed_items=result.failed_items,
            last_batch_succeeded=succeeded,
        )

    for batch_index, batch_items in enumerate(batches):
        attempts = 0
        while True:
            attempts += 1
            try:
                batch_result = await task.execute_batch(batch_items, batch_index)
            except Exception as e:
                if attempts <= resolved.max_retries:
                    result.retries += 1
                    logger.warning(f"Batch {batch_index + 1}/{total_batches} of {task.operation} failed "
                                   f"(attempt {attempts}), retrying: {e}")
                    if resolved.retry_delay > 0:
                        await asyncio.sleep(resolved.retry_delay)
                    continue

                failure = BatchFailure(
                    operation=task.operation,
                    batch_index=batch_index,
                    batch_size=len(batch_items),
                    attempts=attempts,
                    error=str(e),
                )
                result.failures.append(failure)
                result.processed_items += len(batch_items)
                result.failed_items += len(batch_items)
                await _notify(resolved.on_progress, progress(batch_index, len(batch_items), False))

                if not resolved.continue_on_error:
                    raise BatchAbortedError(
                        f"Batch {batch_index + 1}/{total_batches} failed for {task.operation}: {failure.error}",
                        batch_index=batch_index,
                        total_batches=total_batches,
                    ) from e

                logger.warning(f"Batch {batch_index + 1}/{total_batches} of {task.operation} failed after "
                               f"{attempts} attempts, continuing: {failure.error}")
                break

            if task.get_batch_success_count is not None:
                success_count = task.get_batch_success_count(batch_result, batch_items)
            else:
                success_count = len(batch_items)
            success_count = min(max(success_count, 0), len(batch_items))

            result.results.append(batch_result)
            result.processed_items += len(batch_items)
            result.successful_items += success_count
            result.failed_items += len(batch_items) - success_count
            await _notify(resolved.on_progress, progress(batch_index, len(batch_items), True))
            break

    result.execution_time = time.time() - start_time
    result.partial_success = result.successful_items > 0 and result.failed_items > 0

    logger.debug(f"Batched {task.operation} completed: {result.successful_items} succeeded, "
                 f"{result.failed_items} failed, {result.retries} retries in {result.execution_time:.3f}s")
    return result


async def benchmark_batch_execution(items: Sequence[ItemT],
                                    run_individual: Callable[[ItemT, int], Awaitable[Any]],
                                    run_batch: Callable[[List[ItemT], int], Awaitable[Any]],
                                    batch_size: int = DEFAULT_BATCH_SIZE) -> BatchBenchmarkResult:
    """
    Time the same workload item by item and in batches.

    Both callables run for real, so only pass idempotent or isolated work.
    """
    _bounded_int(batch_size, 'batch_size', 1, MAX_BATCH_SIZE)
    items = list(items)
    batches = chunk_items(items, batch_size)

    individual_start = time.perf_counter()
    for index, item in enumerate(items):
        await run_individual(item, index)
    individual_time = time.perf_counter() - individual_start

    batched_start = time.perf_counter()
    for batch_index, batch_items in enumerate(batches):
        await run_batch(batch_items, batch_index)
    batched_time = time.perf_counter() - batched_start

    time_saved = max(individual_time - batched_time, 0.0)
    speedup_ratio = individual_time / batched_time if batched_time > 0 else 0.0
    speedup_percent = (time_saved / individual_time) * 100 if individual_time > 0 else 0.0

    logger.debug(f"Batch benchmark: {len(items)} items, {len(batches)} batches, "
                 f"individual={individual_time:.4f}s batched={batched_time:.4f}s")

    return BatchBenchmarkResult(
        item_count=len(items),
        batch_size=batch_size,
        batch_count=len(batches),
        individual_execution_time=individual_time,
        batched_execution_time=batched_time,
        time_saved=time_saved,
        speedup_ratio=speedup_ratio,
        speedup_percent=speedup_percent,
    )
