"""
Query execution on top of the builder.

Each ``execute_*`` function builds its statement, runs it on the manager (or
inside a ``Transaction`` when one is passed) and shapes the result. Driver
failures leave this module as classified constraint errors or a generic
"see logs" error; validation errors pass through untouched.
"""

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from ..core.connection import ConnectionManager
from ..core.statement import ExecutionResult, Params
from ..core.transaction import Transaction
from ..exceptions import OptimisticLockError, RelationalDBError, ValidationError
from ..security import enforce_parameterized_query_usage, validate_sql_string
from ..utils.error_utils import wrap_execution_error
from ..vendors import Vendor, get_vendor_strategy
from .batch import (
    DEFAULT_BATCH_SIZE,
    BatchExecutionTask,
    BatchFailure,
    BatchOptions,
    benchmark_batch_execution,
    execute_batched_task,
)
from .builder import (
    DeleteQuery,
    InsertQuery,
    OptimisticLock,
    ReturningMode,
    SelectQuery,
    UpdateQuery,
    WhereCondition,
    build_delete_query,
    build_insert_query,
    build_select_query,
    build_update_query,
    derive_inserted_ids,
)
from .stream import StreamingOptions, benchmark_streaming_select, execute_streaming_select

logger = logging.getLogger(__name__)

DRIVER_ERRORS = (SQLAlchemyError, OSError)


@dataclass(frozen=True)
class BatchSettings:
    """Caller-facing batch switches for INSERT and UPDATE."""
    enabled: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    continue_on_error: bool = True
    max_retries: int = 0
    retry_delay: float = 0.0
    benchmark: bool = False

    def to_batch_options(self, on_progress=None) -> BatchOptions:
        return BatchOptions(
            batch_size=self.batch_size,
            continue_on_error=self.continue_on_error,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            on_progress=on_progress,
        )


@dataclass(frozen=True)
class UpdateOperation:
    """One UPDATE inside a batched ``operations`` list."""
    data: Dict[str, Any]
    where: Tuple[WhereCondition, ...] = ()
    allow_full_table_update: bool = False
    optimistic_lock: Optional[OptimisticLock] = None


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    execution_time: float = 0.0


@dataclass
class SelectResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    execution_time: float = 0.0
    streaming: Optional[Dict[str, Any]] = None


@dataclass
class InsertResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    inserted_ids: List[Any] = field(default_factory=list)
    execution_time: float = 0.0
    batch: Optional[Dict[str, Any]] = None


@dataclass
class UpdateResult:
    row_count: int = 0
    execution_time: float = 0.0
    batch: Optional[Dict[str, Any]] = None


@dataclass
class DeleteResult:
    row_count: int = 0
    execution_time: float = 0.0
    soft_deleted: bool = False


def _target(manager: ConnectionManager, transaction: Optional[Transaction]):
    return transaction if transaction is not None else manager


def _ensure_vendor(manager: ConnectionManager, vendor: Union[Vendor, str]) -> None:
    query_vendor = get_vendor_strategy(vendor).vendor
    if query_vendor != manager.vendor:
        raise ValidationError(
            f"Query vendor '{query_vendor.value}' does not match connection vendor '{manager.vendor.value}'"
        )


def _batch_metadata(settings: BatchSettings, summary: Dict[str, Any],
                    extra_failures: Sequence[BatchFailure] = ()) -> Dict[str, Any]:
    metadata = {'enabled': True, 'batch_size': settings.batch_size}
    metadata.update(summary)
    metadata['failures'] = metadata['failures'] + [failure.to_dict() for failure in extra_failures]
    return metadata


# ----------------------------------------------------------------------
# Raw SQL
# ----------------------------------------------------------------------

async def execute_query(manager: ConnectionManager, sql: str, params: Params = None,
                        transaction: Optional[Transaction] = None) -> QueryResult:
    """
    Execute caller-written SQL after the safety checks.

    Args:
        manager: Initialized connection manager
        sql: SQL using ``$n``, ``?`` or ``:name`` placeholders
        params: Positional sequence or named mapping
        transaction: Optional transaction to run in

    Returns:
        Rows (for row-returning statements) and the row count

    Raises:
        QueryInjectionError: On DDL
        ValidationError: On missing parameters or unparameterized mutations
    """
    start_time = time.time()
    validate_sql_string(sql, manager.vendor)
    enforce_parameterized_query_usage(sql, params, manager.vendor)

    try:
        result = await _target(manager, transaction).execute(sql, params)
    except DRIVER_ERRORS as e:
        raise wrap_execution_error(e, 'query', log=manager.logger) from e

    return QueryResult(rows=result.rows, row_count=result.row_count,
                       execution_time=time.time() - start_time)


# ----------------------------------------------------------------------
# SELECT
# ----------------------------------------------------------------------

async def execute_select(manager: ConnectionManager, query: SelectQuery,
                         streaming: Optional[StreamingOptions] = None,
                         transaction: Optional[Transaction] = None) -> SelectResult:
    """
    Execute a SELECT descriptor, optionally in streaming mode.

    In streaming mode ``rows`` holds the retained sample and ``row_count`` the
    number of rows streamed. ``streaming.benchmark`` runs the statement up to
    two more times.
    """
    start_time = time.time()
    _ensure_vendor(manager, query.vendor)
    target = _target(manager, transaction)

    try:
        if streaming is None:
            result = await target.execute(build_select_query(query))
            return SelectResult(rows=result.rows, row_count=result.row_count,
                                execution_time=time.time() - start_time)

        streamed = await execute_streaming_select(target, query, streaming)
        metadata = streamed.summary()
        if streaming.benchmark:
            manager.logger.warning(
                f"Streaming benchmark enabled for {query.table}; the SELECT runs two more times"
            )
            benchmark = await benchmark_streaming_select(target, query, streaming)
            metadata['benchmark'] = benchmark.to_dict()
    except DRIVER_ERRORS as e:
        raise wrap_execution_error(e, 'select', log=manager.logger) from e

    return SelectResult(rows=streamed.rows, row_count=streamed.row_count,
                        execution_time=time.time() - start_time, streaming=metadata)


# ----------------------------------------------------------------------
# INSERT
# ----------------------------------------------------------------------

async def _insert_once(manager: ConnectionManager, query: InsertQuery,
                       transaction: Optional[Transaction]) -> InsertResult:
    built = build_insert_query(query)
    try:
        result: ExecutionResult = await _target(manager, transaction).execute(built.statement)
    except DRIVER_ERRORS as e:
        raise wrap_execution_error(e, 'insert', log=manager.logger) from e

    row_count = result.row_count if result.row_count > 0 else built.row_count
    rows = result.rows if built.returning_mode == ReturningMode.ROW else []
    inserted_ids: List[Any] = []
    if built.returning_mode == ReturningMode.ID:
        inserted_ids = derive_inserted_ids(built, result.rows, result.last_insert_id,
                                           row_count, manager.strategy)
    return InsertResult(rows=rows, row_count=row_count, inserted_ids=inserted_ids)


async def execute_insert(manager: ConnectionManager, query: InsertQuery,
                         batch: Optional[BatchSettings] = None,
                         transaction: Optional[Transaction] = None) -> InsertResult:
    """
    Execute an INSERT descriptor.

    With batch settings enabled the rows are written in chunks of
    ``batch.batch_size`` rows, one multi-row statement per chunk.

    Returns:
        Row count, returned rows (mode ``row``) and inserted ids (mode ``id``)
    """
    start_time = time.time()
    _ensure_vendor(manager, query.vendor)

    if batch is None or not batch.enabled:
        result = await _insert_once(manager, query, transaction)
        result.execution_time = time.time() - start_time
        return result

    async def insert_chunk(rows: List[Dict[str, Any]], batch_index: int) -> InsertResult:
        return await _insert_once(manager, replace(query, rows=tuple(rows)), transaction)

    def report(progress) -> None:
        manager.logger.debug(f"INSERT batch {progress.batch_index + 1}/{progress.total_batches} on "
                             f"{query.table}: {progress.processed_items}/{progress.total_items} rows")

    task = BatchExecutionTask(
        operation='insert',
        items=list(query.rows),
        execute_batch=insert_chunk,
        get_batch_success_count=lambda result, rows: result.row_count,
    )
    outcome = await execute_batched_task(task, batch.to_batch_options(report))

    combined = InsertResult()
    for chunk in outcome.results:
        combined.rows.extend(chunk.rows)
        combined.inserted_ids.extend(chunk.inserted_ids)
        combined.row_count += chunk.row_count

    metadata = _batch_metadata(batch, outcome.summary())
    if batch.benchmark:
        manager.logger.warning("INSERT batch benchmark enabled; it times statement construction only")
        benchmark = await benchmark_batch_execution(
            items=list(query.rows),
            run_individual=_build_insert_individually(query),
            run_batch=_build_insert_batch(query),
            batch_size=batch.batch_size,
        )
        metadata['benchmark'] = asdict(benchmark)

    combined.batch = metadata
    combined.execution_time = time.time() - start_time
    return combined


def _build_insert_individually(query: InsertQuery):
    async def run(row, index):
        build_insert_query(replace(query, rows=(row,)))
    return run


def _build_insert_batch(query: InsertQuery):
    async def run(rows, batch_index):
        build_insert_query(replace(query, rows=tuple(rows)))
    return run


# ----------------------------------------------------------------------
# UPDATE
# ----------------------------------------------------------------------

async def _update_once(manager: ConnectionManager, query: UpdateQuery,
                       transaction: Optional[Transaction]) -> int:
    built = build_update_query(query)
    try:
        result = await _target(manager, transaction).execute(built.statement)
    except DRIVER_ERRORS as e:
        raise wrap_execution_error(e, 'update', log=manager.logger) from e

    if built.uses_optimistic_lock and result.row_count == 0:
        raise OptimisticLockError()
    return result.row_count


def _operation_query(table: str, vendor: Union[Vendor, str], operation: UpdateOperation) -> UpdateQuery:
    return UpdateQuery(
        table=table,
        vendor=vendor,
        data=operation.data,
        where=tuple(operation.where),
        allow_full_table_update=operation.allow_full_table_update,
        optimistic_lock=operation.optimistic_lock,
    )


async def execute_update(manager: ConnectionManager, table: str,
                         operation: Optional[Union[UpdateQuery, UpdateOperation]] = None,
                         operations: Optional[Sequence[UpdateOperation]] = None,
                         batch: Optional[BatchSettings] = None,
                         transaction: Optional[Transaction] = None,
                         vendor: Optional[Union[Vendor, str]] = None) -> UpdateResult:
    """
    Execute one UPDATE, or a list of them in batches.

    Args:
        manager: Initialized connection manager
        table: Target table
        operation: Single ``UpdateQuery`` (or ``UpdateOperation``)
        operations: Batched operations; each one failing on its own is recorded
            as a failure when ``continue_on_error`` is set
        batch: Batch settings for ``operations``; defaults apply when omitted
        transaction: Optional transaction to run in
        vendor: Vendor tag, defaults to the manager's

    Raises:
        OptimisticLockError: If an optimistic lock matched no row
    """
    start_time = time.time()
    vendor = vendor or manager.vendor
    _ensure_vendor(manager, vendor)

    if operations is None:
        if operation is None:
            raise ValidationError("UPDATE data is required when operations are not provided.")
        query = operation if isinstance(operation, UpdateQuery) else _operation_query(table, vendor, operation)
        _ensure_vendor(manager, query.vendor)
        row_count = await _update_once(manager, query, transaction)
        return UpdateResult(row_count=row_count, execution_time=time.time() - start_time)

    if not operations:
        raise ValidationError("Update operations must not be an empty array")

    settings = batch if batch is not None and batch.enabled else BatchSettings()
    operation_failures: List[BatchFailure] = []

    async def update_chunk(chunk: List[UpdateOperation], batch_index: int) -> Tuple[int, int]:
        row_count = 0
        succeeded = 0
        for item in chunk:
            try:
                row_count += await _update_once(manager, _operation_query(table, vendor, item), transaction)
            except RelationalDBError as e:
                if not settings.continue_on_error:
                    raise
                operation_failures.append(BatchFailure(
                    operation='update',
                    batch_index=batch_index,
                    batch_size=len(chunk),
                    attempts=1,
                    error=str(e),
                ))
                continue
            succeeded += 1
        return row_count, succeeded

    def report(progress) -> None:
        manager.logger.debug(f"UPDATE batch {progress.batch_index + 1}/{progress.total_batches} on "
                             f"{table}: {progress.successful_items} ok, {progress.failed_items} failed")

    task = BatchExecutionTask(
        operation='update',
        items=list(operations),
        execute_batch=update_chunk,
        get_batch_success_count=lambda result, chunk: result[1],
    )
    outcome = await execute_batched_task(task, settings.to_batch_options(report))

    metadata = _batch_metadata(settings, outcome.summary(), operation_failures)
    if settings.benchmark:
        manager.logger.warning("UPDATE batch benchmark enabled; it times statement construction only")
        benchmark = await benchmark_batch_execution(
            items=list(operations),
            run_individual=_build_update_individually(table, vendor),
            run_batch=_build_update_batch(table, vendor),
            batch_size=settings.batch_size,
        )
        metadata['benchmark'] = asdict(benchmark)

    return UpdateResult(
        row_count=sum(row_count for row_count, _ in outcome.results),
        execution_time=time.time() - start_time,
        batch=metadata,
    )


def _build_update_individually(table: str, vendor: Union[Vendor, str]):
    async def run(item, index):
        build_update_query(_operation_query(table, vendor, item))
    return run


def _build_update_batch(table: str, vendor: Union[Vendor, str]):
    async def run(chunk, batch_index):
        for item in chunk:
            build_update_query(_operation_query(table, vendor, item))
    return run


# ----------------------------------------------------------------------
# DELETE
# ----------------------------------------------------------------------

async def execute_delete(manager: ConnectionManager, query: DeleteQuery, cascade: bool = False,
                         transaction: Optional[Transaction] = None) -> DeleteResult:
    """
    Execute a DELETE descriptor (an UPDATE when soft delete is set).

    Args:
        cascade: Mention ``ON DELETE CASCADE`` when a foreign key blocks the delete
    """
    start_time = time.time()
    _ensure_vendor(manager, query.vendor)
    built = build_delete_query(query)

    try:
        result = await _target(manager, transaction).execute(built.statement)
    except DRIVER_ERRORS as e:
        raise wrap_execution_error(e, 'delete', cascade=cascade, log=manager.logger) from e

    return DeleteResult(row_count=result.row_count, execution_time=time.time() - start_time,
                        soft_deleted=built.soft_delete)
