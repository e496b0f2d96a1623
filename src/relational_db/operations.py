"""
Self-contained database operations.

Each ``relational_*`` function validates its input, opens a
``ConnectionManager``, runs one operation, always closes the manager, and
returns an ``OperationResult``. Failures come back as ``success=False`` with
a message that is safe to show to the caller.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .core.connection import ConnectionManager
from .exceptions import RelationalDBError
from .models import DeleteInput, InsertInput, RawQueryInput, SchemaInput, SelectInput, UpdateInput
from .query.builder import DeleteQuery, InsertQuery, SelectQuery, UpdateQuery
from .query.executor import (
    execute_delete,
    execute_insert,
    execute_query,
    execute_select,
    execute_update,
)
from .schema import inspect_schema

logger = logging.getLogger(__name__)

ModelT = TypeVar('ModelT', bound=BaseModel)


@dataclass
class OperationResult:
    success: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    inserted_ids: List[Any] = field(default_factory=list)
    error: Optional[str] = None
    execution_time: float = 0.0
    batch: Optional[Dict[str, Any]] = None
    streaming: Optional[Dict[str, Any]] = None
    schema: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_validation_error(error: PydanticValidationError) -> str:
    messages = []
    for item in error.errors():
        loc = '.'.join(str(part) for part in item['loc'])
        messages.append(f"{loc}: {item['msg']}" if loc else item['msg'])
    return "Invalid input: " + '; '.join(messages)


async def _run_operation(name: str, model_cls: Type[ModelT], payload: Union[ModelT, Mapping[str, Any]],
                         work: Callable[[ConnectionManager, ModelT], Awaitable[OperationResult]]) -> OperationResult:
    start_time = time.time()

    try:
        params = payload if isinstance(payload, model_cls) else model_cls.model_validate(payload)
    except PydanticValidationError as e:
        return OperationResult(success=False, error=format_validation_error(e),
                               execution_time=time.time() - start_time)

    try:
        manager = ConnectionManager(params)
    except RelationalDBError as e:
        return OperationResult(success=False, error=str(e), execution_time=time.time() - start_time)

    try:
        await manager.initialize()
        result = await work(manager, params)
    except RelationalDBError as e:
        logger.warning(f"{name} failed: {type(e).__name__}: {e}")
        return OperationResult(success=False, error=str(e), execution_time=time.time() - start_time)
    finally:
        await manager.close()

    result.execution_time = time.time() - start_time
    logger.debug(f"{name} completed: {result.row_count} rows in {result.execution_time:.3f}s")
    return result


async def relational_select(payload: Union[SelectInput, Mapping[str, Any]]) -> OperationResult:
    """Run a SELECT described by ``SelectInput``."""
    async def work(manager: ConnectionManager, params: SelectInput) -> OperationResult:
        query = SelectQuery(
            table=params.table,
            vendor=params.vendor,
            columns=tuple(params.columns or ()),
            where=params.where_conditions(),
            order_by=tuple(order.to_order_by() for order in params.order_by),
            limit=params.limit,
            offset=params.offset,
        )
        streaming = params.streaming.to_options() if params.streaming and params.streaming.enabled else None
        result = await execute_select(manager, query, streaming=streaming)
        return OperationResult(success=True, rows=result.rows, row_count=result.row_count,
                               streaming=result.streaming)

    return await _run_operation('relational_select', SelectInput, payload, work)


async def relational_insert(payload: Union[InsertInput, Mapping[str, Any]]) -> OperationResult:
    """Insert one row or an array of rows."""
    async def work(manager: ConnectionManager, params: InsertInput) -> OperationResult:
        query = InsertQuery(
            table=params.table,
            vendor=params.vendor,
            rows=tuple(params.rows),
            returning=params.returning.to_options(),
        )
        batch = params.batch.to_settings() if params.batch else None
        result = await execute_insert(manager, query, batch=batch)
        return OperationResult(success=True, rows=result.rows, row_count=result.row_count,
                               inserted_ids=result.inserted_ids, batch=result.batch)

    return await _run_operation('relational_insert', InsertInput, payload, work)


async def relational_update(payload: Union[UpdateInput, Mapping[str, Any]]) -> OperationResult:
    """Run one UPDATE, or a batched list of ``operations``."""
    async def work(manager: ConnectionManager, params: UpdateInput) -> OperationResult:
        batch = params.batch.to_settings() if params.batch else None
        if params.operations is not None:
            result = await execute_update(
                manager, params.table,
                operations=[operation.to_operation() for operation in params.operations],
                batch=batch,
                vendor=params.vendor,
            )
        else:
            query = None
            if params.data is not None:
                query = UpdateQuery(
                    table=params.table,
                    vendor=params.vendor,
                    data=params.data,
                    where=params.where_conditions(),
                    allow_full_table_update=params.allow_full_table_update,
                    optimistic_lock=params.optimistic_lock.to_lock() if params.optimistic_lock else None,
                )
            result = await execute_update(manager, params.table, operation=query, vendor=params.vendor)
        return OperationResult(success=True, row_count=result.row_count, batch=result.batch)

    return await _run_operation('relational_update', UpdateInput, payload, work)


async def relational_delete(payload: Union[DeleteInput, Mapping[str, Any]]) -> OperationResult:
    """Delete (or soft delete) rows."""
    async def work(manager: ConnectionManager, params: DeleteInput) -> OperationResult:
        query = DeleteQuery(
            table=params.table,
            vendor=params.vendor,
            where=params.where_conditions(),
            allow_full_table_delete=params.allow_full_table_delete,
            soft_delete=params.soft_delete.to_soft_delete() if params.soft_delete else None,
        )
        result = await execute_delete(manager, query, cascade=params.cascade)
        return OperationResult(success=True, row_count=result.row_count)

    return await _run_operation('relational_delete', DeleteInput, payload, work)


async def relational_query(payload: Union[RawQueryInput, Mapping[str, Any]]) -> OperationResult:
    """Run caller-written SQL through the safety checks."""
    async def work(manager: ConnectionManager, params: RawQueryInput) -> OperationResult:
        result = await execute_query(manager, params.sql, params.params)
        return OperationResult(success=True, rows=result.rows, row_count=result.row_count)

    return await _run_operation('relational_query', RawQueryInput, payload, work)


async def relational_get_schema(payload: Union[SchemaInput, Mapping[str, Any]]) -> OperationResult:
    """Describe tables, columns, keys and indexes."""
    async def work(manager: ConnectionManager, params: SchemaInput) -> OperationResult:
        schema = await inspect_schema(manager, tables=params.tables, bypass_cache=params.bypass_cache)
        return OperationResult(success=True, row_count=len(schema.tables), schema=schema.to_dict())

    return await _run_operation('relational_get_schema', SchemaInput, payload, work)
