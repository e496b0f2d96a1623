"""
Query building and execution.

This module contains:
- Structured query builder (SELECT / INSERT / UPDATE / DELETE)
- Executors with tiered error handling
- Batched and streaming execution
"""

from .builder import (
    MISSING, WhereCondition, WhereOperator, OrderBy, SortDirection,
    SelectQuery, InsertQuery, UpdateQuery, DeleteQuery,
    ReturningMode, ReturningOptions, OptimisticLock, SoftDelete,
    build_select_query, build_insert_query, build_update_query, build_delete_query
)
from .batch import (
    BatchExecutionResult, BatchExecutionTask, BatchOptions, BatchProgress,
    benchmark_batch_execution, execute_batched_task
)
from .stream import StreamingOptions, StreamingSelectResult, execute_streaming_select, stream_select_chunks
from .executor import (
    BatchSettings, UpdateOperation,
    execute_query, execute_select, execute_insert, execute_update, execute_delete
)

__all__ = [
    'MISSING', 'WhereCondition', 'WhereOperator', 'OrderBy', 'SortDirection',
    'SelectQuery', 'InsertQuery', 'UpdateQuery', 'DeleteQuery',
    'ReturningMode', 'ReturningOptions', 'OptimisticLock', 'SoftDelete',
    'build_select_query', 'build_insert_query', 'build_update_query', 'build_delete_query',
    'BatchExecutionResult', 'BatchExecutionTask', 'BatchOptions', 'BatchProgress',
    'benchmark_batch_execution', 'execute_batched_task',
    'StreamingOptions', 'StreamingSelectResult', 'execute_streaming_select', 'stream_select_chunks',
    'BatchSettings', 'UpdateOperation',
    'execute_query', 'execute_select', 'execute_insert', 'execute_update', 'execute_delete',
]
