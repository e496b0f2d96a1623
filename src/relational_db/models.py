"""
Input models for the operation functions.

Every input carries the connection descriptor (it extends ``ConnectionConfig``)
plus the fields of one operation. Unknown keys are rejected at every level.
The models check structure only; value rules for WHERE conditions,
pagination and identifiers are enforced by the query builder so there is a
single source of those messages.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import ConnectionConfig
from .query.builder import (
    MISSING,
    OptimisticLock,
    OrderBy,
    ReturningMode,
    ReturningOptions,
    SoftDelete,
    SortDirection,
    WhereCondition,
    WhereOperator,
)
from .query.batch import DEFAULT_BATCH_SIZE
from .query.executor import BatchSettings, UpdateOperation
from .query.stream import DEFAULT_CHUNK_SIZE, DEFAULT_SAMPLE_SIZE, StreamingOptions


class WhereConditionInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    column: str = Field(..., min_length=1, description="Column name to filter on")
    operator: WhereOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against (omit for isNull/isNotNull)")

    def to_condition(self) -> WhereCondition:
        # An omitted value and an explicit null are different errors
        value = self.value if 'value' in self.model_fields_set else MISSING
        return WhereCondition(self.column, self.operator, value)


def _conditions(where: Optional[List[WhereConditionInput]]):
    return tuple(condition.to_condition() for condition in where or [])


class OrderByInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    column: str = Field(..., min_length=1)
    direction: SortDirection = SortDirection.ASC

    def to_order_by(self) -> OrderBy:
        return OrderBy(self.column, self.direction)


class StreamingInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_rows: Optional[int] = None
    sample_size: int = DEFAULT_SAMPLE_SIZE
    collect_all_rows: bool = False
    benchmark: bool = Field(False, description="Re-runs the SELECT; only for side-effect-free queries")

    def to_options(self) -> StreamingOptions:
        return StreamingOptions(
            chunk_size=self.chunk_size,
            max_rows=self.max_rows,
            sample_size=self.sample_size,
            collect_all_rows=self.collect_all_rows,
            benchmark=self.benchmark,
        )


class BatchInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    continue_on_error: bool = True
    max_retries: int = 0
    retry_delay: float = 0.0
    benchmark: bool = False

    def to_settings(self) -> BatchSettings:
        return BatchSettings(
            enabled=self.enabled,
            batch_size=self.batch_size,
            continue_on_error=self.continue_on_error,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            benchmark=self.benchmark,
        )


class ReturningInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: ReturningMode = ReturningMode.NONE
    id_column: Optional[str] = None

    def to_options(self) -> ReturningOptions:
        return ReturningOptions(self.mode, self.id_column)


class OptimisticLockInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    column: str = Field(..., min_length=1, description="Version or lock column name")
    expected_value: Union[int, float, str] = Field(..., description="Expected current value of the lock column")

    def to_lock(self) -> OptimisticLock:
        return OptimisticLock(self.column, self.expected_value)


class SoftDeleteInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    column: str = Field('deleted_at', min_length=1)
    value: Optional[Union[int, float, str]] = Field(None, description="Defaults to the current UTC timestamp")

    def to_soft_delete(self) -> SoftDelete:
        return SoftDelete(self.column, self.value)


class UpdateOperationInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data: Dict[str, Any]
    where: List[WhereConditionInput] = Field(default_factory=list)
    allow_full_table_update: bool = False
    optimistic_lock: Optional[OptimisticLockInput] = None

    def to_operation(self) -> UpdateOperation:
        return UpdateOperation(
            data=self.data,
            where=_conditions(self.where),
            allow_full_table_update=self.allow_full_table_update,
            optimistic_lock=self.optimistic_lock.to_lock() if self.optimistic_lock else None,
        )


class SelectInput(ConnectionConfig):
    table: str
    columns: Optional[List[str]] = None
    where: List[WhereConditionInput] = Field(default_factory=list)
    order_by: List[OrderByInput] = Field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    streaming: Optional[StreamingInput] = None

    def where_conditions(self):
        return _conditions(self.where)


class InsertInput(ConnectionConfig):
    table: str
    data: Union[Dict[str, Any], List[Dict[str, Any]]]
    returning: ReturningInput = Field(default_factory=ReturningInput)
    batch: Optional[BatchInput] = None

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return self.data if isinstance(self.data, list) else [self.data]


class UpdateInput(ConnectionConfig):
    table: str
    data: Optional[Dict[str, Any]] = None
    where: List[WhereConditionInput] = Field(default_factory=list)
    allow_full_table_update: bool = False
    optimistic_lock: Optional[OptimisticLockInput] = None
    operations: Optional[List[UpdateOperationInput]] = None
    batch: Optional[BatchInput] = None

    def where_conditions(self):
        return _conditions(self.where)


class DeleteInput(ConnectionConfig):
    table: str
    where: List[WhereConditionInput] = Field(default_factory=list)
    allow_full_table_delete: bool = False
    cascade: bool = Field(False, description="Add ON DELETE CASCADE guidance to foreign key errors")
    soft_delete: Optional[SoftDeleteInput] = None

    def where_conditions(self):
        return _conditions(self.where)


class RawQueryInput(ConnectionConfig):
    sql: str = Field(..., min_length=1)
    params: Optional[Union[List[Any], Dict[str, Any]]] = None


class SchemaInput(ConnectionConfig):
    tables: Optional[List[str]] = None
    bypass_cache: bool = False
