"""
Structured query builder.

Frozen descriptors (``SelectQuery``, ``InsertQuery``, ``UpdateQuery``,
``DeleteQuery``) go in, one parameterized ``Statement`` comes out. Values are
always bound; identifiers cannot be bound, so they are validated against a
conservative grammar and quoted with the vendor's quote character.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.statement import Statement
from ..exceptions import ValidationError
from ..security import validate_identifier, validate_qualified_identifier
from ..vendors import Vendor, VendorStrategy, get_vendor_strategy


class _Missing:
    """Marks a WHERE condition that carries no value at all (distinct from None)."""

    def __repr__(self) -> str:
        return 'MISSING'

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class WhereOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    LIKE = "like"
    IN = "in"
    NOT_IN = "notIn"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ReturningMode(str, Enum):
    NONE = "none"
    ID = "id"
    ROW = "row"


_COMPARISON_SQL = {
    WhereOperator.EQ: '=',
    WhereOperator.NE: '<>',
    WhereOperator.GT: '>',
    WhereOperator.LT: '<',
    WhereOperator.GTE: '>=',
    WhereOperator.LTE: '<=',
    WhereOperator.LIKE: 'LIKE',
}

_ORDERING_OPERATORS = (WhereOperator.GT, WhereOperator.LT, WhereOperator.GTE, WhereOperator.LTE)
_ARRAY_OPERATORS = (WhereOperator.IN, WhereOperator.NOT_IN)
_NULL_OPERATORS = (WhereOperator.IS_NULL, WhereOperator.IS_NOT_NULL)

# MySQL and SQLite need a LIMIT before OFFSET
_UNBOUNDED_LIMIT = {
    Vendor.MYSQL: 18446744073709551615,
    Vendor.SQLITE: -1,
}

_OPERATOR_LABELS = {
    WhereOperator.NOT_IN: 'NOT IN',
    WhereOperator.IS_NULL: 'IS NULL',
    WhereOperator.IS_NOT_NULL: 'IS NOT NULL',
}

VendorLike = Union[Vendor, str]


def _coerce_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ValidationError(f"Unsupported {label} '{value}'. Expected one of: {allowed}")


@dataclass(frozen=True)
class WhereCondition:
    column: str
    operator: WhereOperator
    value: Any = MISSING

    def __post_init__(self):
        object.__setattr__(self, 'operator', _coerce_enum(WhereOperator, self.operator, 'WHERE operator'))


@dataclass(frozen=True)
class OrderBy:
    column: str
    direction: SortDirection = SortDirection.ASC

    def __post_init__(self):
        object.__setattr__(self, 'direction', _coerce_enum(SortDirection, self.direction, 'sort direction'))


@dataclass(frozen=True)
class SelectQuery:
    table: str
    vendor: VendorLike
    columns: Tuple[str, ...] = ()
    where: Tuple[WhereCondition, ...] = ()
    order_by: Tuple[OrderBy, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass(frozen=True)
class ReturningOptions:
    mode: ReturningMode = ReturningMode.NONE
    id_column: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'mode', _coerce_enum(ReturningMode, self.mode, 'returning mode'))

    @property
    def resolved_id_column(self) -> str:
        return self.id_column or 'id'


@dataclass(frozen=True)
class InsertQuery:
    table: str
    vendor: VendorLike
    rows: Tuple[Mapping[str, Any], ...]
    returning: ReturningOptions = field(default_factory=ReturningOptions)


@dataclass(frozen=True)
class OptimisticLock:
    column: str
    expected_value: Union[str, int, float]


@dataclass(frozen=True)
class UpdateQuery:
    table: str
    vendor: VendorLike
    data: Mapping[str, Any]
    where: Tuple[WhereCondition, ...] = ()
    allow_full_table_update: bool = False
    optimistic_lock: Optional[OptimisticLock] = None


@dataclass(frozen=True)
class SoftDelete:
    column: str = 'deleted_at'
    value: Optional[Union[str, int, float]] = None


@dataclass(frozen=True)
class DeleteQuery:
    table: str
    vendor: VendorLike
    where: Tuple[WhereCondition, ...] = ()
    allow_full_table_delete: bool = False
    soft_delete: Optional[SoftDelete] = None


@dataclass(frozen=True)
class BuiltInsert:
    statement: Statement
    row_count: int
    returning_mode: ReturningMode
    id_column: str
    supports_returning: bool
    rows: Tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class BuiltUpdate:
    statement: Statement
    uses_optimistic_lock: bool


@dataclass(frozen=True)
class BuiltDelete:
    statement: Statement
    soft_delete: bool


class _Binder:
    """Collects bound values and hands out ``:pN`` placeholders in order."""

    def __init__(self):
        self.values: List[Any] = []

    def bind(self, value: Any) -> str:
        self.values.append(value)
        return f":p{len(self.values)}"

    def statement(self, sql: str) -> Statement:
        return Statement(sql, tuple(self.values))


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _is_string_or_number(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def validate_where_condition(condition: WhereCondition) -> None:
    """
    Validate the value shape of one WHERE condition.

    Raises:
        ValidationError: If the value does not fit the operator
    """
    op = condition.operator
    column = condition.column
    value = condition.value
    label = _OPERATOR_LABELS.get(op, op.value.upper())

    validate_identifier(column)

    if op in _NULL_OPERATORS:
        if value is not MISSING:
            raise ValidationError(f"{label} operator must not include value for column {column}")
        return

    if value is MISSING:
        if op in _ARRAY_OPERATORS:
            raise ValidationError(f"{label} operator requires a non-empty array value for column {column}")
        if op in _ORDERING_OPERATORS:
            raise ValidationError(f"{label} operator requires a string or number value for column {column}")
        if op == WhereOperator.LIKE:
            raise ValidationError(f"{label} operator requires a string value for column {column}")
        raise ValidationError(f"{label} operator requires a value for column {column}")

    if value is None:
        raise ValidationError("null is only allowed with isNull/isNotNull operators")

    if op in _ARRAY_OPERATORS:
        if not _is_array(value) or len(value) == 0:
            raise ValidationError(f"{label} operator requires a non-empty array value for column {column}")
        if any(item is None or _is_array(item) or isinstance(item, dict) for item in value):
            raise ValidationError(f"{label} operator array values must be strings or numbers for column {column}")
        return

    if _is_array(value) or isinstance(value, dict):
        raise ValidationError(f"{label} operator does not accept an array value for column {column}")

    if op == WhereOperator.LIKE and not isinstance(value, str):
        raise ValidationError(f"{label} operator requires a string value for column {column}")

    if op in _ORDERING_OPERATORS and not _is_string_or_number(value):
        raise ValidationError(f"{label} operator requires a string or number value for column {column}")


def _build_condition(condition: WhereCondition, strategy: VendorStrategy, binder: _Binder) -> str:
    validate_where_condition(condition)
    column = strategy.quote_identifier(condition.column)
    op = condition.operator

    if op == WhereOperator.IS_NULL:
        return f"{column} IS NULL"
    if op == WhereOperator.IS_NOT_NULL:
        return f"{column} IS NOT NULL"
    if op in _ARRAY_OPERATORS:
        placeholders = ', '.join(binder.bind(item) for item in condition.value)
        keyword = 'IN' if op == WhereOperator.IN else 'NOT IN'
        return f"{column} {keyword} ({placeholders})"
    return f"{column} {_COMPARISON_SQL[op]} {binder.bind(condition.value)}"


def build_where_clause(conditions: Sequence[WhereCondition], strategy: VendorStrategy,
                       binder: _Binder) -> str:
    """Render conditions ANDed together, or an empty string when there are none."""
    if not conditions:
        return ''
    parts = [_build_condition(condition, strategy, binder) for condition in conditions]
    return ' WHERE ' + ' AND '.join(parts)


def _validate_pagination(name: str, value: Optional[int]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")


def build_select_query(query: SelectQuery) -> Statement:
    """
    Build a SELECT statement.

    Args:
        query: Select descriptor

    Returns:
        Statement with WHERE, LIMIT and OFFSET values bound in order
    """
    strategy = get_vendor_strategy(query.vendor)
    table = strategy.quote_qualified(validate_qualified_identifier(query.table))
    binder = _Binder()

    if query.columns:
        columns = ', '.join(strategy.quote_identifier(validate_identifier(c)) for c in query.columns)
    else:
        columns = '*'

    sql = f"SELECT {columns} FROM {table}"
    sql += build_where_clause(query.where, strategy, binder)

    if query.order_by:
        ordering = ', '.join(
            f"{strategy.quote_identifier(validate_identifier(o.column))} {o.direction.value.upper()}"
            for o in query.order_by
        )
        sql += f" ORDER BY {ordering}"

    _validate_pagination('limit', query.limit)
    _validate_pagination('offset', query.offset)

    if query.limit is not None:
        sql += f" LIMIT {binder.bind(query.limit)}"
    if query.offset is not None:
        if query.limit is None and strategy.vendor != Vendor.POSTGRESQL:
            sql += f" LIMIT {binder.bind(_UNBOUNDED_LIMIT[strategy.vendor])}"
        sql += f" OFFSET {binder.bind(query.offset)}"

    return binder.statement(sql)


def _normalize_rows(rows: Sequence[Mapping[str, Any]]) -> Tuple[List[str], Tuple[Mapping[str, Any], ...]]:
    if not rows:
        raise ValidationError("Insert data must not be an empty array")

    columns: Optional[List[str]] = None
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise ValidationError(f"Insert row at index {index} must be an object")
        row_columns = [validate_identifier(column) for column in row]
        if columns is None:
            columns = row_columns
        elif set(row_columns) != set(columns):
            raise ValidationError(
                f"Insert row at index {index} has a different column set than the first row"
            )
    return columns or [], tuple(rows)


def build_insert_query(query: InsertQuery) -> BuiltInsert:
    """
    Build an INSERT statement for one or more rows sharing a column set.

    Raises:
        ValidationError: On empty input, mismatched rows, or unsupported RETURNING
    """
    strategy = get_vendor_strategy(query.vendor)
    table = strategy.quote_qualified(validate_qualified_identifier(query.table))
    returning = query.returning

    if returning.id_column is not None and returning.mode != ReturningMode.ID:
        raise ValidationError('returning.id_column can only be provided when returning.mode is "id"')
    if returning.mode == ReturningMode.ROW and not strategy.supports_returning:
        raise ValidationError(
            f'Returning full rows is not supported for {strategy.vendor.value}. '
            'Use returning.mode "id" or "none".'
        )

    id_column = validate_identifier(returning.resolved_id_column, 'ID column')
    columns, rows = _normalize_rows(query.rows)
    binder = _Binder()

    if not columns:
        if len(rows) > 1:
            raise ValidationError("Batch INSERT with only DEFAULT VALUES is not supported")
        sql = strategy.default_values_sql(table)
    else:
        column_sql = ', '.join(strategy.quote_identifier(c) for c in columns)
        values_sql = ', '.join(
            '(' + ', '.join(binder.bind(row[column]) for column in columns) + ')'
            for row in rows
        )
        sql = f"INSERT INTO {table} ({column_sql}) VALUES {values_sql}"

    if strategy.supports_returning:
        if returning.mode == ReturningMode.ROW:
            sql += " RETURNING *"
        elif returning.mode == ReturningMode.ID:
            sql += f" RETURNING {strategy.quote_identifier(id_column)}"

    return BuiltInsert(
        statement=binder.statement(sql),
        row_count=len(rows),
        returning_mode=returning.mode,
        id_column=id_column,
        supports_returning=strategy.supports_returning,
        rows=rows,
    )


def build_update_query(query: UpdateQuery) -> BuiltUpdate:
    """
    Build an UPDATE statement.

    An optimistic lock adds ``<column> = <expected>`` to the WHERE clause, so
    a stale expectation matches zero rows.

    Raises:
        ValidationError: On empty data, invalid WHERE, or a missing WHERE
            without ``allow_full_table_update``
    """
    strategy = get_vendor_strategy(query.vendor)
    table = strategy.quote_qualified(validate_qualified_identifier(query.table))

    if not isinstance(query.data, Mapping):
        raise ValidationError("Update data must be an object")
    if not query.data:
        raise ValidationError("Update data must not be empty")

    lock = query.optimistic_lock
    if lock is not None:
        validate_identifier(lock.column, 'Optimistic lock column')
        if lock.expected_value is None or lock.expected_value == '':
            raise ValidationError("Optimistic lock expected_value must not be empty")

    if not query.where and lock is None and not query.allow_full_table_update:
        raise ValidationError(
            "WHERE conditions are required for UPDATE queries. "
            "Set allow_full_table_update=True to override."
        )

    binder = _Binder()
    assignments = ', '.join(
        f"{strategy.quote_identifier(validate_identifier(column))} = {binder.bind(value)}"
        for column, value in query.data.items()
    )
    sql = f"UPDATE {table} SET {assignments}"

    conditions = list(query.where)
    if lock is not None:
        conditions.append(WhereCondition(lock.column, WhereOperator.EQ, lock.expected_value))
    sql += build_where_clause(conditions, strategy, binder)

    return BuiltUpdate(statement=binder.statement(sql), uses_optimistic_lock=lock is not None)


def build_delete_query(query: DeleteQuery) -> BuiltDelete:
    """
    Build a DELETE statement, or an UPDATE when soft delete is requested.

    Raises:
        ValidationError: On invalid WHERE or a missing WHERE without
            ``allow_full_table_delete``
    """
    strategy = get_vendor_strategy(query.vendor)
    table = strategy.quote_qualified(validate_qualified_identifier(query.table))

    if not query.where and not query.allow_full_table_delete:
        raise ValidationError(
            "WHERE conditions are required for DELETE queries. "
            "Set allow_full_table_delete=True to override."
        )

    binder = _Binder()
    soft = query.soft_delete
    if soft is not None:
        column = strategy.quote_identifier(validate_identifier(soft.column, 'Soft delete column'))
        value = soft.value if soft.value is not None else datetime.now(timezone.utc).isoformat()
        sql = f"UPDATE {table} SET {column} = {binder.bind(value)}"
    else:
        sql = f"DELETE FROM {table}"

    sql += build_where_clause(query.where, strategy, binder)
    return BuiltDelete(statement=binder.statement(sql), soft_delete=soft is not None)


def derive_inserted_ids(built: BuiltInsert, returned_rows: Sequence[Mapping[str, Any]],
                        last_insert_id: Optional[int], affected_rows: int,
                        strategy: VendorStrategy) -> List[Any]:
    """
    Work out inserted ids, in priority order:
    returned rows, then input rows that all carry the id column, then the
    driver's last-insert id combined with the affected row count.
    """
    id_column = built.id_column

    if returned_rows and all(id_column in row for row in returned_rows):
        return [row[id_column] for row in returned_rows]

    if built.rows and all(row.get(id_column) is not None for row in built.rows):
        return [row[id_column] for row in built.rows]

    return strategy.derive_insert_ids(last_insert_id, affected_rows or built.row_count)


def where_from_mappings(conditions: Optional[Sequence[Mapping[str, Any]]]) -> Tuple[WhereCondition, ...]:
    """Convert plain ``{'column', 'operator', 'value'}`` mappings into conditions."""
    if not conditions:
        return ()
    converted = []
    for condition in conditions:
        data: Dict[str, Any] = dict(condition)
        value = data['value'] if 'value' in data else MISSING
        converted.append(WhereCondition(data['column'], data['operator'], value))
    return tuple(converted)
