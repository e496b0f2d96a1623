"""
Schema inspection.

Reads tables, columns, primary keys, foreign keys and indexes through
``sqlalchemy.inspect`` on a pooled connection. Results are cached per
connection manager for ``RELATIONAL_DB_CONFIG['schema']['cache_ttl']`` seconds.
The ``validate_*`` helpers check table, column and type expectations against
an inspected schema and return a list of problems, like ``validate_config``.
"""

import copy
import logging
import time
import weakref
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import inspect

from .config import RELATIONAL_DB_CONFIG
from .core.connection import ConnectionManager
from .exceptions import ValidationError
from .security import validate_qualified_identifier

logger = logging.getLogger(__name__)

_schema_cache: 'weakref.WeakKeyDictionary[ConnectionManager, Tuple[float, DatabaseSchema]]' = \
    weakref.WeakKeyDictionary()


@dataclass
class ColumnSchema:
    name: str
    type: str
    nullable: bool
    default: Optional[str] = None
    primary_key: bool = False


@dataclass
class ForeignKeySchema:
    name: Optional[str]
    columns: List[str]
    referenced_table: str
    referenced_columns: List[str]
    referenced_schema: Optional[str] = None


@dataclass
class IndexSchema:
    name: Optional[str]
    columns: List[str]
    unique: bool = False


@dataclass
class TableSchema:
    name: str
    schema: Optional[str] = None
    columns: List[ColumnSchema] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKeySchema] = field(default_factory=list)
    indexes: List[IndexSchema] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def find_column(self, name: str) -> Optional[ColumnSchema]:
        """Case-insensitive column lookup."""
        wanted = name.lower()
        for column in self.columns:
            if column.name.lower() == wanted:
                return column
        return None


@dataclass
class DatabaseSchema:
    vendor: str
    tables: List[TableSchema] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def find_table(self, name: str) -> Optional[TableSchema]:
        """Find a table by plain (``users``) or qualified (``public.users``) name, ignoring case."""
        parts = name.lower().split('.')
        for table in self.tables:
            if len(parts) == 2:
                if table.name.lower() == parts[1] and (table.schema or '').lower() == parts[0]:
                    return table
            elif table.name.lower() == parts[0]:
                return table
        return None


def _read_schema(sync_connection) -> List[TableSchema]:
    inspector = inspect(sync_connection)
    dialect = sync_connection.dialect
    tables = []

    for table_name in sorted(inspector.get_table_names()):
        primary_key = inspector.get_pk_constraint(table_name).get('constrained_columns') or []

        columns = []
        for column in inspector.get_columns(table_name):
            default = column.get('default')
            columns.append(ColumnSchema(
                name=column['name'],
                type=column['type'].compile(dialect=dialect),
                nullable=bool(column.get('nullable', True)),
                default=str(default) if default is not None else None,
                primary_key=column['name'] in primary_key,
            ))

        foreign_keys = [
            ForeignKeySchema(
                name=fk.get('name'),
                columns=list(fk['constrained_columns']),
                referenced_table=fk['referred_table'],
                referenced_columns=list(fk['referred_columns']),
                referenced_schema=fk.get('referred_schema'),
            )
            for fk in inspector.get_foreign_keys(table_name)
        ]

        indexes = [
            IndexSchema(
                name=index.get('name'),
                columns=[c for c in index['column_names'] if c is not None],
                unique=bool(index.get('unique', False)),
            )
            for index in inspector.get_indexes(table_name)
        ]

        tables.append(TableSchema(
            name=table_name,
            schema=inspector.default_schema_name,
            columns=columns,
            primary_key=list(primary_key),
            foreign_keys=foreign_keys,
            indexes=indexes,
        ))

    return tables


def _table_filters(tables: Optional[Sequence[str]]) -> Optional[Set[str]]:
    if tables is None:
        return None
    if len(tables) == 0:
        raise ValidationError("Tables filter must not be empty when provided")

    filters = set()
    for table in tables:
        name = table.strip() if isinstance(table, str) else table
        try:
            validate_qualified_identifier(name)
        except ValidationError:
            raise ValidationError(
                f"Invalid table filter '{table}'. Use alphanumeric characters, underscores, "
                "and an optional schema qualification."
            )
        filters.add(name.lower())
    return filters


def _filter_tables(schema: 'DatabaseSchema', filters: Optional[Set[str]]) -> 'DatabaseSchema':
    schema = copy.deepcopy(schema)
    if filters is None:
        return schema

    def wanted(table: TableSchema) -> bool:
        qualified = f"{table.schema}.{table.name}".lower() if table.schema else None
        return table.name.lower() in filters or qualified in filters

    schema.tables = [table for table in schema.tables if wanted(table)]
    return schema


async def inspect_schema(manager: ConnectionManager, tables: Optional[Sequence[str]] = None,
                         bypass_cache: bool = False, cache_ttl: Optional[float] = None) -> DatabaseSchema:
    """
    Describe the database the manager is connected to.

    Args:
        manager: Initialized connection manager
        tables: Optional table names (``table`` or ``schema.table``) to keep
        bypass_cache: Ignore any cached result
        cache_ttl: Cache lifetime in seconds; 0 disables caching

    Returns:
        Schema description of the default schema

    Raises:
        ValidationError: On an empty or malformed table filter
    """
    filters = _table_filters(tables)
    ttl = RELATIONAL_DB_CONFIG['schema']['cache_ttl'] if cache_ttl is None else cache_ttl

    if not bypass_cache:
        cached = _schema_cache.get(manager)
        if cached is not None and cached[0] > time.monotonic():
            logger.debug(f"Schema cache hit for {manager.vendor.value}")
            return _filter_tables(cached[1], filters)

    start_time = time.time()
    schema = DatabaseSchema(vendor=manager.vendor.value, tables=await manager.run_sync(_read_schema))
    logger.info(f"Inspected {len(schema.tables)} tables in {time.time() - start_time:.3f}s")

    if ttl > 0:
        _schema_cache[manager] = (time.monotonic() + ttl, schema)
    return _filter_tables(schema, filters)


def clear_schema_cache(manager: Optional[ConnectionManager] = None) -> None:
    if manager is None:
        _schema_cache.clear()
    else:
        _schema_cache.pop(manager, None)


def validate_table_exists(schema: DatabaseSchema, table_name: str) -> List[str]:
    """
    Check that a table exists in an inspected schema.

    Args:
        schema: Result of ``inspect_schema``
        table_name: Plain or schema-qualified table name

    Returns:
        List of problems, empty when the table exists
    """
    if not isinstance(table_name, str) or not table_name:
        return ["Table name must be a non-empty string"]

    errors = []
    if schema.find_table(table_name) is None:
        available = ', '.join(table.display_name for table in schema.tables)
        errors.append(f"Table \"{table_name}\" does not exist. Available tables: {available or '(none)'}")

    logger.debug(f"Table existence check for {table_name}: {'ok' if not errors else 'missing'}")
    return errors


def validate_columns_exist(schema: DatabaseSchema, table_name: str, column_names: Sequence[str]) -> List[str]:
    """
    Check that every named column exists in the table (case-insensitive).

    Returns:
        One message per missing column, or a single message if the table is missing
    """
    table = schema.find_table(table_name)
    if table is None:
        return [f"Table \"{table_name}\" does not exist"]

    available = ', '.join(column.name for column in table.columns)
    errors = [
        f"Column \"{name}\" does not exist in table \"{table_name}\". Available columns: {available}"
        for name in column_names
        if table.find_column(name) is None
    ]
    logger.debug(f"Column existence check on {table_name}: {len(column_names)} columns, {len(errors)} missing")
    return errors


def validate_column_types(schema: DatabaseSchema, table_name: str, expected_types: Dict[str, str]) -> List[str]:
    """
    Check column types against expected type fragments.

    Matching is case-insensitive and either side may contain the other, so
    ``varchar`` matches ``VARCHAR(255)`` and ``INTEGER`` matches ``int``.

    Args:
        schema: Result of ``inspect_schema``
        table_name: Table to check
        expected_types: Column name to expected type fragment

    Returns:
        List of problems, empty when every column matches
    """
    table = schema.find_table(table_name)
    if table is None:
        return [f"Table \"{table_name}\" does not exist"]

    errors = []
    for column_name, expected in expected_types.items():
        column = table.find_column(column_name)
        if column is None:
            errors.append(f"Column \"{column_name}\" does not exist in table \"{table_name}\"")
            continue

        actual = column.type.lower()
        wanted = expected.lower()
        if wanted not in actual and actual not in wanted:
            errors.append(
                f"Column \"{column_name}\" has type \"{column.type}\", expected type containing \"{expected}\""
            )

    logger.debug(f"Column type check on {table_name}: {len(expected_types)} columns, {len(errors)} mismatches")
    return errors
