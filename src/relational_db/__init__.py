"""
Vendor-agnostic async access to PostgreSQL, MySQL and SQLite.

Key components:
- Connection manager with pooling, health checks and reconnection
- SQL safety checks for caller-written SQL
- Structured query builder and executors
- Transactions with savepoints, isolation levels and timeouts
- Batched writes and streaming reads
"""

from .config import ConnectionConfig, get_default_config, load_config, validate_config
from .core import ConnectionManager, ConnectionState, Transaction, TransactionManager, with_transaction
from .exceptions import (
    RelationalDBError, ValidationError, QueryInjectionError,
    DatabaseConnectionError, ConnectionNotInitializedError, ConnectionInitializationError,
    PoolTimeoutError, PoolClosedError,
    TransactionError, TransactionInactiveError, TransactionCancelledError, TransactionTimeoutError,
    QueryExecutionError, ConstraintViolationError, UniqueConstraintError, ForeignKeyConstraintError,
    NotNullConstraintError, OptimisticLockError, OperationFailedError, BatchAbortedError
)
from .logging_config import get_db_logger, setup_db_logging
from .operations import (
    OperationResult,
    relational_delete,
    relational_get_schema,
    relational_insert,
    relational_query,
    relational_select,
    relational_update,
)
from .schema import inspect_schema, validate_column_types, validate_columns_exist, validate_table_exists
from .utils.type_mapping import TypeMapper
from .vendors import Vendor

__version__ = "0.1.0"
__all__ = [
    # Core components
    "ConnectionManager",
    "ConnectionState",
    "Transaction",
    "TransactionManager",
    "with_transaction",
    "Vendor",

    # Configuration
    "ConnectionConfig",
    "get_default_config",
    "load_config",
    "validate_config",
    "setup_db_logging",
    "get_db_logger",

    # Errors
    "RelationalDBError", "ValidationError", "QueryInjectionError",
    "DatabaseConnectionError", "ConnectionNotInitializedError", "ConnectionInitializationError",
    "PoolTimeoutError", "PoolClosedError",
    "TransactionError", "TransactionInactiveError", "TransactionCancelledError", "TransactionTimeoutError",
    "QueryExecutionError", "ConstraintViolationError", "UniqueConstraintError", "ForeignKeyConstraintError",
    "NotNullConstraintError", "OptimisticLockError", "OperationFailedError", "BatchAbortedError",

    # Operations
    "OperationResult",
    "relational_select",
    "relational_insert",
    "relational_update",
    "relational_delete",
    "relational_query",
    "relational_get_schema",
    "inspect_schema",
    "validate_table_exists",
    "validate_columns_exist",
    "validate_column_types",
    "TypeMapper",
]
