"""
Exception hierarchy for the relational database layer.

Errors fall into three tiers:
- validation errors raised before any statement reaches a driver (safe to surface)
- classified driver errors with fixed, friendly messages
- unclassified driver errors wrapped in a generic message, original kept as ``__cause__``
"""


class RelationalDBError(Exception):
    """Base exception for all database layer errors."""
    pass


class ValidationError(RelationalDBError):
    """Raised when input is rejected before any network call."""
    pass


class QueryInjectionError(ValidationError):
    """Raised when raw SQL contains a forbidden statement."""
    pass


class DatabaseConnectionError(RelationalDBError):
    """Base exception for connection and pool errors."""
    pass


class ConnectionNotInitializedError(DatabaseConnectionError):
    """Raised when a manager is used before initialize() or after close()."""

    def __init__(self, message: str = "Database not initialized. Call initialize() first."):
        super().__init__(message)


class ConnectionInitializationError(DatabaseConnectionError):
    """Raised when a physical connection cannot be established."""
    pass


class PoolTimeoutError(DatabaseConnectionError):
    """Raised when no pooled connection became available in time."""
    pass


class PoolClosedError(DatabaseConnectionError):
    """Raised for acquisitions against a drained pool."""
    pass


class TransactionError(RelationalDBError):
    """Base exception for transaction errors."""
    pass


class TransactionInactiveError(TransactionError):
    """Raised when a terminal or not-yet-begun transaction is used."""
    pass


class TransactionCancelledError(TransactionError):
    """Raised by execute() after cancel() was called."""
    pass


class TransactionTimeoutError(TransactionError):
    """Raised when the wrapped unit of work exceeds its timeout."""
    pass


class QueryExecutionError(RelationalDBError):
    """Base exception for statement execution failures."""
    pass


class ConstraintViolationError(QueryExecutionError):
    """Raised for classified constraint violations."""
    pass


class UniqueConstraintError(ConstraintViolationError):
    pass


class ForeignKeyConstraintError(ConstraintViolationError):
    pass


class NotNullConstraintError(ConstraintViolationError):
    pass


class OptimisticLockError(QueryExecutionError):
    """Raised when an optimistic-lock guarded update touched no rows."""

    def __init__(self, message: str = "Update failed: optimistic lock check failed."):
        super().__init__(message)


class OperationFailedError(QueryExecutionError):
    """Generic wrapper for unclassified driver errors."""
    pass


class BatchAbortedError(QueryExecutionError):
    """Raised when a batch fails and continue_on_error is disabled."""

    def __init__(self, message: str, batch_index: int, total_batches: int):
        super().__init__(message)
        self.batch_index = batch_index
        self.total_batches = total_batches
