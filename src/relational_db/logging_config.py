"""
Database logging configuration.

Components never reach for a global logger: each one accepts a logger at
construction and falls back to ``get_db_logger(__name__)``. The adapter adds
``[vendor=... tx=...]`` context to messages, and the sensitive-data filter
strips credentials before anything is written.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .security import SensitiveDataFilter

ROOT_LOGGER_NAME = 'relational_db'
MAX_LOGGED_SQL_LENGTH = 500
MAX_LOGGED_PARAMS = 20


class SafeFormatter(logging.Formatter):
    """Custom formatter that provides default values for missing fields."""

    def format(self, record):
        if not hasattr(record, 'database_context'):
            record.database_context = 'db'
        return super().format(record)


def setup_db_logging(level: str = 'INFO', log_file: Optional[Union[str, Path]] = None,
                     console: bool = True) -> logging.Logger:
    """
    Setup logging for the whole ``relational_db`` package.

    Args:
        level: Log level name
        log_file: Optional path of a rotating log file
        console: Also log to stdout

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove any existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = SafeFormatter(
        '%(asctime)s.%(msecs)03d - [%(database_context)s] - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    sensitive_filter = SensitiveDataFilter()

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(sensitive_filter)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(sensitive_filter)
        logger.addHandler(console_handler)

    logger.addFilter(sensitive_filter)
    logger.propagate = False
    return logger


def _truncate(sql: str, limit: int = MAX_LOGGED_SQL_LENGTH) -> str:
    sql = ' '.join(sql.split())
    if len(sql) <= limit:
        return sql
    return sql[:limit] + '...'


def describe_params(params: Optional[Union[Sequence[Any], Mapping[str, Any]]]) -> str:
    """Summarize bound values without logging their contents."""
    if not params:
        return 'none'
    if isinstance(params, Mapping):
        names = list(params)[:MAX_LOGGED_PARAMS]
        return f"{len(params)} named ({', '.join(names)})"
    types = [type(value).__name__ for value in list(params)[:MAX_LOGGED_PARAMS]]
    return f"{len(params)} positional ({', '.join(types)})"


def log_query(logger: logging.LoggerAdapter, sql: str, params: Any = None,
              duration: Optional[float] = None, row_count: Optional[int] = None,
              slow_threshold: Optional[float] = None) -> None:
    """
    Log an executed statement.

    Bound values are never written, only their count and types.

    Args:
        logger: Database logger instance
        sql: SQL text
        params: Bound parameters
        duration: Execution time in seconds
        row_count: Rows returned or affected
        slow_threshold: Emit a warning when duration exceeds this
    """
    if slow_threshold is not None and duration is not None and duration > slow_threshold:
        logger.warning(f"Slow query detected: {duration:.3f}s > {slow_threshold}s: {_truncate(sql, 120)}")

    if logger.isEnabledFor(logging.DEBUG):
        message = f"Query executed: {_truncate(sql)} | params: {describe_params(params)}"
        if duration is not None:
            message += f" | {duration:.3f}s"
        if row_count is not None:
            message += f" | rows: {row_count}"
        logger.debug(message)


def log_transaction(logger: logging.LoggerAdapter, transaction_id: str, action: str,
                    details: Optional[str] = None, level: int = logging.DEBUG) -> None:
    """
    Log a transaction lifecycle step.

    Args:
        logger: Database logger instance
        transaction_id: Transaction identity
        action: 'begin', 'commit', 'rollback', 'savepoint', ...
        details: Additional details
        level: Log level
    """
    message = f"Transaction {transaction_id} {action}"
    if details:
        message += f": {details}"
    logger.log(level, message)


def log_connection_event(logger: logging.LoggerAdapter, event: str, details: Optional[str] = None) -> None:
    """
    Log connection pool events.

    Args:
        logger: Database logger instance
        event: Event type ('created', 'closed', 'reconnecting', 'error', ...)
        details: Additional event details
    """
    if event == 'error':
        logger.error(f"Connection error: {details}")
        return

    message = f"Connection {event}"
    if details:
        message += f": {details}"
    if event in ('reconnecting', 'discarded'):
        logger.warning(message)
    else:
        logger.debug(message)


class DatabaseLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds database-specific context to log messages.

    Context such as vendor or transaction id is appended to each message and
    exposed as ``database_context`` for formatters.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add database context to log records."""
        context = ' '.join(f"{key}={value}" for key, value in self.extra.items() if value is not None)
        if 'extra' not in kwargs:
            kwargs['extra'] = {}
        kwargs['extra']['database_context'] = context or 'db'
        if context:
            msg = f"{msg} [{context}]"
        return msg, kwargs

    def bind(self, **context: Any) -> 'DatabaseLoggerAdapter':
        """Return a child adapter with additional context."""
        merged = dict(self.extra)
        merged.update(context)
        return DatabaseLoggerAdapter(self.logger, merged)

    def query(self, sql: str, params: Any = None, duration: Optional[float] = None,
              row_count: Optional[int] = None, slow_threshold: Optional[float] = None) -> None:
        """Log a database query."""
        log_query(self, sql, params, duration, row_count, slow_threshold)

    def transaction(self, transaction_id: str, action: str, details: Optional[str] = None,
                    level: int = logging.DEBUG) -> None:
        """Log a transaction step."""
        log_transaction(self, transaction_id, action, details, level)

    def connection_event(self, event: str, details: Optional[str] = None) -> None:
        """Log a connection pool event."""
        log_connection_event(self, event, details)


def get_db_logger(name: str, logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
                  **context: Any) -> DatabaseLoggerAdapter:
    """
    Wrap an injected logger (or the module logger) in a ``DatabaseLoggerAdapter``.

    Args:
        name: Logger name used when no logger is injected
        logger: Injected logger or adapter
        **context: Context appended to every message

    Returns:
        Adapter carrying the merged context
    """
    if isinstance(logger, DatabaseLoggerAdapter):
        return logger.bind(**context)
    if isinstance(logger, logging.LoggerAdapter):
        base = logger.logger
    else:
        base = logger or logging.getLogger(name)
    return DatabaseLoggerAdapter(base, context)
