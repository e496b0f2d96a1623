"""
Connection manager with pooling, health checks and reconnection.

This module provides the entry point callers use to reach a database. A
``ConnectionManager`` owns one SQLAlchemy async engine (with SQLAlchemy's own
pooling disabled) and a ``ConnectionPool`` of AUTOCOMMIT connections, so
transaction control statements issued by ``Transaction`` go straight to the
server. Managers share no state with each other.
"""

import asyncio
import time
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from sqlalchemy import text
from sqlalchemy.engine import Row
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from ..config import ConnectionConfig, ConnectionSettings, resolve_connection_settings
from ..exceptions import ConnectionInitializationError, ConnectionNotInitializedError, RelationalDBError
from ..logging_config import get_db_logger
from ..security import sanitize_log_message
from ..vendors import Vendor, VendorStrategy, get_vendor_strategy
from .pool import ConnectionPool, PooledConnection, PoolMetrics
from .statement import ExecutionResult, Params, Statement, compile_raw_statement

T = TypeVar('T')

CONNECT_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

EVENTS = ('connected', 'disconnected', 'reconnecting', 'error')

Query = Union[Statement, str]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ReservedConnection:
    """
    One pooled connection held for the duration of ``execute_in_connection``.

    Every statement issued through it runs on the same physical connection.
    """

    def __init__(self, manager: 'ConnectionManager', entry: PooledConnection):
        self._manager = manager
        self._entry = entry
        self.invalidated = False

    @property
    def vendor(self) -> Vendor:
        return self._manager.vendor

    @property
    def strategy(self) -> VendorStrategy:
        return self._manager.strategy

    async def execute(self, query: Query, params: Params = None) -> ExecutionResult:
        try:
            return await self._manager._execute_on(self._entry.connection, query, params)
        except DBAPIError as e:
            if e.connection_invalidated:
                self.invalidated = True
            raise

    async def execute_raw(self, sql: str) -> List[Row]:
        """Run a parameterless control statement and return its raw rows."""
        try:
            return await self._manager._fetch_raw(self._entry.connection, sql)
        except DBAPIError as e:
            if e.connection_invalidated:
                self.invalidated = True
            raise


class ConnectionManager:
    """
    Main connection manager for relational database operations.

    Usage:
        async with ConnectionManager(config) as manager:
            result = await manager.execute("SELECT * FROM users WHERE id = ?", [1])
    """

    def __init__(self, config: Union[ConnectionConfig, Mapping[str, Any]], logger=None):
        """
        Initialize connection manager with configuration.

        Args:
            config: Connection config model or an equivalent mapping
            logger: Optional logger to use instead of the module logger
        """
        if not isinstance(config, ConnectionConfig):
            config = ConnectionConfig.model_validate(config)

        self.config = config
        self.settings: ConnectionSettings = resolve_connection_settings(config)
        self.strategy: VendorStrategy = get_vendor_strategy(config.vendor)
        self.vendor: Vendor = config.vendor
        self.logger = get_db_logger(__name__, logger, vendor=self.vendor.value)

        self._engine: Optional[AsyncEngine] = None
        self._pool: Optional[ConnectionPool] = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: Dict[str, List[Callable[[Dict[str, Any]], Any]]] = defaultdict(list)
        self._init_lock = asyncio.Lock()

        # Performance tracking
        self.query_stats = {
            'total_queries': 0,
            'total_query_time': 0.0,
            'slow_queries': 0,
            'failed_queries': 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """
        Create the engine and pool and verify connectivity.

        Calling it on an initialized manager is a no-op.

        Raises:
            ConnectionInitializationError: If no connection could be established
        """
        async with self._init_lock:
            if self._pool is not None:
                return

            self._set_state(ConnectionState.CONNECTING)
            self.logger.info(f"Initializing connection manager: {self.settings.masked_url}")

            engine = create_async_engine(
                self.settings.url,
                poolclass=NullPool,
                isolation_level="AUTOCOMMIT",
                connect_args=self.settings.connect_args,
            )
            self._engine = engine
            pool = ConnectionPool(
                factory=self._open_connection,
                closer=self._close_connection,
                min_size=self.settings.min_size,
                max_size=self.settings.max_size,
                acquire_timeout=self.settings.acquire_timeout,
                idle_timeout=self.settings.idle_timeout,
                logger=self.logger,
            )

            try:
                await pool.open()
                entry = await pool.acquire()
                try:
                    await self._fetch_raw(entry.connection, self.strategy.health_check_sql)
                finally:
                    await pool.release(entry)
            except CONNECT_ERRORS as e:
                await pool.drain()
                await engine.dispose()
                self._engine = None
                self._set_state(ConnectionState.ERROR)
                message = sanitize_log_message(str(e))
                self.logger.connection_event('error', message)
                self._emit('error', {'error': message})
                raise ConnectionInitializationError(
                    f"Failed to connect to {self.vendor.value} database"
                ) from e

            self._pool = pool
            self._set_state(ConnectionState.CONNECTED)
            self._emit('connected', {'vendor': self.vendor.value})
            self.logger.info("Connection manager initialized")

    connect = initialize

    async def close(self) -> None:
        """Close all connections and dispose the engine. Repeated calls are no-ops."""
        async with self._init_lock:
            pool, engine = self._pool, self._engine
            if pool is None and engine is None:
                return
            self._pool = None
            self._engine = None

            self.logger.info("Shutting down connection manager")
            if pool is not None:
                await pool.drain()
            if engine is not None:
                await engine.dispose()

            self._set_state(ConnectionState.DISCONNECTED)
            self._emit('disconnected', {'vendor': self.vendor.value})
            self.logger.info("Connection manager shutdown complete")

    disconnect = close

    async def __aenter__(self) -> 'ConnectionManager':
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        """Register a listener for 'connected', 'disconnected', 'reconnecting' or 'error'."""
        if event not in EVENTS:
            raise ValueError(f"Unknown connection event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        if handler in self._listeners.get(event, []):
            self._listeners[event].remove(handler)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(payload)
            except Exception:
                self.logger.exception(f"Listener for '{event}' raised")

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            self.logger.debug(f"Connection state {self._state.value} -> {state.value}")
            self._state = state

    # ------------------------------------------------------------------
    # Physical connections
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        delay = self.settings.reconnect_base_delay * (2 ** (attempt - 1))
        return min(delay, self.settings.reconnect_max_delay)

    async def _open_connection(self) -> AsyncConnection:
        """Pool factory: open one connection, retrying with backoff when enabled."""
        attempt = 0
        while True:
            try:
                connection = await self._connect_once()
            except CONNECT_ERRORS as e:
                if not self.settings.reconnect_enabled:
                    raise
                attempt += 1
                max_attempts = self.settings.reconnect_max_attempts
                if max_attempts and attempt > max_attempts:
                    self.logger.error(f"Giving up after {max_attempts} reconnection attempts")
                    raise

                delay = self._backoff_delay(attempt)
                previous_state = self._state
                self._set_state(ConnectionState.RECONNECTING)
                self.logger.connection_event(
                    'reconnecting',
                    f"attempt {attempt}/{max_attempts or 'inf'} in {delay:.3f}s: {sanitize_log_message(str(e))}"
                )
                self._emit('reconnecting', {
                    'attempt': attempt,
                    'max_attempts': max_attempts,
                    'delay': delay,
                    'error': sanitize_log_message(str(e)),
                })
                await asyncio.sleep(delay)
                if self._state == ConnectionState.RECONNECTING:
                    self._set_state(previous_state)
                continue

            if attempt and self._pool is not None:
                self._set_state(ConnectionState.CONNECTED)
                self._emit('connected', {'vendor': self.vendor.value, 'attempts': attempt + 1})
            return connection

    async def _connect_once(self) -> AsyncConnection:
        if self._engine is None:
            raise ConnectionNotInitializedError()

        connection = await self._engine.connect()
        try:
            await self.strategy.configure_connection(
                lambda sql: self._fetch_raw(connection, sql)
            )
        except SQLAlchemyError:
            await connection.close()
            raise
        return connection

    async def _close_connection(self, connection: AsyncConnection) -> None:
        try:
            await connection.close()
        except CONNECT_ERRORS as e:
            self.logger.warning(f"Error closing connection: {e}")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _require_pool(self) -> ConnectionPool:
        if self._pool is None:
            raise ConnectionNotInitializedError()
        return self._pool

    def _to_statement(self, query: Query, params: Params) -> Statement:
        if isinstance(query, Statement):
            return query
        return compile_raw_statement(query, params, self.vendor)

    async def _fetch_raw(self, connection: AsyncConnection, sql: str) -> List[Row]:
        result = await connection.execute(text(sql))
        if result.returns_rows:
            return list(result.fetchall())
        return []

    async def _execute_on(self, connection: AsyncConnection, query: Query,
                          params: Params = None) -> ExecutionResult:
        statement = self._to_statement(query, params)
        bind = statement.bind_params
        start_time = time.time()

        try:
            result = await connection.execute(text(statement.sql), bind)
        except SQLAlchemyError:
            self.query_stats['failed_queries'] += 1
            self.logger.debug(f"Query failed after {time.time() - start_time:.3f}s")
            raise

        if result.returns_rows:
            columns = list(result.keys())
            rows = [dict(row._mapping) for row in result.fetchall()]
            execution = ExecutionResult(rows=rows, row_count=len(rows), columns=columns)
        else:
            last_id = result.lastrowid if self.strategy.reports_last_row_id else None
            execution = ExecutionResult(row_count=max(result.rowcount, 0), last_insert_id=last_id)

        duration = time.time() - start_time
        self._track_query_performance(duration)
        self.logger.query(statement.sql, bind, duration, execution.row_count,
                          self.settings.slow_query_threshold)
        return execution

    def _track_query_performance(self, duration: float) -> None:
        self.query_stats['total_queries'] += 1
        self.query_stats['total_query_time'] += duration
        if duration > self.settings.slow_query_threshold:
            self.query_stats['slow_queries'] += 1

    async def execute(self, query: Query, params: Params = None) -> ExecutionResult:
        """
        Execute one statement on a pooled connection.

        Args:
            query: Builder ``Statement`` or raw SQL text
            params: Values for raw SQL placeholders

        Returns:
            Execution result with rows, row count and last insert id

        Raises:
            ConnectionNotInitializedError: If initialize() has not been called
        """
        pool = self._require_pool()
        entry = await pool.acquire()
        discard = False
        try:
            return await self._execute_on(entry.connection, query, params)
        except DBAPIError as e:
            discard = e.connection_invalidated
            raise
        finally:
            await pool.release(entry, discard=discard)

    async def execute_in_connection(self, fn: Callable[[ReservedConnection], Awaitable[T]]) -> T:
        """
        Run ``fn`` against one reserved connection.

        Args:
            fn: Coroutine function receiving a ``ReservedConnection``

        Returns:
            Whatever ``fn`` returns
        """
        pool = self._require_pool()
        entry = await pool.acquire()
        reserved = ReservedConnection(self, entry)
        try:
            return await fn(reserved)
        finally:
            await pool.release(entry, discard=reserved.invalidated)

    async def run_sync(self, fn: Callable[[Any], T]) -> T:
        """Run a synchronous SQLAlchemy callable (e.g. inspection) on a pooled connection."""
        pool = self._require_pool()
        entry = await pool.acquire()
        try:
            return await entry.connection.run_sync(fn)
        finally:
            await pool.release(entry)

    # ------------------------------------------------------------------
    # Health and metrics
    # ------------------------------------------------------------------

    async def is_healthy(self) -> bool:
        """Run ``SELECT 1``; False when uninitialized or when the query fails."""
        if self._pool is None:
            return False
        try:
            result = await self.execute(self.strategy.health_check_sql)
        except CONNECT_ERRORS + (RelationalDBError,) as e:
            self.logger.warning(f"Health check failed: {sanitize_log_message(str(e))}")
            return False
        return result.row_count == 1

    def get_pool_metrics(self) -> PoolMetrics:
        if self._pool is None:
            return PoolMetrics()
        return self._pool.metrics()

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get performance statistics for the connection manager."""
        stats = self.query_stats.copy()
        if stats['total_queries'] > 0:
            stats['avg_query_time'] = stats['total_query_time'] / stats['total_queries']
        else:
            stats['avg_query_time'] = 0.0
        stats['pool_stats'] = self._pool.get_stats() if self._pool else None
        stats['state'] = self._state.value
        return stats

    def __repr__(self) -> str:
        return f"ConnectionManager(vendor={self.vendor.value!r}, url={self.settings.masked_url!r}, state={self._state.value!r})"
