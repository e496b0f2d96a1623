"""
Transaction management.

A ``Transaction`` drives BEGIN / COMMIT / ROLLBACK and savepoints on one
reserved connection. ``TransactionManager.run`` wraps a unit of work: it
begins, runs the operation (optionally racing a timeout), commits when the
transaction is still active and rolls back on any failure. Rollback failures
are logged, never raised, so the original error is the one callers see.

States: pending -> active -> committed | rolled_back
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import (
    RelationalDBError,
    TransactionCancelledError,
    TransactionError,
    TransactionInactiveError,
    TransactionTimeoutError,
    ValidationError,
)
from ..logging_config import get_db_logger
from ..security import validate_savepoint_name
from .connection import ConnectionManager, Params, Query, ReservedConnection
from .statement import ExecutionResult

T = TypeVar('T')

ROLLBACK_ERRORS = (SQLAlchemyError, RelationalDBError, OSError)


class IsolationLevel(str, Enum):
    READ_UNCOMMITTED = "read-uncommitted"
    READ_COMMITTED = "read-committed"
    REPEATABLE_READ = "repeatable-read"
    SERIALIZABLE = "serializable"


class TransactionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATES = (TransactionState.COMMITTED, TransactionState.ROLLED_BACK)


@dataclass(frozen=True)
class TransactionOptions:
    isolation_level: Optional[IsolationLevel] = None
    timeout: Optional[float] = None


def resolve_transaction_options(isolation_level: Optional[Union[IsolationLevel, str]] = None,
                                timeout: Optional[float] = None) -> TransactionOptions:
    """
    Validate and resolve transaction options once, up front.

    Raises:
        ValidationError: On an unknown isolation level or a non-positive timeout
    """
    level = None
    if isolation_level is not None:
        try:
            level = IsolationLevel(isolation_level)
        except ValueError:
            allowed = ', '.join(item.value for item in IsolationLevel)
            raise ValidationError(f"Unsupported isolation level '{isolation_level}'. Expected one of: {allowed}")

    if timeout is not None:
        if (isinstance(timeout, bool) or not isinstance(timeout, (int, float))
                or not math.isfinite(timeout) or timeout <= 0):
            raise ValidationError("Transaction timeout must be a positive number")
        timeout = float(timeout)

    return TransactionOptions(isolation_level=level, timeout=timeout)


class Transaction:
    """
    One unit of work on a reserved connection.

    Once committed or rolled back, ``execute`` and ``create_savepoint`` are
    rejected. ``cancel(reason)`` makes later ``execute`` calls fail with the
    reason and turns the eventual commit into a rollback.
    """

    def __init__(self, connection: ReservedConnection, options: Optional[TransactionOptions] = None,
                 logger=None, transaction_id: Optional[str] = None):
        self.id = transaction_id or f"tx_{uuid.uuid4().hex[:12]}"
        self.vendor = connection.vendor
        self.options = options or TransactionOptions()
        self._connection = connection
        self._strategy = connection.strategy
        self._state = TransactionState.PENDING
        self._savepoint_counter = 0
        self._cancel_reason: Optional[str] = None
        self._restore_statements: List[str] = []
        self.logger = get_db_logger(__name__, logger, vendor=self.vendor.value, tx=self.id)

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == TransactionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_reason is not None

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    async def begin(self) -> None:
        """
        Issue BEGIN and apply the isolation level in the vendor's required order.

        MySQL applies ``SET TRANSACTION`` before BEGIN (it affects the next
        transaction); the other vendors apply it right after BEGIN.
        """
        if self._state != TransactionState.PENDING:
            raise TransactionError(f"Transaction {self.id} has already been started")

        level = self.options.isolation_level.value if self.options.isolation_level else None
        execute_raw = self._connection.execute_raw

        if self._strategy.isolation_before_begin:
            self._restore_statements = await self._strategy.apply_isolation_level(execute_raw, level)
            await execute_raw("BEGIN")
        else:
            await execute_raw("BEGIN")
            try:
                self._restore_statements = await self._strategy.apply_isolation_level(execute_raw, level)
            except ROLLBACK_ERRORS:
                self._state = TransactionState.ACTIVE
                await self.rollback_quietly()
                raise

        self._state = TransactionState.ACTIVE
        self.logger.transaction(self.id, 'begin', f"isolation={level or 'default'}")

    def _ensure_active(self, action: str) -> None:
        if self._state != TransactionState.ACTIVE:
            raise TransactionInactiveError(
                f"Cannot {action}: transaction {self.id} is {self._state.value}"
            )

    def _ensure_usable(self, action: str) -> None:
        if self._cancel_reason is not None:
            raise TransactionCancelledError(f"Transaction cancelled: {self._cancel_reason}")
        self._ensure_active(action)

    async def execute(self, query: Query, params: Params = None) -> ExecutionResult:
        """Execute a statement inside the transaction."""
        self._ensure_usable('execute')
        return await self._connection.execute(query, params)

    def cancel(self, reason: str = "Transaction cancelled") -> None:
        """Mark the transaction for rollback without issuing any statement."""
        if self.is_terminal:
            return
        self._cancel_reason = reason
        self.logger.transaction(self.id, 'cancelled', reason)

    async def commit(self) -> None:
        """
        Commit the transaction.

        A no-op once the transaction is terminal. A cancelled transaction is
        rolled back instead and ``TransactionCancelledError`` is raised.
        """
        if self.is_terminal:
            self.logger.debug(f"Commit ignored, transaction already {self._state.value}")
            return
        self._ensure_active('commit')

        if self._cancel_reason is not None:
            await self.rollback_quietly()
            raise TransactionCancelledError(f"Transaction cancelled: {self._cancel_reason}")

        await self._connection.execute_raw("COMMIT")
        self._state = TransactionState.COMMITTED
        self.logger.transaction(self.id, 'commit')
        await self._restore_session()

    async def rollback(self) -> None:
        """Roll back the transaction. A no-op once the transaction is terminal."""
        if self.is_terminal:
            self.logger.debug(f"Rollback ignored, transaction already {self._state.value}")
            return

        was_active = self._state == TransactionState.ACTIVE
        self._state = TransactionState.ROLLED_BACK
        if was_active:
            await self._connection.execute_raw("ROLLBACK")
            self.logger.transaction(self.id, 'rollback', self._cancel_reason)
        await self._restore_session()

    async def rollback_quietly(self) -> None:
        """Roll back, logging instead of raising any failure."""
        try:
            await self.rollback()
        except ROLLBACK_ERRORS as e:
            self.logger.error(f"Rollback failed for transaction {self.id}: {e}")

    async def _restore_session(self) -> None:
        statements, self._restore_statements = self._restore_statements, []
        for sql in statements:
            try:
                await self._connection.execute_raw(sql)
            except ROLLBACK_ERRORS as e:
                self.logger.warning(f"Failed to restore session state with '{sql}': {e}")

    async def create_savepoint(self, name: Optional[str] = None) -> str:
        """
        Create a savepoint, auto-named ``sp_<n>`` when no name is given.

        Returns:
            The savepoint name
        """
        self._ensure_usable('create savepoint')
        if name is None:
            self._savepoint_counter += 1
            name = f"sp_{self._savepoint_counter}"
        validate_savepoint_name(name)

        await self._connection.execute_raw(f"SAVEPOINT {name}")
        self.logger.transaction(self.id, 'savepoint', name)
        return name

    async def rollback_to_savepoint(self, name: str) -> None:
        self._ensure_active('roll back to savepoint')
        validate_savepoint_name(name)
        await self._connection.execute_raw(f"ROLLBACK TO SAVEPOINT {name}")
        self.logger.transaction(self.id, 'rollback to savepoint', name)

    async def release_savepoint(self, name: str) -> None:
        self._ensure_active('release savepoint')
        validate_savepoint_name(name)
        await self._connection.execute_raw(f"RELEASE SAVEPOINT {name}")
        self.logger.transaction(self.id, 'release savepoint', name)

    async def with_savepoint(self, operation: Callable[['Transaction'], Awaitable[T]],
                             name: Optional[str] = None) -> T:
        """
        Run ``operation`` inside a savepoint.

        On success the savepoint is released. On failure the transaction rolls
        back to the savepoint, tries to release it, and the original error is
        re-raised.
        """
        savepoint = await self.create_savepoint(name)
        try:
            result = await operation(self)
        except Exception:
            try:
                await self.rollback_to_savepoint(savepoint)
            except ROLLBACK_ERRORS as e:
                self.logger.error(f"Rollback to savepoint {savepoint} failed: {e}")
            try:
                await self.release_savepoint(savepoint)
            except ROLLBACK_ERRORS as e:
                self.logger.debug(f"Release of savepoint {savepoint} after failure failed: {e}")
            raise

        await self.release_savepoint(savepoint)
        return result

    def __repr__(self) -> str:
        return f"Transaction(id={self.id!r}, vendor={self.vendor.value!r}, state={self._state.value!r})"


class TransactionManager:
    """Runs units of work inside transactions on a ``ConnectionManager``."""

    def __init__(self, manager: ConnectionManager, logger=None):
        self.manager = manager
        self.logger = get_db_logger(__name__, logger, vendor=manager.vendor.value)

    async def run(self, operation: Callable[[Transaction], Awaitable[T]],
                  isolation_level: Optional[Union[IsolationLevel, str]] = None,
                  timeout: Optional[float] = None) -> T:
        """
        Run ``operation`` in a transaction on one reserved connection.

        Args:
            operation: Coroutine function receiving the ``Transaction``
            isolation_level: Optional isolation level
            timeout: Optional timeout in seconds

        Returns:
            Whatever ``operation`` returns

        Raises:
            TransactionTimeoutError: If the timeout expired first
            TransactionCancelledError: If the operation cancelled the transaction
        """
        options = resolve_transaction_options(isolation_level, timeout)

        async def in_connection(connection: ReservedConnection) -> T:
            return await self._run(connection, operation, options)

        return await self.manager.execute_in_connection(in_connection)

    async def _run(self, connection: ReservedConnection,
                   operation: Callable[[Transaction], Awaitable[T]],
                   options: TransactionOptions) -> T:
        transaction = Transaction(connection, options, logger=self.logger)
        start_time = time.time()
        await transaction.begin()

        try:
            if options.timeout is None:
                result = await operation(transaction)
            else:
                result = await self._race_timeout(transaction, operation, options.timeout)
        except (Exception, asyncio.CancelledError) as e:
            self.logger.transaction(transaction.id, 'failed', type(e).__name__)
            await transaction.rollback_quietly()
            raise

        if transaction.is_cancelled:
            await transaction.rollback_quietly()
            raise TransactionCancelledError(f"Transaction cancelled: {transaction.cancel_reason}")

        if transaction.is_active:
            try:
                await transaction.commit()
            except ROLLBACK_ERRORS:
                await transaction.rollback_quietly()
                raise

        self.logger.transaction(transaction.id, 'completed', f"{time.time() - start_time:.3f}s")
        return result

    async def _race_timeout(self, transaction: Transaction,
                            operation: Callable[[Transaction], Awaitable[T]], timeout: float) -> T:
        task = asyncio.ensure_future(operation(transaction))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if task in done:
                return task.result()

            reason = f"Transaction timed out after {timeout:.3f}s"
            transaction.cancel(reason)

            # The in-flight driver call is not aborted; wait for it to settle
            # before the rollback touches the same connection.
            await asyncio.wait({task})
        except asyncio.CancelledError:
            transaction.cancel("Transaction run was cancelled")
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            if task.done() and not task.cancelled() and task.exception() is not None:
                self.logger.debug(f"Operation settled with {type(task.exception()).__name__}")

        raise TransactionTimeoutError(reason)


async def with_transaction(manager: ConnectionManager, operation: Callable[[Transaction], Awaitable[T]],
                           isolation_level: Optional[Union[IsolationLevel, str]] = None,
                           timeout: Optional[float] = None, logger=None) -> T:
    """Convenience wrapper around ``TransactionManager(manager).run``."""
    return await TransactionManager(manager, logger=logger).run(
        operation, isolation_level=isolation_level, timeout=timeout
    )
