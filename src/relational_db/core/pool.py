"""
Asyncio connection pool.

Holds physical connections opened by a caller-supplied factory and hands them
out one at a time. Acquisition reuses an idle connection, grows the pool while
under ``max_size``, or waits in FIFO order; waiting longer than
``acquire_timeout`` fails with ``PoolTimeoutError``. Draining the pool rejects
every waiter immediately.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..exceptions import PoolClosedError, PoolTimeoutError
from ..logging_config import get_db_logger

ConnectionFactory = Callable[[], Awaitable[Any]]
ConnectionCloser = Callable[[Any], Awaitable[None]]


@dataclass
class PooledConnection:
    """A driver connection plus pool bookkeeping. Never handed to callers."""
    connection: Any
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    in_use: bool = False

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used_at


@dataclass(frozen=True)
class PoolMetrics:
    total: int = 0
    active: int = 0
    idle: int = 0
    waiting: int = 0


class ConnectionPool:
    """
    Bounded pool of asynchronous connections.

    All bookkeeping runs on the event loop; mutations happen between awaits so
    no lock is needed.
    """

    def __init__(self, factory: ConnectionFactory, closer: ConnectionCloser,
                 min_size: int = 0, max_size: int = 10, acquire_timeout: float = 30.0,
                 idle_timeout: float = 300.0, logger=None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if acquire_timeout < 0 or idle_timeout < 0:
            raise ValueError("Pool timeouts must not be negative")

        self._factory = factory
        self._closer = closer
        self.min_size = min(min_size, max_size)
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.idle_timeout = idle_timeout
        self.logger = get_db_logger(__name__, logger)

        self._connections: List[PooledConnection] = []
        self._idle: Deque[PooledConnection] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._opening = 0
        self._closed = False

        self.stats = {
            'connections_created': 0,
            'connections_closed': 0,
            'connections_acquired': 0,
            'connections_released': 0,
            'connections_discarded': 0,
            'acquire_timeouts': 0,
            'pool_waits': 0,
            'total_wait_time': 0.0,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Open the configured minimum number of connections."""
        while len(self._connections) < self.min_size:
            entry = await self._create()
            self._park(entry)
        self.logger.connection_event('pool_opened', f"{len(self._connections)} connections")

    async def _create(self) -> PooledConnection:
        self._opening += 1
        try:
            connection = await self._factory()
        finally:
            self._opening -= 1

        entry = PooledConnection(connection)
        if self._closed:
            await self._close_entry(entry)
            raise PoolClosedError("Connection pool is draining")

        self._connections.append(entry)
        self.stats['connections_created'] += 1
        self.logger.connection_event('created', f"#{self.stats['connections_created']}")
        return entry

    def _park(self, entry: PooledConnection) -> None:
        entry.in_use = False
        entry.last_used_at = time.monotonic()
        self._idle.append(entry)

    def _checkout(self, entry: PooledConnection) -> PooledConnection:
        entry.in_use = True
        entry.last_used_at = time.monotonic()
        self.stats['connections_acquired'] += 1
        return entry

    async def acquire(self) -> PooledConnection:
        """
        Acquire a connection.

        Returns:
            Pooled connection marked in use

        Raises:
            PoolClosedError: If the pool has been drained
            PoolTimeoutError: If nothing became free within ``acquire_timeout``
        """
        if self._closed:
            raise PoolClosedError("Connection pool is draining")

        await self.evict_idle()

        if self._idle:
            return self._checkout(self._idle.popleft())

        if len(self._connections) + self._opening < self.max_size:
            return self._checkout(await self._create())

        return await self._wait_for_release()

    async def _wait_for_release(self) -> PooledConnection:
        if self.acquire_timeout == 0:
            self.stats['acquire_timeouts'] += 1
            raise PoolTimeoutError("No database connection available")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self.stats['pool_waits'] += 1
        start_time = time.monotonic()

        try:
            entry = await asyncio.wait_for(waiter, timeout=self.acquire_timeout)
        except asyncio.CancelledError:
            # Resolved just before the caller was cancelled: pass the connection on
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                self._hand_off(waiter.result())
            raise
        except asyncio.TimeoutError:
            self.stats['acquire_timeouts'] += 1
            raise PoolTimeoutError(
                f"Timed out after {self.acquire_timeout:.3f}s waiting for a database connection"
            )
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            self.stats['total_wait_time'] += time.monotonic() - start_time

        return self._checkout(entry)

    async def release(self, entry: PooledConnection, discard: bool = False) -> None:
        """
        Return a connection to the pool.

        Args:
            entry: Connection obtained from ``acquire``
            discard: Close the connection instead of reusing it
        """
        if entry not in self._connections:
            return

        self.stats['connections_released'] += 1

        if discard or self._closed:
            if discard:
                self.stats['connections_discarded'] += 1
                self.logger.connection_event('discarded', "connection invalidated by driver")
            await self._remove(entry)
            if not self._closed:
                await self._serve_waiter_with_new_connection()
            return

        self._hand_off(entry)

    def _hand_off(self, entry: PooledConnection) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                entry.last_used_at = time.monotonic()
                waiter.set_result(entry)
                return
        self._park(entry)

    async def _serve_waiter_with_new_connection(self) -> None:
        """A slot freed up by a discard goes to the oldest waiter, if any."""
        if not self._waiters:
            return
        try:
            entry = await self._create()
        except PoolClosedError:
            return
        except Exception as e:
            self.logger.connection_event('error', f"replacement connection failed: {e}")
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(e)
                    return
            return
        self._hand_off(entry)

    async def evict_idle(self) -> int:
        """Close idle connections older than ``idle_timeout``, keeping ``min_size``."""
        if not self.idle_timeout:
            return 0

        now = time.monotonic()
        evicted = 0
        for entry in list(self._idle):
            if len(self._connections) <= self.min_size:
                break
            if entry.idle_for(now) > self.idle_timeout:
                self._idle.remove(entry)
                await self._remove(entry)
                evicted += 1

        if evicted:
            self.logger.connection_event('evicted', f"{evicted} idle connections")
        return evicted

    async def _remove(self, entry: PooledConnection) -> None:
        if entry in self._connections:
            self._connections.remove(entry)
        await self._close_entry(entry)

    async def _close_entry(self, entry: PooledConnection) -> None:
        entry.in_use = False
        await self._closer(entry.connection)
        self.stats['connections_closed'] += 1

    async def drain(self) -> None:
        """Reject waiters and close all connections.

        Connections still checked out are closed when they are released.
        """
        if self._closed:
            return
        self._closed = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Connection pool is draining"))

        while self._idle:
            await self._remove(self._idle.popleft())

        self.logger.connection_event('pool_drained', f"{len(self._connections)} still in use")

    def metrics(self) -> PoolMetrics:
        active = sum(1 for entry in self._connections if entry.in_use)
        return PoolMetrics(
            total=len(self._connections),
            active=active,
            idle=len(self._idle),
            waiting=sum(1 for waiter in self._waiters if not waiter.done()),
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics."""
        metrics = self.metrics()
        return {
            'max_size': self.max_size,
            'min_size': self.min_size,
            'total_connections': metrics.total,
            'active_connections': metrics.active,
            'idle_connections': metrics.idle,
            'waiting_requests': metrics.waiting,
            'stats': self.stats.copy(),
        }
