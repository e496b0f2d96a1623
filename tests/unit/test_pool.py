"""Unit tests for the asyncio connection pool."""

import asyncio

import pytest

from relational_db.core.pool import ConnectionPool
from relational_db.exceptions import PoolClosedError, PoolTimeoutError


class FakeConnections:
    """Connection factory and closer that record what they did."""

    def __init__(self, fail: bool = False):
        self.created = 0
        self.closed = []
        self.fail = fail

    async def factory(self):
        if self.fail:
            raise OSError("connection refused")
        self.created += 1
        return f"conn-{self.created}"

    async def closer(self, connection):
        self.closed.append(connection)


def make_pool(fake, **kwargs):
    options = {'min_size': 0, 'max_size': 2, 'acquire_timeout': 1.0, 'idle_timeout': 0.0}
    options.update(kwargs)
    return ConnectionPool(fake.factory, fake.closer, **options)


class TestConnectionPool:
    """Test acquisition, release and draining."""

    def test_invalid_sizes(self):
        """Test constructor validation."""
        fake = FakeConnections()
        with pytest.raises(ValueError, match="max_size must be at least 1"):
            make_pool(fake, max_size=0)
        with pytest.raises(ValueError, match="must not be negative"):
            make_pool(fake, acquire_timeout=-1)

    async def test_open_creates_min_size(self):
        """Test that open() pre-creates min_size connections."""
        fake = FakeConnections()
        pool = make_pool(fake, min_size=2, max_size=3)
        await pool.open()

        metrics = pool.metrics()
        assert fake.created == 2
        assert metrics.total == 2
        assert metrics.idle == 2
        assert metrics.active == 0

    async def test_acquire_and_release_reuses(self):
        """Test that a released connection is reused."""
        fake = FakeConnections()
        pool = make_pool(fake)

        entry = await pool.acquire()
        assert pool.metrics().active == 1
        await pool.release(entry)
        assert pool.metrics().idle == 1

        again = await pool.acquire()
        assert again.connection == entry.connection
        assert fake.created == 1
        assert pool.stats['connections_acquired'] == 2

    async def test_grows_to_max_size(self):
        """Test that the pool opens new connections up to max_size."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=2)

        first = await pool.acquire()
        second = await pool.acquire()
        assert first.connection != second.connection
        assert pool.metrics().total == 2

    async def test_zero_timeout_fails_immediately(self):
        """Test that acquire_timeout 0 never waits."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=1, acquire_timeout=0)
        await pool.acquire()

        with pytest.raises(PoolTimeoutError, match="No database connection available"):
            await pool.acquire()
        assert pool.stats['acquire_timeouts'] == 1

    async def test_wait_times_out(self):
        """Test that waiting longer than acquire_timeout fails."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=1, acquire_timeout=0.05)
        await pool.acquire()

        with pytest.raises(PoolTimeoutError, match="Timed out after"):
            await pool.acquire()
        assert pool.metrics().waiting == 0

    async def test_waiter_receives_released_connection(self):
        """Test FIFO hand-off to a waiting acquirer."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=1, acquire_timeout=1.0)
        entry = await pool.acquire()

        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        assert pool.metrics().waiting == 1

        await pool.release(entry)
        handed = await waiter
        assert handed.connection == entry.connection
        assert handed.in_use is True
        assert fake.created == 1

    async def test_discard_closes_connection(self):
        """Test that discarded connections are closed, not reused."""
        fake = FakeConnections()
        pool = make_pool(fake)
        entry = await pool.acquire()

        await pool.release(entry, discard=True)
        assert fake.closed == [entry.connection]
        assert pool.metrics().total == 0
        assert pool.stats['connections_discarded'] == 1

    async def test_discard_serves_waiter_with_new_connection(self):
        """Test that a discard frees a slot for a waiter."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=1)
        entry = await pool.acquire()

        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        await pool.release(entry, discard=True)

        replacement = await waiter
        assert replacement.connection == "conn-2"

    async def test_drain_rejects_waiters(self):
        """Test that draining fails pending acquisitions."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=1)
        entry = await pool.acquire()

        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        await pool.drain()

        with pytest.raises(PoolClosedError, match="Connection pool is draining"):
            await waiter
        with pytest.raises(PoolClosedError):
            await pool.acquire()

        # Connections in use are closed when they come back
        await pool.release(entry)
        assert fake.closed == [entry.connection]
        assert pool.closed is True

    async def test_drain_closes_idle(self):
        """Test that draining closes idle connections and is idempotent."""
        fake = FakeConnections()
        pool = make_pool(fake, min_size=2, max_size=2)
        await pool.open()

        await pool.drain()
        await pool.drain()
        assert sorted(fake.closed) == ["conn-1", "conn-2"]
        assert pool.metrics().total == 0

    async def test_evict_idle(self):
        """Test that idle connections past idle_timeout are closed above min_size."""
        fake = FakeConnections()
        pool = make_pool(fake, min_size=1, max_size=3, idle_timeout=0.01)
        first = await pool.acquire()
        second = await pool.acquire()
        await pool.release(first)
        await pool.release(second)

        await asyncio.sleep(0.05)
        assert await pool.evict_idle() == 1
        assert pool.metrics().total == 1

    async def test_idle_timeout_zero_never_evicts(self):
        """Test that idle_timeout 0 disables eviction."""
        fake = FakeConnections()
        pool = make_pool(fake, idle_timeout=0)
        entry = await pool.acquire()
        await pool.release(entry)

        await asyncio.sleep(0.01)
        assert await pool.evict_idle() == 0
        assert pool.metrics().idle == 1

    async def test_factory_failure_propagates(self):
        """Test that connection errors reach the caller."""
        pool = make_pool(FakeConnections(fail=True))
        with pytest.raises(OSError, match="connection refused"):
            await pool.acquire()
        assert pool.metrics().total == 0

    async def test_get_stats(self):
        """Test the statistics payload."""
        fake = FakeConnections()
        pool = make_pool(fake, max_size=4)
        await pool.acquire()

        stats = pool.get_stats()
        assert stats['max_size'] == 4
        assert stats['active_connections'] == 1
        assert stats['stats']['connections_created'] == 1
