"""Unit tests for ConnectionPool."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import make_connection

from nkdocker.config import EngineConfig
from nkdocker.errors import EngineConnectionError
from nkdocker.pool import ConnectionPool
from nkdocker.protocol.commands import CommandOptions

# =============================================================================
# Helpers
# =============================================================================


def make_pool(**config) -> tuple[ConnectionPool, AsyncMock]:
    transport = AsyncMock()
    transport.open.side_effect = lambda: make_connection()
    return ConnectionPool(EngineConfig(**config), transport), transport


# =============================================================================
# Tests
# =============================================================================


class TestAcquire:
    """Test leasing connections."""

    @pytest.mark.asyncio
    async def test_opens_when_empty(self):
        pool, transport = make_pool()

        connection = await pool.acquire()

        assert connection.leased
        assert pool.leased_count == 1
        transport.open.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reuses_released_connection(self):
        """A released connection is handed out again without reconnecting."""
        pool, transport = make_pool()

        first = await pool.acquire()
        pool.release(first, reusable=True)
        second = await pool.acquire()

        assert second is first
        assert second.requests == 2
        assert transport.open.await_count == 1

    @pytest.mark.asyncio
    async def test_force_new_bypasses_pool(self):
        """force_new opens a dedicated connection and never pools it."""
        pool, transport = make_pool()
        idle = await pool.acquire()
        pool.release(idle, reusable=True)

        dedicated = await pool.acquire(CommandOptions(force_new=True))

        assert dedicated is not idle
        assert pool.idle_count == 1

        pool.release(dedicated, reusable=True)
        assert dedicated.closed
        assert pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_leased_connection_not_shared(self):
        """Concurrent leases get distinct connections."""
        pool, _ = make_pool()

        a, b = await asyncio.gather(pool.acquire(), pool.acquire())

        assert a is not b
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_dead_idle_connection_discarded(self):
        pool, transport = make_pool()
        stale = await pool.acquire()
        pool.release(stale, reusable=True)
        stale.reader.feed_eof()

        fresh = await pool.acquire()

        assert fresh is not stale
        assert stale.closed
        assert transport.open.await_count == 2

    @pytest.mark.asyncio
    async def test_open_failure_propagates(self):
        pool, transport = make_pool()
        transport.open.side_effect = EngineConnectionError("refused")

        with pytest.raises(EngineConnectionError):
            await pool.acquire()


class TestRelease:
    """Test returning connections."""

    @pytest.mark.asyncio
    async def test_not_reusable_closes(self):
        pool, _ = make_pool()
        connection = await pool.acquire()

        pool.release(connection, reusable=False)

        assert connection.closed
        assert pool.idle_count == 0
        assert pool.leased_count == 0

    @pytest.mark.asyncio
    async def test_idle_timer_closes(self):
        """Parked connections close when their idle timer fires."""
        pool, _ = make_pool(idle_timeout=50)
        connection = await pool.acquire()
        pool.release(connection, reusable=True)

        assert connection.idle_handle is not None
        await asyncio.sleep(0.1)

        assert connection.closed
        assert pool.idle_count == 0

    @pytest.mark.asyncio
    async def test_lease_cancels_idle_timer(self):
        pool, _ = make_pool(idle_timeout=50)
        connection = await pool.acquire()
        pool.release(connection, reusable=True)

        again = await pool.acquire()
        await asyncio.sleep(0.1)

        assert again is connection
        assert not connection.closed
        assert connection.idle_handle is None

    @pytest.mark.asyncio
    async def test_per_command_idle_timeout(self):
        pool, _ = make_pool(idle_timeout=10_000)
        connection = await pool.acquire()
        pool.release(connection, reusable=True, idle_timeout=30)

        await asyncio.sleep(0.08)

        assert connection.closed


class TestClose:
    """Test closing the pool."""

    @pytest.mark.asyncio
    async def test_close_all(self):
        pool, _ = make_pool()
        idle = await pool.acquire()
        pool.release(idle, reusable=True)
        leased = await pool.acquire(CommandOptions(force_new=True))

        await pool.close()

        assert idle.closed
        assert leased.closed

        with pytest.raises(EngineConnectionError):
            await pool.acquire()
