"""Tests for the connection pool."""

import asyncio

import pytest

from conftest import FakeTarget
from modelhost.config import PoolSettings
from modelhost.execution.pool import ConnectionPool
from modelhost.models import HostIdentity


def identity(n: int) -> HostIdentity:
    return HostIdentity(host=f"host-{n}", username="ml")


class TestConnectionPool:
    """Test pooling, sharing and eviction."""

    @pytest.mark.asyncio
    async def test_reuses_connection_per_identity(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)

        first = await pool.acquire(identity(1))
        await pool.release(identity(1))
        second = await pool.acquire(identity(1))

        assert first is second
        assert first.connect_calls == 1
        assert len(target_factory.created) == 1
        await pool.clear()

    @pytest.mark.asyncio
    async def test_concurrent_acquires_dial_once(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)

        targets = await asyncio.gather(*(pool.acquire(identity(1)) for _ in range(5)))

        assert len({id(target) for target in targets}) == 1
        assert len(target_factory.created) == 1
        assert pool.get_stats()["active"] == 1
        assert pool.list_connections()[0]["users"] == 5
        await pool.clear()

    @pytest.mark.asyncio
    async def test_entry_stays_in_use_until_every_user_released(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        await pool.acquire(identity(1))
        await pool.acquire(identity(1))

        await pool.release(identity(1))
        assert pool.get_stats()["active"] == 1

        await pool.release(identity(1))
        assert pool.get_stats()["active"] == 0
        assert pool.get_stats()["idle"] == 1
        await pool.clear()

    @pytest.mark.asyncio
    async def test_idle_entry_evicted_after_timeout(self, target_factory):
        pool = ConnectionPool(PoolSettings(idle_timeout=0.05), target_factory)
        target = await pool.acquire(identity(1))
        await pool.release(identity(1))

        await asyncio.sleep(0.2)

        assert len(pool) == 0
        assert target.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_reacquire_cancels_idle_eviction(self, target_factory):
        pool = ConnectionPool(PoolSettings(idle_timeout=0.1), target_factory)
        await pool.acquire(identity(1))
        await pool.release(identity(1))
        target = await pool.acquire(identity(1))

        await asyncio.sleep(0.25)

        assert identity(1) in pool
        assert target.is_connected()
        await pool.clear()

    @pytest.mark.asyncio
    async def test_expired_entry_replaced(self, target_factory):
        pool = ConnectionPool(PoolSettings(max_age=0.05), target_factory)
        old = await pool.acquire(identity(1))
        await asyncio.sleep(0.1)
        await pool.release(identity(1))

        assert len(pool) == 0
        assert old.disconnect_calls == 1

        new = await pool.acquire(identity(1))
        assert new is not old
        await pool.clear()

    @pytest.mark.asyncio
    async def test_in_use_entry_never_evicted(self, target_factory):
        pool = ConnectionPool(PoolSettings(idle_timeout=0.01, max_age=0.01), target_factory)
        target = await pool.acquire(identity(1))
        await asyncio.sleep(0.05)

        assert await pool.cleanup_idle_connections() == 0
        assert await pool.cleanup_expired_connections() == 0
        assert not await pool.remove(identity(1))
        assert target.is_connected()

        assert await pool.remove(identity(1), force=True)
        assert len(pool) == 0

    @pytest.mark.asyncio
    async def test_soft_limit_evicts_least_recently_used_idle(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        for n in range(3):
            await pool.acquire(identity(n))
            await pool.release(identity(n))

        await pool.acquire(identity(3))

        assert len(pool) == 3
        assert identity(0) not in pool
        assert identity(3) in pool
        assert target_factory.created[0].disconnect_calls == 1
        await pool.clear()

    @pytest.mark.asyncio
    async def test_soft_limit_does_not_block_when_all_in_use(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        for n in range(5):
            await pool.acquire(identity(n))

        stats = pool.get_stats()
        assert stats["total"] == 5
        assert stats["active"] == 5
        assert stats["utilization"] > 100
        await pool.clear()

    @pytest.mark.asyncio
    async def test_failed_connect_is_not_pooled(self, pool_settings):
        def factory(ident, credentials=None):
            return FakeTarget(ident, connect_ok=False)

        pool = ConnectionPool(pool_settings, factory)
        target = await pool.acquire(identity(1))

        assert not target.is_connected()
        assert len(pool) == 0
        result = await target.execute("echo hi")
        assert not result.success

    @pytest.mark.asyncio
    async def test_closed_target_leaves_pool(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        target = await pool.acquire(identity(1))

        await target.disconnect()

        assert len(pool) == 0

    @pytest.mark.asyncio
    async def test_in_use_dropped_connection_reconnected_in_place(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        target = await pool.acquire(identity(1))
        target.connected = False

        again = await pool.acquire(identity(1))

        assert again is target
        assert target.connect_calls == 2
        assert target.is_connected()
        await pool.clear()

    @pytest.mark.asyncio
    async def test_stats(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        await pool.acquire(identity(1))
        await pool.acquire(identity(2))
        await pool.release(identity(2))

        stats = pool.get_stats()
        assert stats == {
            "total": 2,
            "active": 1,
            "idle": 1,
            "soft_max_size": 3,
            "utilization": round(2 / 3 * 100, 2),
        }
        await pool.clear()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pool_settings, target_factory):
        pool = ConnectionPool(pool_settings, target_factory)
        await pool.start()
        target = await pool.acquire(identity(1))

        await pool.stop()

        assert len(pool) == 0
        assert target.disconnect_calls == 1
