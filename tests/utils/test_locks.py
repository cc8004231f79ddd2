"""Tests for the Redis distributed lock manager."""

import asyncio

import pytest

from tourney.utils.errors import LockAcquisitionError
from tourney.utils.locks import DistributedLockManager, LockScope


@pytest.fixture
def manager(fake_redis):
    return DistributedLockManager(
        fake_redis,
        default_lock_timeout_ms=1000,
        default_acquire_timeout_ms=100,
        retry_interval_ms=5,
    )


class TestLockAcquisition:
    """Tests for acquire/release."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, manager, fake_redis):
        """Should hold the key until released."""
        info = await manager.acquire(LockScope.WALLET, "w-1")

        assert info.lock_key == "lock:wallet:w-1"
        assert await fake_redis.exists("lock:wallet:w-1")

        assert await manager.release(info) is True
        assert not await fake_redis.exists("lock:wallet:w-1")

    @pytest.mark.asyncio
    async def test_contended_lock_times_out(self, manager):
        """Should raise LockAcquisitionError when the lock stays held."""
        await manager.acquire(LockScope.TOURNAMENT, "t-1")

        with pytest.raises(LockAcquisitionError) as exc:
            await manager.acquire(LockScope.TOURNAMENT, "t-1")

        assert exc.value.details["lockKey"] == "lock:tournament:t-1"

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self, manager):
        """Should acquire once the holder releases."""
        info = await manager.acquire(LockScope.TOURNAMENT, "t-1")

        async def release_later():
            await asyncio.sleep(0.02)
            await manager.release(info)

        releaser = asyncio.create_task(release_later())
        second = await manager.acquire(LockScope.TOURNAMENT, "t-1")
        await releaser

        assert second.owner_id != info.owner_id

    @pytest.mark.asyncio
    async def test_release_of_stolen_lock_returns_false(self, manager, fake_redis):
        """Should not delete a lock now owned by someone else."""
        info = await manager.acquire(LockScope.WALLET, "w-1")
        await fake_redis.set("lock:wallet:w-1", "someone-else")

        assert await manager.release(info) is False
        assert await fake_redis.get("lock:wallet:w-1") == "someone-else"


class TestLockContextManagers:
    """Tests for lock() and multi_lock()."""

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, manager, fake_redis):
        with pytest.raises(RuntimeError):
            async with manager.lock(LockScope.WALLET, "w-1"):
                raise RuntimeError("boom")

        assert not await fake_redis.exists("lock:wallet:w-1")

    @pytest.mark.asyncio
    async def test_multi_lock_orders_by_hierarchy(self, manager, fake_redis):
        """Tournament locks come before wallet locks; duplicates collapse."""
        async with manager.multi_lock(
            [
                (LockScope.WALLET, "w-2"),
                (LockScope.TOURNAMENT, "t-1"),
                (LockScope.WALLET, "w-1"),
                (LockScope.WALLET, "w-1"),
            ]
        ) as held:
            assert [info.lock_key for info in held] == [
                "lock:tournament:t-1",
                "lock:wallet:w-1",
                "lock:wallet:w-2",
            ]

        for scope, resource in [
            (LockScope.TOURNAMENT, "t-1"),
            (LockScope.WALLET, "w-1"),
            (LockScope.WALLET, "w-2"),
        ]:
            assert not await fake_redis.exists(manager.make_lock_key(scope, resource))

    @pytest.mark.asyncio
    async def test_multi_lock_releases_partial_on_failure(self, manager, fake_redis):
        """Already held locks are released when a later one times out."""
        blocker = await manager.acquire(LockScope.WALLET, "w-1")

        with pytest.raises(LockAcquisitionError):
            async with manager.multi_lock(
                [(LockScope.TOURNAMENT, "t-1"), (LockScope.WALLET, "w-1")]
            ):
                pass

        assert not await fake_redis.exists("lock:tournament:t-1")
        await manager.release(blocker)

    @pytest.mark.asyncio
    async def test_cleanup_all(self, manager, fake_redis):
        await manager.acquire(LockScope.WALLET, "w-1")
        await manager.acquire(LockScope.WALLET, "w-2")

        assert await manager.cleanup_all() == 2
        assert not await fake_redis.exists("lock:wallet:w-1")

    @pytest.mark.asyncio
    async def test_cleanup_all_keeps_locks_taken_over(self, manager, fake_redis):
        """A lock that expired and was re-acquired elsewhere is left alone."""
        await manager.acquire(LockScope.WALLET, "w-1")
        await manager.acquire(LockScope.WALLET, "w-2")
        await fake_redis.set("lock:wallet:w-1", "other-worker")

        assert await manager.cleanup_all() == 1
        assert await fake_redis.get("lock:wallet:w-1") == "other-worker"
        assert not await fake_redis.exists("lock:wallet:w-2")
        assert await manager.cleanup_all() == 0
