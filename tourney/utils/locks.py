"""
Redis-based Distributed Locking.

엔티티 단위 락으로 동시 요청 간 정합성을 보장한다.

Lock Hierarchy (항상 상위 → 하위 순서로 획득):
- lock:tournament:{id}   # 토너먼트 상태, 참가자 수, 매치 그래프
- lock:wallet:{id}       # 지갑 잔액 + 거래 로그

Rules:
1. Locks are acquired before the database transaction opens and released
   after it commits or rolls back.
2. A lock needed only after a commit (prize payout, refunds) is taken after
   that commit, never while waiting inside an open transaction.
3. Locks are not re-entrant.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Optional
from uuid import uuid4

import redis.asyncio as redis

from tourney.config import Settings
from tourney.utils.errors import LockAcquisitionError

logger = logging.getLogger(__name__)


class LockScope(Enum):
    """Lockable entity kinds, in acquisition order."""

    TOURNAMENT = "tournament"
    WALLET = "wallet"

    @property
    def rank(self) -> int:
        return _SCOPE_RANK[self]


_SCOPE_RANK = {LockScope.TOURNAMENT: 0, LockScope.WALLET: 1}


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float
    scope: LockScope


# Lua: 소유자 토큰이 일치할 때만 삭제
_COMPARE_AND_DELETE = """
local current = redis.call("get", KEYS[1])
if current ~= ARGV[1] then
    return 0
end
return redis.call("del", KEYS[1])
"""


class DistributedLockManager:
    """
    Per-entity locks on Redis.

    A lock is a key `lock:{scope}:{id}` set with NX and a PX expiry, holding
    a random owner token. Release compares the token inside a Lua script
    so a lock that expired and was taken by another worker is never
    touched.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_lock_timeout_ms: int = 10000,
        default_acquire_timeout_ms: int = 5000,
        retry_interval_ms: int = 25,
    ):
        self.redis = redis_client
        self.default_lock_timeout_ms = default_lock_timeout_ms
        self.default_acquire_timeout_ms = default_acquire_timeout_ms
        self.retry_interval_ms = retry_interval_ms

        self._held: dict[str, LockInfo] = {}
        self._scripts: dict[str, Any] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        redis_client: Optional[redis.Redis] = None,
    ) -> "DistributedLockManager":
        if redis_client is None:
            redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            redis_client,
            default_lock_timeout_ms=settings.lock_timeout_ms,
            default_acquire_timeout_ms=settings.lock_acquire_timeout_ms,
            retry_interval_ms=settings.lock_retry_interval_ms,
        )

    @staticmethod
    def make_lock_key(scope: LockScope, resource_id: str) -> str:
        return f"lock:{scope.value}:{resource_id}"

    def _script(self, source: str):
        if source not in self._scripts:
            self._scripts[source] = self.redis.register_script(source)
        return self._scripts[source]

    async def acquire(
        self,
        scope: LockScope,
        resource_id: str,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        """
        Take the lock, polling every `retry_interval_ms` until it is free.

        Raises:
            LockAcquisitionError: still held by someone else after
                `acquire_timeout_ms`
        """
        ttl_ms = lock_timeout_ms or self.default_lock_timeout_ms
        wait_ms = acquire_timeout_ms or self.default_acquire_timeout_ms
        key = self.make_lock_key(scope, resource_id)
        token = uuid4().hex
        deadline = time.monotonic() + wait_ms / 1000

        while not await self.redis.set(key, token, nx=True, px=ttl_ms):
            if time.monotonic() >= deadline:
                raise LockAcquisitionError(key, wait_ms)
            await asyncio.sleep(self.retry_interval_ms / 1000)

        taken_at = time.time()
        info = LockInfo(
            lock_key=key,
            owner_id=token,
            acquired_at=taken_at,
            expires_at=taken_at + ttl_ms / 1000,
            scope=scope,
        )
        self._held[key] = info
        return info

    async def release(self, lock_info: LockInfo) -> bool:
        """Drop the lock. False if it had already expired or changed hands."""
        deleted = await self._script(_COMPARE_AND_DELETE)(
            keys=[lock_info.lock_key], args=[lock_info.owner_id]
        )
        self._held.pop(lock_info.lock_key, None)
        if deleted != 1:
            logger.warning(f"Lock {lock_info.lock_key} expired before release")
            return False
        return True

    @asynccontextmanager
    async def lock(
        self,
        scope: LockScope,
        resource_id: str,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[LockInfo, None]:
        """Hold one lock for the body of an `async with` block."""
        held = await self.acquire(scope, resource_id, lock_timeout_ms, acquire_timeout_ms)
        try:
            yield held
        finally:
            await self.release(held)

    @asynccontextmanager
    async def multi_lock(
        self,
        locks: list[tuple[LockScope, str]],
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[list[LockInfo], None]:
        """
        Acquire several locks in hierarchy order to prevent deadlocks.

        Locks are sorted by (scope rank, key); duplicates are acquired once.
        If any acquisition fails, the ones already held are released.
        """
        ordered = sorted(
            set(locks),
            key=lambda item: (item[0].rank, self.make_lock_key(*item)),
        )

        acquired: list[LockInfo] = []
        try:
            for scope, resource_id in ordered:
                acquired.append(
                    await self.acquire(
                        scope, resource_id, lock_timeout_ms, acquire_timeout_ms
                    )
                )
            yield acquired
        finally:
            # 획득 역순으로 해제
            for lock_info in reversed(acquired):
                await self.release(lock_info)

    async def cleanup_all(self) -> int:
        """Release every lock this instance still holds (shutdown).

        Goes through the owner check, so a lock that expired and was taken
        by another worker stays with its new owner.
        """
        released = 0
        for info in list(self._held.values()):
            if await self.release(info):
                released += 1
        return released

    async def close(self) -> None:
        await self.cleanup_all()
        await self.redis.aclose()
