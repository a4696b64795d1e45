"""
Redis-based distributed locks.

``DistributedLock`` is a single named lock (SET NX EX to acquire, a Lua
script for atomic check-and-delete on release).  It keeps the reconciler a
single instance across API processes.

``RedisActorLocks`` hands out one such lock per actor so that a passenger's
trip requests, or a driver's accepts, are processed one at a time across
every worker process.  It never waits: a held key is reported as a
``ConflictError`` straight away.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dispatch.domain.errors import ConflictError, StoreError
from dispatch.domain.ports import ActorLocks

logger = logging.getLogger(__name__)


class LockNotAcquired(RuntimeError):
    """Raised when entering a lock that another owner holds."""


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        lua = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
        """
        await self.redis.eval(lua, 1, self.key, self.token)

    # context-manager support
    async def __aenter__(self):
        acquired = await self.acquire()
        if not acquired:
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()


class RedisActorLocks(ActorLocks):
    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 10):
        self.redis = client
        self.ttl = ttl_seconds

    @asynccontextmanager
    async def hold(self, key: str):
        lock = DistributedLock(self.redis, f"actor:{key}", self.ttl)
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StoreError(f"lock backend unavailable: {exc}") from exc
        if not acquired:
            raise ConflictError("another request for this account is in progress")

        try:
            yield lock
        finally:
            try:
                await lock.release()
            except RedisError:
                # The TTL frees the key if the release never lands.
                logger.warning("Could not release %s", lock.key, exc_info=True)
