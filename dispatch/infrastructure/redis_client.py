"""
Redis async connection pool.

Redis holds only short-lived lock keys: ``lock:actor:<passenger|driver>:<id>``
for per-actor serialisation and ``lock:availability_reconciler`` for the
background worker.  No trip or driver state lives here.
"""

import redis.asyncio as aioredis

from dispatch.config import settings

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    decode_responses=True,
    max_connections=settings.redis_max_connections,
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)
