"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.config import settings
from dispatch.domain.lifecycle import TripLifecycleEngine
from dispatch.domain.ports import ActorLocks
from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.locks import RedisActorLocks
from dispatch.infrastructure.redis_client import get_redis
from dispatch.infrastructure.repositories import (
    SqlDriverRegistry,
    SqlTripStore,
    SqlUnitOfWork,
)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_actor_locks() -> Optional[ActorLocks]:
    if not settings.actor_locks_enabled:
        return None
    return RedisActorLocks(await get_redis(), settings.actor_lock_ttl_seconds)


def get_engine(
    db: AsyncSession = Depends(get_db),
    locks: Optional[ActorLocks] = Depends(get_actor_locks),
) -> TripLifecycleEngine:
    return TripLifecycleEngine(
        SqlTripStore(db),
        SqlDriverRegistry(db),
        SqlUnitOfWork(db),
        locks,
        strict_driver_release=settings.strict_driver_release,
    )
