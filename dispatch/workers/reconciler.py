"""
Availability Reconciler
=======================

Runs every ``RECONCILE_INTERVAL_SECONDS`` (default 60 s).

Driver release after finish / cancel is best-effort, so a driver can be
left BUSY with no active trip (or, after manual edits, not BUSY while
holding one).  Each cycle compares the driver registry with trip state and
repairs the difference; see
``TripLifecycleEngine.reconcile_driver_availability``.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs a cycle at a
  time across multiple API processes.
* Every correction is a conditional write on the driver's current
  availability, so a cycle never overwrites a concurrent change.
"""

from __future__ import annotations

import asyncio
import logging

from dispatch.config import settings
from dispatch.domain.lifecycle import TripLifecycleEngine
from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.locks import DistributedLock, LockNotAcquired
from dispatch.infrastructure.redis_client import get_redis
from dispatch.infrastructure.repositories import (
    SqlDriverRegistry,
    SqlTripStore,
    SqlUnitOfWork,
)

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_reconcile_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Reconciler started (interval=%ds)", settings.reconcile_interval_seconds
    )


async def stop_reconcile_loop() -> None:
    global _task, _stop_event
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
        logger.info("Reconciler stopped")
    _task = None
    _stop_event = None


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run a reconcile cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_reconcile_cycle()
        except Exception:
            logger.exception("Unhandled error in reconcile cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.reconcile_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_reconcile_cycle() -> int:
    """Execute one cycle.  Returns the number of drivers corrected."""
    redis = await get_redis()
    try:
        async with DistributedLock(
            redis, "availability_reconciler", ttl_seconds=60
        ):
            return await _reconcile_once()
    except LockNotAcquired:
        logger.debug("Lock held by another worker – skipping cycle")
        return 0


async def _reconcile_once() -> int:
    try:
        async with async_session_factory() as session:
            engine = TripLifecycleEngine(
                SqlTripStore(session),
                SqlDriverRegistry(session),
                SqlUnitOfWork(session),
            )
            corrected = await engine.reconcile_driver_availability()
    except Exception:
        logger.exception("Error in reconcile cycle")
        return 0

    if corrected:
        logger.info("Reconcile cycle: %d drivers corrected", corrected)
    return corrected
