"""
Trip Lifecycle Engine
=====================

Enforces the trip state machine and keeps driver availability consistent
with trip outcomes.

    (none) --request--> SEARCHING --accept--> ASSIGNED --start--> IN_PROGRESS
                            |                    |                   |
                            +------cancel--------+------cancel-------+--> CANCELLED
                                                        IN_PROGRESS --finish--> FINISHED

Concurrency control
-------------------
The engine holds no shared mutable state.  Every transition is a
**conditional update** against the trip store (``UPDATE ... WHERE status =
:expected``); of N callers racing the same trip exactly one sees a row
change, the rest get ``InvalidStateError("trip no longer available")``.
Losers are not retried.

Each mutating operation runs as one unit of work: the trip write and the
dependent driver write commit together or not at all.  ``request_trip`` and
``accept_trip`` are additionally serialised per actor through
``ActorLocks`` so one passenger cannot open two trips and one driver cannot
win two trips by firing requests in parallel.

Driver release after finish / cancel is best-effort: a failure is logged
and the trip outcome stands, unless ``strict_driver_release`` is set, in
which case the whole operation fails with ``InternalError``.
"""

from __future__ import annotations

import functools
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .entities import Driver, Trip
from .enums import (
    CancelledBy,
    DRIVER_ACTIVE_STATUSES,
    DriverAvailability,
    PASSENGER_ACTIVE_STATUSES,
    Role,
    TripStatus,
)
from .errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ServiceUnavailableError,
    StoreError,
)
from .ports import ActorLocks, DriverRegistry, TripStore, UnitOfWork

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _store_failures_are_internal(method):
    """Translate ``StoreError`` into an opaque ``InternalError``."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except StoreError:
            logger.exception("Store failure during %s", method.__name__)
            raise InternalError("internal error") from None

    return wrapper


@dataclass
class TripRequestResult:
    trip: Trip
    # Advisory only; nothing is reserved for this driver.
    suggested_driver: Driver


class TripLifecycleEngine:
    def __init__(
        self,
        trips: TripStore,
        drivers: DriverRegistry,
        uow: Optional[UnitOfWork] = None,
        locks: Optional[ActorLocks] = None,
        *,
        strict_driver_release: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.trips = trips
        self.drivers = drivers
        self.uow = uow
        self.locks = locks
        self.strict_driver_release = strict_driver_release
        self.clock = clock

    # ── Trip operations ───────────────────────────────────────────────

    @_store_failures_are_internal
    async def request_trip(self, passenger_id: str) -> TripRequestResult:
        async with self._serialised(f"passenger:{passenger_id}"), self._transaction():
            active = await self.trips.find_by_passenger(
                passenger_id, PASSENGER_ACTIVE_STATUSES
            )
            if active:
                raise ConflictError("passenger already has an active trip")

            available = await self.drivers.find_available(limit=1)
            if not available:
                raise ServiceUnavailableError("no drivers available")

            trip = await self.trips.insert(
                Trip(passenger_id=passenger_id, created_at=self.clock())
            )

        logger.info("Trip %s requested by passenger %s", trip.id, passenger_id)
        return TripRequestResult(trip=trip, suggested_driver=available[0])

    @_store_failures_are_internal
    async def accept_trip(self, driver_id: str, trip_id: uuid.UUID) -> Trip:
        async with self._serialised(f"driver:{driver_id}"), self._transaction():
            driver = await self.drivers.get_by_user_id(driver_id)
            if driver is None:
                raise NotFoundError("driver not registered")
            if driver.availability != DriverAvailability.AVAILABLE:
                raise InvalidStateError(
                    "driver is not available "
                    f"(current state: {driver.availability.value})"
                )

            # Availability can be stale; trip state is authoritative.
            if await self.trips.find_by_driver(driver_id, DRIVER_ACTIVE_STATUSES):
                raise ConflictError("driver already has an active trip")

            trip = await self._get_trip(trip_id)
            if trip.status != TripStatus.SEARCHING:
                raise InvalidStateError("trip must be SEARCHING to be accepted")

            updated = await self.trips.conditional_update(
                trip_id,
                TripStatus.SEARCHING,
                status=TripStatus.ASSIGNED,
                driver_id=driver_id,
                accepted_at=self.clock(),
            )
            if updated is None:
                logger.info(
                    "Driver %s lost the race for trip %s", driver_id, trip_id
                )
                raise InvalidStateError("trip no longer available")

            claimed = await self.drivers.set_availability(
                driver_id,
                DriverAvailability.BUSY,
                expected=DriverAvailability.AVAILABLE,
            )
            if not claimed:
                raise ConflictError("driver availability changed during acceptance")

        logger.info("Trip %s accepted by driver %s", trip_id, driver_id)
        return updated

    @_store_failures_are_internal
    async def start_trip(self, driver_id: str, trip_id: uuid.UUID) -> Trip:
        async with self._transaction():
            trip = await self._get_trip(trip_id)
            self._ensure_assigned_driver(trip, driver_id, "start")
            updated = await self._advance(
                trip, TripStatus.IN_PROGRESS, started_at=self.clock()
            )

        logger.info("Trip %s started by driver %s", trip_id, driver_id)
        return updated

    @_store_failures_are_internal
    async def finish_trip(self, driver_id: str, trip_id: uuid.UUID) -> Trip:
        async with self._transaction():
            trip = await self._get_trip(trip_id)
            self._ensure_assigned_driver(trip, driver_id, "finish")
            updated = await self._advance(
                trip, TripStatus.FINISHED, finished_at=self.clock()
            )
            await self._release_driver(driver_id, trip_id)

        logger.info("Trip %s finished by driver %s", trip_id, driver_id)
        return updated

    @_store_failures_are_internal
    async def cancel_trip(
        self, actor_id: str, roles: Iterable[str], trip_id: uuid.UUID
    ) -> Trip:
        roles = {str(getattr(r, "value", r)) for r in roles}
        async with self._transaction():
            trip = await self._get_trip(trip_id)
            if trip.status == TripStatus.FINISHED:
                raise InvalidStateError("trip already finished")
            if trip.status == TripStatus.CANCELLED:
                raise InvalidStateError("trip already cancelled")

            is_passenger = (
                Role.PASSENGER.value in roles and trip.passenger_id == actor_id
            )
            is_driver = (
                Role.DRIVER.value in roles
                and trip.driver_id is not None
                and trip.driver_id == actor_id
            )
            if not (is_passenger or is_driver):
                raise ForbiddenError("not allowed to cancel this trip")
            if trip.status == TripStatus.IN_PROGRESS and not is_driver:
                raise ForbiddenError("only the driver can cancel a trip in progress")

            if is_passenger and trip.status != TripStatus.IN_PROGRESS:
                cancelled_by = CancelledBy.PASSENGER
            else:
                cancelled_by = CancelledBy.DRIVER

            updated = await self._advance(
                trip,
                TripStatus.CANCELLED,
                cancelled_at=self.clock(),
                cancelled_by=cancelled_by,
            )
            if trip.driver_id is not None:
                await self._release_driver(trip.driver_id, trip_id)

        logger.info(
            "Trip %s cancelled by %s %s", trip_id, cancelled_by.value, actor_id
        )
        return updated

    # ── Queries ───────────────────────────────────────────────────────

    @_store_failures_are_internal
    async def get_trip(self, trip_id: uuid.UUID) -> Trip:
        return await self._get_trip(trip_id)

    @_store_failures_are_internal
    async def list_passenger_trips(self, passenger_id: str) -> list[Trip]:
        return await self.trips.find_by_passenger(passenger_id)

    @_store_failures_are_internal
    async def list_driver_trips(self, driver_id: str) -> list[Trip]:
        return await self.trips.find_by_driver(driver_id)

    # ── Driver registry operations ────────────────────────────────────

    @_store_failures_are_internal
    async def register_driver(self, user_id: str) -> Driver:
        async with self._serialised(f"driver:{user_id}"), self._transaction():
            if await self.drivers.get_by_user_id(user_id) is not None:
                raise ConflictError("driver already registered")
            driver = await self.drivers.create(
                Driver(user_id=user_id, availability=DriverAvailability.AVAILABLE)
            )

        logger.info("Driver %s registered", user_id)
        return driver

    @_store_failures_are_internal
    async def update_driver_status(
        self, user_id: str, availability: DriverAvailability
    ) -> Driver:
        """Manual availability change; creates the driver record if missing.

        ``BUSY`` is owned by the trip lifecycle: it cannot be set without an
        active trip, and cannot be left while one is held.
        """
        async with self._serialised(f"driver:{user_id}"), self._transaction():
            engaged = await self.trips.find_by_driver(user_id, DRIVER_ACTIVE_STATUSES)
            if engaged and availability != DriverAvailability.BUSY:
                raise ConflictError("driver has an active trip")
            if not engaged and availability == DriverAvailability.BUSY:
                raise InvalidStateError("BUSY is only set by accepting a trip")

            driver = await self.drivers.get_by_user_id(user_id)
            if driver is None:
                driver = await self.drivers.create(
                    Driver(user_id=user_id, availability=availability)
                )
            elif driver.availability != availability:
                await self.drivers.set_availability(user_id, availability)
                driver = await self.drivers.get_by_user_id(user_id)

        logger.info("Driver %s is now %s", user_id, availability.value)
        return driver

    @_store_failures_are_internal
    async def reconcile_driver_availability(self) -> int:
        """Repair drivers whose availability disagrees with trip state.

        Busy without an active trip -> Available; anything else while holding
        an active trip -> Busy.  The listings only nominate candidates: each
        correction re-checks the driver's trips in the same atomic write, so
        an accept or finish landing mid-pass is never overwritten.  Returns
        the number of drivers corrected.
        """
        corrected = 0
        async with self._transaction():
            for driver in await self.drivers.find_by_availability(
                DriverAvailability.BUSY
            ):
                if await self.drivers.release_if_idle(driver.user_id):
                    logger.warning(
                        "Driver %s was BUSY without an active trip; released",
                        driver.user_id,
                    )
                    corrected += 1

            active = await self.trips.find_by_status(DRIVER_ACTIVE_STATUSES)
            engaged = {t.driver_id for t in active if t.driver_id is not None}
            for driver_id in sorted(engaged):
                if await self.drivers.mark_busy_if_engaged(driver_id):
                    logger.warning(
                        "Driver %s was not BUSY while holding a trip; marked BUSY",
                        driver_id,
                    )
                    corrected += 1

        return corrected

    # ── Internals ─────────────────────────────────────────────────────

    async def _get_trip(self, trip_id: uuid.UUID) -> Trip:
        trip = await self.trips.get_by_id(trip_id)
        if trip is None:
            raise NotFoundError("trip not found")
        return trip

    @staticmethod
    def _ensure_assigned_driver(trip: Trip, driver_id: str, action: str) -> None:
        # No driver yet means the transition is illegal for everyone.
        if trip.driver_id is None:
            raise InvalidStateError(
                f"cannot {action} a trip in state {trip.status.value}"
            )
        if trip.driver_id != driver_id:
            raise ForbiddenError(f"only the assigned driver can {action} this trip")

    async def _advance(self, trip: Trip, new_status: TripStatus, **patch) -> Trip:
        if not trip.can_transition_to(new_status):
            raise InvalidStateError(
                f"cannot move trip from {trip.status.value} to {new_status.value}"
            )
        updated = await self.trips.conditional_update(
            trip.id, trip.status, status=new_status, **patch
        )
        if updated is None:
            raise InvalidStateError("trip state changed concurrently")
        return updated

    async def _release_driver(self, driver_id: str, trip_id: uuid.UUID) -> None:
        try:
            await self.drivers.set_availability(
                driver_id, DriverAvailability.AVAILABLE
            )
        except StoreError:
            if self.strict_driver_release:
                raise
            logger.error(
                "Could not release driver %s after trip %s",
                driver_id,
                trip_id,
                exc_info=True,
            )

    @asynccontextmanager
    async def _transaction(self):
        if self.uow is None:
            yield
            return
        # A failed commit is rolled back too.
        try:
            yield
            await self.uow.commit()
        except Exception:
            await self.uow.rollback()
            raise

    @asynccontextmanager
    async def _serialised(self, key: str):
        if self.locks is None:
            yield
            return
        async with self.locks.hold(key):
            yield
