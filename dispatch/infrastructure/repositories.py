"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and implements
one of the ports in ``dispatch.domain.ports``.  ORM rows never leave this
module; callers get domain entities.

* Every read uses ``populate_existing`` because the conditional updates
  below bypass the identity map.
* Driver availability writes run in a SAVEPOINT so a failed best-effort
  release leaves the enclosing transaction usable.
* Any ``SQLAlchemyError`` (or socket error from the driver) surfaces as
  ``StoreError``.
"""

from __future__ import annotations

import functools
import uuid
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DriverModel, TripModel
from dispatch.domain.entities import Driver, Trip
from dispatch.domain.enums import (
    DRIVER_ACTIVE_STATUSES,
    DriverAvailability,
    TripStatus,
)
from dispatch.domain.errors import StoreError
from dispatch.domain.ports import DriverRegistry, TripStore, UnitOfWork


def _store_errors(method):
    @functools.wraps(method)
    async def wrapper(*args, **kwargs):
        try:
            return await method(*args, **kwargs)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreError(f"{method.__qualname__} failed") from exc

    return wrapper


def _holds_active_trip(user_id: str):
    return (
        select(TripModel.id)
        .where(
            TripModel.driver_id == user_id,
            TripModel.status.in_(DRIVER_ACTIVE_STATUSES),
        )
        .exists()
    )


def _to_trip(row: TripModel) -> Trip:
    return Trip(
        id=row.id,
        passenger_id=row.passenger_id,
        driver_id=row.driver_id,
        status=TripStatus(row.status),
        created_at=row.created_at,
        accepted_at=row.accepted_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
        cancelled_at=row.cancelled_at,
        cancelled_by=row.cancelled_by,
    )


def _to_driver(row: DriverModel) -> Driver:
    return Driver(
        user_id=row.user_id,
        availability=DriverAvailability(row.availability),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlTripStore(TripStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_errors
    async def insert(self, trip: Trip) -> Trip:
        row = TripModel(
            id=trip.id,
            passenger_id=trip.passenger_id,
            driver_id=trip.driver_id,
            status=trip.status,
            created_at=trip.created_at,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return _to_trip(row)

    @_store_errors
    async def get_by_id(self, trip_id: uuid.UUID) -> Optional[Trip]:
        row = await self.session.get(TripModel, trip_id, populate_existing=True)
        return _to_trip(row) if row else None

    @_store_errors
    async def find_by_passenger(
        self, passenger_id: str, statuses: Optional[Iterable[TripStatus]] = None
    ) -> list[Trip]:
        query = select(TripModel).where(TripModel.passenger_id == passenger_id)
        if statuses is not None:
            query = query.where(TripModel.status.in_(list(statuses)))
        return await self._fetch(query)

    @_store_errors
    async def find_by_driver(
        self, driver_id: str, statuses: Optional[Iterable[TripStatus]] = None
    ) -> list[Trip]:
        query = select(TripModel).where(TripModel.driver_id == driver_id)
        if statuses is not None:
            query = query.where(TripModel.status.in_(list(statuses)))
        return await self._fetch(query)

    @_store_errors
    async def find_by_status(self, statuses: Iterable[TripStatus]) -> list[Trip]:
        return await self._fetch(
            select(TripModel).where(TripModel.status.in_(list(statuses)))
        )

    @_store_errors
    async def conditional_update(
        self, trip_id: uuid.UUID, expected: TripStatus, **patch
    ) -> Optional[Trip]:
        """UPDATE trips SET ... WHERE id = :id AND status = :expected."""
        result = await self.session.execute(
            update(TripModel)
            .where(TripModel.id == trip_id, TripModel.status == expected)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        row = await self.session.get(TripModel, trip_id, populate_existing=True)
        return _to_trip(row)

    async def _fetch(self, query) -> list[Trip]:
        result = await self.session.execute(
            query.order_by(TripModel.created_at.desc()).execution_options(
                populate_existing=True
            )
        )
        return [_to_trip(row) for row in result.scalars().all()]


class SqlDriverRegistry(DriverRegistry):
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_errors
    async def get_by_user_id(self, user_id: str) -> Optional[Driver]:
        row = await self.session.get(DriverModel, user_id, populate_existing=True)
        return _to_driver(row) if row else None

    @_store_errors
    async def find_available(self, limit: Optional[int] = None) -> list[Driver]:
        query = (
            select(DriverModel)
            .where(DriverModel.availability == DriverAvailability.AVAILABLE)
            .order_by(DriverModel.updated_at)
        )
        if limit is not None:
            query = query.limit(limit)
        return await self._fetch(query)

    @_store_errors
    async def find_by_availability(
        self, availability: DriverAvailability
    ) -> list[Driver]:
        return await self._fetch(
            select(DriverModel).where(DriverModel.availability == availability)
        )

    @_store_errors
    async def create(self, driver: Driver) -> Driver:
        row = DriverModel(user_id=driver.user_id, availability=driver.availability)
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return _to_driver(row)

    @_store_errors
    async def set_availability(
        self,
        user_id: str,
        availability: DriverAvailability,
        expected: Optional[DriverAvailability] = None,
    ) -> bool:
        stmt = (
            update(DriverModel)
            .where(DriverModel.user_id == user_id)
            .values(availability=availability)
            .execution_options(synchronize_session=False)
        )
        if expected is not None:
            stmt = stmt.where(DriverModel.availability == expected)
        return await self._write(stmt)

    @_store_errors
    async def release_if_idle(self, user_id: str) -> bool:
        return await self._write(
            update(DriverModel)
            .where(
                DriverModel.user_id == user_id,
                DriverModel.availability == DriverAvailability.BUSY,
                ~_holds_active_trip(user_id),
            )
            .values(availability=DriverAvailability.AVAILABLE)
            .execution_options(synchronize_session=False)
        )

    @_store_errors
    async def mark_busy_if_engaged(self, user_id: str) -> bool:
        return await self._write(
            update(DriverModel)
            .where(
                DriverModel.user_id == user_id,
                DriverModel.availability != DriverAvailability.BUSY,
                _holds_active_trip(user_id),
            )
            .values(availability=DriverAvailability.BUSY)
            .execution_options(synchronize_session=False)
        )

    async def _write(self, stmt) -> bool:
        async with self.session.begin_nested():
            result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def _fetch(self, query) -> list[Driver]:
        result = await self.session.execute(
            query.execution_options(populate_existing=True)
        )
        return [_to_driver(row) for row in result.scalars().all()]


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_errors
    async def commit(self) -> None:
        await self.session.commit()

    @_store_errors
    async def rollback(self) -> None:
        await self.session.rollback()
