"""
Collaborator contracts consumed by the lifecycle engine.

The engine never talks to a database directly; it is handed objects that
satisfy these interfaces.  Implementations raise ``StoreError`` on
infrastructure failure and nothing else.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import AsyncContextManager, Iterable, Optional

from .entities import Driver, Trip
from .enums import DriverAvailability, TripStatus


class TripStore(ABC):
    @abstractmethod
    async def insert(self, trip: Trip) -> Trip: ...

    @abstractmethod
    async def get_by_id(self, trip_id: uuid.UUID) -> Optional[Trip]: ...

    @abstractmethod
    async def find_by_passenger(
        self, passenger_id: str, statuses: Optional[Iterable[TripStatus]] = None
    ) -> list[Trip]:
        """Trips owned by *passenger_id*, newest first."""

    @abstractmethod
    async def find_by_driver(
        self, driver_id: str, statuses: Optional[Iterable[TripStatus]] = None
    ) -> list[Trip]:
        """Trips assigned to *driver_id*, newest first."""

    @abstractmethod
    async def find_by_status(self, statuses: Iterable[TripStatus]) -> list[Trip]: ...

    @abstractmethod
    async def conditional_update(
        self, trip_id: uuid.UUID, expected: TripStatus, **patch
    ) -> Optional[Trip]:
        """Apply *patch* only if the trip is still in *expected*.

        Check and write are one atomic operation.  Returns the updated trip,
        or ``None`` when the predicate no longer held (zero rows affected).
        """


class DriverRegistry(ABC):
    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Optional[Driver]: ...

    @abstractmethod
    async def find_available(self, limit: Optional[int] = None) -> list[Driver]: ...

    @abstractmethod
    async def find_by_availability(
        self, availability: DriverAvailability
    ) -> list[Driver]: ...

    @abstractmethod
    async def create(self, driver: Driver) -> Driver: ...

    @abstractmethod
    async def set_availability(
        self,
        user_id: str,
        availability: DriverAvailability,
        expected: Optional[DriverAvailability] = None,
    ) -> bool:
        """Set the driver's availability.

        With *expected* the write is conditional on the current value.
        Returns ``False`` when no row was changed.
        """

    @abstractmethod
    async def release_if_idle(self, user_id: str) -> bool:
        """BUSY -> AVAILABLE, only if the driver holds no active trip.

        The trip check and the write are one atomic operation.
        """

    @abstractmethod
    async def mark_busy_if_engaged(self, user_id: str) -> bool:
        """Any other state -> BUSY, only if the driver holds an active trip.

        The trip check and the write are one atomic operation.
        """


class UnitOfWork(ABC):
    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...


class ActorLocks(ABC):
    @abstractmethod
    def hold(self, key: str) -> AsyncContextManager:
        """Exclusive, non-blocking hold on *key*.

        Entering raises ``ConflictError`` when another holder owns the key.
        """
