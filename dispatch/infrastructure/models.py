"""
SQLAlchemy ORM models.

Tables
------
* ``trips``    -- one row per trip, moved forward by conditional updates
* ``drivers``  -- one row per driver; only ``availability`` mutates

Indexes
-------
* **B-Tree** on ``trips.status``, ``trips.passenger_id``, ``trips.driver_id``
  for the active-trip look-ups done on every request / accept, and on
  ``drivers.availability`` for the matching precondition.
"""

import uuid

from sqlalchemy import Column, DateTime, Enum, Index, String, Uuid, func

from .database import Base
from dispatch.domain.enums import CancelledBy, DriverAvailability, TripStatus


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    passenger_id = Column(String(64), nullable=False)
    # Write-once: set by the SEARCHING -> ASSIGNED conditional update
    driver_id = Column(String(64), nullable=True)
    status = Column(
        Enum(TripStatus, name="tripstatus"),
        default=TripStatus.SEARCHING,
        nullable=False,
    )

    accepted_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(
        Enum(
            CancelledBy,
            name="cancelledby",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_trips_status", "status"),
        Index("idx_trips_passenger", "passenger_id"),
        Index("idx_trips_driver", "driver_id"),
    )


class DriverModel(Base):
    __tablename__ = "drivers"

    user_id = Column(String(64), primary_key=True)
    availability = Column(
        Enum(DriverAvailability, name="driveravailability"),
        default=DriverAvailability.AVAILABLE,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_drivers_availability", "availability"),)
