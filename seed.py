"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 drivers (mix of AVAILABLE, BUSY, OFFLINE)
  - 5 trips covering every lifecycle state
and prints a bearer token for each sample passenger / driver.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from dispatch.api.auth import issue_token
from dispatch.domain.enums import (
    CancelledBy,
    DriverAvailability,
    Role,
    TripStatus,
)
from dispatch.infrastructure.database import async_session_factory, engine
from dispatch.infrastructure.models import DriverModel, TripModel


DRIVERS = [
    {"user_id": "driver-ana", "availability": DriverAvailability.AVAILABLE},
    {"user_id": "driver-bruno", "availability": DriverAvailability.AVAILABLE},
    {"user_id": "driver-carla", "availability": DriverAvailability.BUSY},
    {"user_id": "driver-diego", "availability": DriverAvailability.BUSY},
    {"user_id": "driver-elena", "availability": DriverAvailability.OFFLINE},
    {"user_id": "driver-fabio", "availability": DriverAvailability.AVAILABLE},
]

PASSENGERS = ["passenger-lucia", "passenger-mateo", "passenger-sofia",
              "passenger-tomas", "passenger-valeria", "passenger-ximena"]


def _trips(now: datetime) -> list[dict]:
    def ago(minutes: int) -> datetime:
        return now - timedelta(minutes=minutes)

    return [
        # Waiting for a driver
        {"passenger_id": "passenger-lucia", "status": TripStatus.SEARCHING,
         "created_at": ago(2)},
        # Accepted, not started
        {"passenger_id": "passenger-mateo", "status": TripStatus.ASSIGNED,
         "driver_id": "driver-carla", "created_at": ago(10),
         "accepted_at": ago(8)},
        # On the road
        {"passenger_id": "passenger-sofia", "status": TripStatus.IN_PROGRESS,
         "driver_id": "driver-diego", "created_at": ago(30),
         "accepted_at": ago(28), "started_at": ago(20)},
        # Done
        {"passenger_id": "passenger-tomas", "status": TripStatus.FINISHED,
         "driver_id": "driver-ana", "created_at": ago(120),
         "accepted_at": ago(118), "started_at": ago(110),
         "finished_at": ago(80)},
        # Passenger gave up while searching
        {"passenger_id": "passenger-valeria", "status": TripStatus.CANCELLED,
         "created_at": ago(60), "cancelled_at": ago(55),
         "cancelled_by": CancelledBy.PASSENGER},
    ]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Drivers ───────────────────────────────────────────────────
        for d in DRIVERS:
            session.add(DriverModel(**d))
        await session.flush()
        print(f"  Created {len(DRIVERS)} drivers")

        # ── Trips ─────────────────────────────────────────────────────
        trips = _trips(datetime.now(timezone.utc))
        for t in trips:
            session.add(TripModel(id=uuid.uuid4(), **t))
        await session.flush()
        print(f"  Created {len(trips)} trips")

        await session.commit()

    print("\nSample tokens:")
    for passenger in PASSENGERS:
        print(f"  {passenger}: {issue_token(passenger, [Role.PASSENGER], 24 * 60)}")
    for d in DRIVERS:
        print(f"  {d['user_id']}: {issue_token(d['user_id'], [Role.DRIVER], 24 * 60)}")
    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
