"""
Domain entities.

``Trip`` carries the lifecycle rules that only depend on the record itself:
legal transitions (State Pattern over ``TRIP_TRANSITIONS``) and the
driver-assignment invariant.  Rules that need the stores live in
``lifecycle.TripLifecycleEngine``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .enums import (
    CancelledBy,
    DriverAvailability,
    TERMINAL_STATUSES,
    TRIP_TRANSITIONS,
    TripStatus,
)


@dataclass
class Trip:
    passenger_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    driver_id: Optional[str] = None
    status: TripStatus = TripStatus.SEARCHING
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[CancelledBy] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: TripStatus) -> bool:
        return new_status in TRIP_TRANSITIONS.get(self.status, set())

    def has_consistent_driver(self) -> bool:
        """A searching trip never has a driver; assigned-or-later always does.

        A cancelled trip may or may not have one, depending on whether it was
        accepted before cancellation.
        """
        if self.status == TripStatus.SEARCHING:
            return self.driver_id is None
        if self.status == TripStatus.CANCELLED:
            return (self.driver_id is None) == (self.accepted_at is None)
        return self.driver_id is not None


@dataclass
class Driver:
    user_id: str
    availability: DriverAvailability = DriverAvailability.AVAILABLE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
