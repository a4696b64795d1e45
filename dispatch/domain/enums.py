"""Domain enumerations and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    SEARCHING = "SEARCHING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"


# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.SEARCHING: {TripStatus.ASSIGNED, TripStatus.CANCELLED},
    TripStatus.ASSIGNED: {TripStatus.IN_PROGRESS, TripStatus.CANCELLED},
    TripStatus.IN_PROGRESS: {TripStatus.FINISHED, TripStatus.CANCELLED},
    TripStatus.FINISHED: set(),
    TripStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({TripStatus.FINISHED, TripStatus.CANCELLED})

# A passenger may hold at most one trip in these states
PASSENGER_ACTIVE_STATUSES = (
    TripStatus.SEARCHING,
    TripStatus.ASSIGNED,
    TripStatus.IN_PROGRESS,
)

# A driver is Busy exactly while holding one trip in these states
DRIVER_ACTIVE_STATUSES = (TripStatus.ASSIGNED, TripStatus.IN_PROGRESS)


class DriverAvailability(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class CancelledBy(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"


class Role(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
