"""
Engine tests against the in-memory ports.

Covers every operation's preconditions (in order), the transition table,
driver availability side effects, and the best-effort / strict release
policies.
"""

from __future__ import annotations

import logging
import random
import uuid

import pytest

from dispatch.domain.entities import Trip
from dispatch.domain.enums import (
    CancelledBy,
    DRIVER_ACTIVE_STATUSES,
    DriverAvailability,
    TripStatus,
)
from dispatch.domain.errors import (
    ConflictError,
    DispatchError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ServiceUnavailableError,
)
from dispatch.domain.lifecycle import TripLifecycleEngine
from tests.fakes import InMemoryDriverRegistry, TickingClock

PASSENGER = ["passenger"]
DRIVER = ["driver"]


@pytest.fixture(autouse=True)
def drivers(driver_registry):
    driver_registry.add("d1")
    driver_registry.add("d2")
    return driver_registry


async def trip_in(engine, state: TripStatus, passenger="p1", driver="d1") -> Trip:
    """Drive a fresh trip through the engine up to *state*."""
    trip = (await engine.request_trip(passenger)).trip
    if state == TripStatus.SEARCHING:
        return trip
    if state == TripStatus.CANCELLED:
        return await engine.cancel_trip(passenger, PASSENGER, trip.id)
    trip = await engine.accept_trip(driver, trip.id)
    if state == TripStatus.ASSIGNED:
        return trip
    trip = await engine.start_trip(driver, trip.id)
    if state == TripStatus.IN_PROGRESS:
        return trip
    return await engine.finish_trip(driver, trip.id)


def assert_consistent(trip_store, driver_registry):
    """Trip / driver invariants that must hold after every operation."""
    for trip in trip_store.rows.values():
        assert trip.has_consistent_driver(), trip
    for driver in driver_registry.rows.values():
        active = [
            t
            for t in trip_store.rows.values()
            if t.driver_id == driver.user_id and t.status in DRIVER_ACTIVE_STATUSES
        ]
        assert len(active) <= 1
        busy = driver.availability == DriverAvailability.BUSY
        assert busy == (len(active) == 1), (driver, active)


# ── request_trip ──────────────────────────────────────────────────────


class TestRequestTrip:
    @pytest.mark.asyncio
    async def test_creates_searching_trip_without_driver(self, engine, drivers, uow):
        result = await engine.request_trip("p1")

        assert result.trip.status == TripStatus.SEARCHING
        assert result.trip.driver_id is None
        assert result.trip.passenger_id == "p1"
        assert result.trip.created_at is not None
        assert result.suggested_driver.user_id in {"d1", "d2"}
        assert uow.commits == 1

    @pytest.mark.asyncio
    async def test_suggestion_reserves_nobody(self, engine, drivers):
        await engine.request_trip("p1")
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE
        assert drivers.availability_of("d2") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state", [TripStatus.SEARCHING, TripStatus.ASSIGNED, TripStatus.IN_PROGRESS]
    )
    async def test_conflict_while_passenger_has_active_trip(self, engine, state):
        await trip_in(engine, state)
        with pytest.raises(ConflictError):
            await engine.request_trip("p1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [TripStatus.FINISHED, TripStatus.CANCELLED])
    async def test_new_trip_allowed_after_terminal(self, engine, state):
        await trip_in(engine, state)
        result = await engine.request_trip("p1")
        assert result.trip.status == TripStatus.SEARCHING

    @pytest.mark.asyncio
    async def test_unavailable_without_available_drivers(
        self, engine, drivers, trip_store, uow
    ):
        drivers.add("d1", DriverAvailability.OFFLINE)
        drivers.add("d2", DriverAvailability.BUSY)

        with pytest.raises(ServiceUnavailableError):
            await engine.request_trip("p1")
        assert trip_store.rows == {}
        assert uow.rollbacks == 1

    @pytest.mark.asyncio
    async def test_failed_commit_is_rolled_back(self, engine, uow):
        uow.fail_on.add("commit")

        with pytest.raises(InternalError):
            await engine.request_trip("p1")
        assert uow.commits == 0
        assert uow.rollbacks == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_internal(self, engine, trip_store):
        trip_store.fail_on.add("insert")
        with pytest.raises(InternalError) as exc:
            await engine.request_trip("p1")
        assert exc.value.message == "internal error"


# ── accept_trip ───────────────────────────────────────────────────────


class TestAcceptTrip:
    @pytest.mark.asyncio
    async def test_assigns_driver_and_marks_busy(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.SEARCHING)

        accepted = await engine.accept_trip("d1", trip.id)

        assert accepted.status == TripStatus.ASSIGNED
        assert accepted.driver_id == "d1"
        assert accepted.accepted_at is not None
        assert drivers.availability_of("d1") == DriverAvailability.BUSY

    @pytest.mark.asyncio
    async def test_unknown_driver(self, engine):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        with pytest.raises(NotFoundError):
            await engine.accept_trip("ghost", trip.id)

    @pytest.mark.asyncio
    async def test_unavailable_driver_reports_actual_state(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        drivers.add("d2", DriverAvailability.OFFLINE)

        with pytest.raises(InvalidStateError, match="OFFLINE"):
            await engine.accept_trip("d2", trip.id)

    @pytest.mark.asyncio
    async def test_stale_availability_is_caught_by_trip_state(
        self, engine, drivers
    ):
        await trip_in(engine, TripStatus.ASSIGNED, passenger="p1", driver="d1")
        other = await trip_in(engine, TripStatus.SEARCHING, passenger="p2")
        # Registry wrongly says d1 is free
        drivers.add("d1", DriverAvailability.AVAILABLE)

        with pytest.raises(ConflictError):
            await engine.accept_trip("d1", other.id)

    @pytest.mark.asyncio
    async def test_unknown_trip(self, engine):
        with pytest.raises(NotFoundError):
            await engine.accept_trip("d1", uuid.uuid4())

    @pytest.mark.asyncio
    async def test_driver_checked_before_trip(self, engine):
        with pytest.raises(NotFoundError, match="driver"):
            await engine.accept_trip("ghost", uuid.uuid4())

    @pytest.mark.asyncio
    async def test_trip_already_assigned(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED, driver="d1")
        with pytest.raises(InvalidStateError):
            await engine.accept_trip("d2", trip.id)

    @pytest.mark.asyncio
    async def test_busy_flip_failure_is_internal_and_rolls_back(
        self, engine, drivers, uow
    ):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        drivers.fail_on.add("set_availability")

        with pytest.raises(InternalError):
            await engine.accept_trip("d1", trip.id)
        assert uow.rollbacks == 1

    @pytest.mark.asyncio
    async def test_lost_driver_claim_is_conflict(self, trip_store, uow):
        class _ClaimLost(InMemoryDriverRegistry):
            async def set_availability(self, user_id, availability, expected=None):
                if availability == DriverAvailability.BUSY:
                    return False
                return await super().set_availability(user_id, availability, expected)

        registry = _ClaimLost()
        registry.add("d1")
        engine = TripLifecycleEngine(trip_store, registry, uow, clock=TickingClock())
        trip = (await engine.request_trip("p1")).trip

        with pytest.raises(ConflictError):
            await engine.accept_trip("d1", trip.id)
        assert uow.rollbacks == 1


# ── start_trip / finish_trip ──────────────────────────────────────────


class TestStartTrip:
    @pytest.mark.asyncio
    async def test_assigned_driver_starts(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED)
        started = await engine.start_trip("d1", trip.id)
        assert started.status == TripStatus.IN_PROGRESS
        assert started.started_at is not None

    @pytest.mark.asyncio
    async def test_other_driver_is_forbidden(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED, driver="d1")
        with pytest.raises(ForbiddenError):
            await engine.start_trip("d2", trip.id)

    @pytest.mark.asyncio
    async def test_searching_trip_cannot_start(self, engine):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        with pytest.raises(InvalidStateError):
            await engine.start_trip("d1", trip.id)

    @pytest.mark.asyncio
    async def test_unknown_trip(self, engine):
        with pytest.raises(NotFoundError):
            await engine.start_trip("d1", uuid.uuid4())


class TestFinishTrip:
    @pytest.mark.asyncio
    async def test_finish_releases_driver(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.IN_PROGRESS)

        finished = await engine.finish_trip("d1", trip.id)

        assert finished.status == TripStatus.FINISHED
        assert finished.finished_at is not None
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_other_driver_is_forbidden(self, engine):
        trip = await trip_in(engine, TripStatus.IN_PROGRESS, driver="d1")
        with pytest.raises(ForbiddenError):
            await engine.finish_trip("d2", trip.id)

    @pytest.mark.asyncio
    async def test_assigned_trip_cannot_finish(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED)
        with pytest.raises(InvalidStateError):
            await engine.finish_trip("d1", trip.id)

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(
        self, engine, drivers, uow, caplog
    ):
        trip = await trip_in(engine, TripStatus.IN_PROGRESS)
        drivers.fail_on.add("set_availability")
        commits = uow.commits

        with caplog.at_level(logging.ERROR, logger="dispatch.domain.lifecycle"):
            finished = await engine.finish_trip("d1", trip.id)

        assert finished.status == TripStatus.FINISHED
        assert drivers.availability_of("d1") == DriverAvailability.BUSY
        assert uow.commits == commits + 1
        assert "Could not release driver d1" in caplog.text

    @pytest.mark.asyncio
    async def test_strict_release_fails_the_operation(
        self, trip_store, drivers, uow
    ):
        engine = TripLifecycleEngine(
            trip_store, drivers, uow, strict_driver_release=True, clock=TickingClock()
        )
        trip = await trip_in(engine, TripStatus.IN_PROGRESS)
        drivers.fail_on.add("set_availability")

        with pytest.raises(InternalError):
            await engine.finish_trip("d1", trip.id)
        assert uow.rollbacks == 1


# ── cancel_trip ───────────────────────────────────────────────────────


class TestCancelTrip:
    @pytest.mark.asyncio
    async def test_passenger_cancels_searching(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.SEARCHING)

        cancelled = await engine.cancel_trip("p1", PASSENGER, trip.id)

        assert cancelled.status == TripStatus.CANCELLED
        assert cancelled.cancelled_by == CancelledBy.PASSENGER
        assert cancelled.cancelled_at is not None
        assert cancelled.driver_id is None

    @pytest.mark.asyncio
    async def test_passenger_cancels_assigned_and_frees_driver(
        self, engine, drivers
    ):
        trip = await trip_in(engine, TripStatus.ASSIGNED)

        cancelled = await engine.cancel_trip("p1", PASSENGER, trip.id)

        assert cancelled.cancelled_by == CancelledBy.PASSENGER
        assert cancelled.driver_id == "d1"
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_driver_cancels_assigned(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.ASSIGNED)
        cancelled = await engine.cancel_trip("d1", DRIVER, trip.id)
        assert cancelled.cancelled_by == CancelledBy.DRIVER
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_in_progress_passenger_forbidden_driver_allowed(
        self, engine, drivers
    ):
        trip = await trip_in(engine, TripStatus.IN_PROGRESS)

        with pytest.raises(ForbiddenError, match="only the driver"):
            await engine.cancel_trip("p1", PASSENGER, trip.id)

        cancelled = await engine.cancel_trip("d1", DRIVER, trip.id)
        assert cancelled.status == TripStatus.CANCELLED
        assert cancelled.cancelled_by == CancelledBy.DRIVER
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_finished_trip(self, engine):
        trip = await trip_in(engine, TripStatus.FINISHED)
        for actor, roles in (("p1", PASSENGER), ("d1", DRIVER)):
            with pytest.raises(InvalidStateError, match="already finished"):
                await engine.cancel_trip(actor, roles, trip.id)

    @pytest.mark.asyncio
    async def test_cancelled_trip(self, engine):
        trip = await trip_in(engine, TripStatus.CANCELLED)
        with pytest.raises(InvalidStateError, match="already cancelled"):
            await engine.cancel_trip("p1", PASSENGER, trip.id)

    @pytest.mark.asyncio
    async def test_stranger_is_forbidden(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED, driver="d1")
        with pytest.raises(ForbiddenError):
            await engine.cancel_trip("p2", PASSENGER, trip.id)
        with pytest.raises(ForbiddenError):
            await engine.cancel_trip("d2", DRIVER, trip.id)

    @pytest.mark.asyncio
    async def test_identity_without_matching_role_is_forbidden(self, engine):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        with pytest.raises(ForbiddenError):
            await engine.cancel_trip("p1", DRIVER, trip.id)

    @pytest.mark.asyncio
    async def test_driver_cannot_cancel_searching(self, engine):
        trip = await trip_in(engine, TripStatus.SEARCHING)
        with pytest.raises(ForbiddenError):
            await engine.cancel_trip("d1", DRIVER, trip.id)

    @pytest.mark.asyncio
    async def test_release_failure_does_not_fail_cancel(self, engine, drivers):
        trip = await trip_in(engine, TripStatus.ASSIGNED)
        drivers.fail_on.add("set_availability")

        cancelled = await engine.cancel_trip("p1", PASSENGER, trip.id)

        assert cancelled.status == TripStatus.CANCELLED
        assert drivers.availability_of("d1") == DriverAvailability.BUSY

    @pytest.mark.asyncio
    async def test_unknown_trip(self, engine):
        with pytest.raises(NotFoundError):
            await engine.cancel_trip("p1", PASSENGER, uuid.uuid4())


# ── Queries ───────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_trip(self, engine):
        trip = await trip_in(engine, TripStatus.ASSIGNED)
        assert (await engine.get_trip(trip.id)).driver_id == "d1"
        with pytest.raises(NotFoundError, match="trip not found"):
            await engine.get_trip(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_lists_are_newest_first(self, engine):
        first = await trip_in(engine, TripStatus.FINISHED)
        second = await trip_in(engine, TripStatus.ASSIGNED)
        await trip_in(engine, TripStatus.SEARCHING, passenger="p2")

        mine = await engine.list_passenger_trips("p1")
        driven = await engine.list_driver_trips("d1")

        assert [t.id for t in mine] == [second.id, first.id]
        assert [t.id for t in driven] == [second.id, first.id]
        assert await engine.list_driver_trips("d2") == []


# ── Driver registry operations ────────────────────────────────────────


class TestDriverOperations:
    @pytest.mark.asyncio
    async def test_register(self, engine, drivers):
        driver = await engine.register_driver("d9")
        assert driver.availability == DriverAvailability.AVAILABLE
        assert drivers.availability_of("d9") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_register_twice(self, engine):
        with pytest.raises(ConflictError, match="already registered"):
            await engine.register_driver("d1")

    @pytest.mark.asyncio
    async def test_status_creates_missing_record(self, engine, drivers):
        driver = await engine.update_driver_status("d9", DriverAvailability.OFFLINE)
        assert driver.user_id == "d9"
        assert drivers.availability_of("d9") == DriverAvailability.OFFLINE

    @pytest.mark.asyncio
    async def test_offline_driver_is_not_suggested(self, engine):
        await engine.update_driver_status("d1", DriverAvailability.OFFLINE)
        await engine.update_driver_status("d2", DriverAvailability.OFFLINE)
        with pytest.raises(ServiceUnavailableError):
            await engine.request_trip("p1")

        await engine.update_driver_status("d2", DriverAvailability.AVAILABLE)
        result = await engine.request_trip("p1")
        assert result.suggested_driver.user_id == "d2"

    @pytest.mark.asyncio
    async def test_busy_cannot_be_set_by_hand(self, engine, drivers):
        with pytest.raises(InvalidStateError):
            await engine.update_driver_status("d1", DriverAvailability.BUSY)
        assert drivers.availability_of("d1") == DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_engaged_driver_cannot_go_offline(
        self, engine, trip_store, drivers
    ):
        await trip_in(engine, TripStatus.IN_PROGRESS)
        with pytest.raises(ConflictError, match="active trip"):
            await engine.update_driver_status("d1", DriverAvailability.OFFLINE)
        assert drivers.availability_of("d1") == DriverAvailability.BUSY
        assert_consistent(trip_store, drivers)


# ── Transition table ──────────────────────────────────────────────────

LEGAL = {
    (TripStatus.SEARCHING, "accept"),
    (TripStatus.ASSIGNED, "start"),
    (TripStatus.IN_PROGRESS, "finish"),
}


@pytest.mark.asyncio
@pytest.mark.parametrize("state", list(TripStatus))
@pytest.mark.parametrize("op", ["accept", "start", "finish"])
async def test_transition_table_is_enforced(engine, state, op):
    trip = await trip_in(engine, state, driver="d1")
    # accept is attempted by the free driver, start/finish by the recorded one
    call = {
        "accept": lambda: engine.accept_trip("d2", trip.id),
        "start": lambda: engine.start_trip("d1", trip.id),
        "finish": lambda: engine.finish_trip("d1", trip.id),
    }[op]

    if (state, op) in LEGAL:
        assert isinstance(await call(), Trip)
    else:
        with pytest.raises(InvalidStateError):
            await call()


# ── Randomised invariant check ────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(12))
async def test_invariants_hold_under_random_operations(
    engine, trip_store, drivers, seed
):
    rng = random.Random(seed)
    drivers.add("d3")
    passengers = ["p1", "p2", "p3"]
    driver_ids = ["d1", "d2", "d3"]

    for _ in range(60):
        trip_ids = list(trip_store.rows) or [uuid.uuid4()]
        trip_id = rng.choice(trip_ids)
        op = rng.choice(["request", "accept", "start", "finish", "cancel"])
        try:
            if op == "request":
                await engine.request_trip(rng.choice(passengers))
            elif op == "accept":
                await engine.accept_trip(rng.choice(driver_ids), trip_id)
            elif op == "start":
                await engine.start_trip(rng.choice(driver_ids), trip_id)
            elif op == "finish":
                await engine.finish_trip(rng.choice(driver_ids), trip_id)
            else:
                actor, roles = rng.choice(
                    [(p, PASSENGER) for p in passengers]
                    + [(d, DRIVER) for d in driver_ids]
                )
                await engine.cancel_trip(actor, roles, trip_id)
        except DispatchError as exc:
            assert not isinstance(exc, InternalError)
        assert_consistent(trip_store, drivers)
