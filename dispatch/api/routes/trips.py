"""
Trip endpoints
==============

POST /api/v1/trips/request     -- passenger opens a trip (201, SEARCHING)
POST /api/v1/trips/accept      -- driver claims a SEARCHING trip
POST /api/v1/trips/start       -- assigned driver starts the trip
POST /api/v1/trips/finish      -- assigned driver finishes the trip
POST /api/v1/trips/cancel      -- passenger or assigned driver cancels
GET  /api/v1/trips/passenger   -- caller's trips as passenger
GET  /api/v1/trips/driver      -- caller's trips as driver
GET  /api/v1/trips/{trip_id}   -- one trip

Failures are raised as ``DispatchError`` and rendered by the handler
registered in ``dispatch.api.app``.
"""

import uuid

from fastapi import APIRouter, Depends, Request

from dispatch.api.auth import Actor, get_current_actor, require_roles
from dispatch.api.dependencies import get_engine
from dispatch.api.middleware import limiter
from dispatch.api.schemas import (
    ErrorResponse,
    TripActionRequest,
    TripRequestResponse,
    TripResponse,
)
from dispatch.config import settings
from dispatch.domain.enums import Role
from dispatch.domain.lifecycle import TripLifecycleEngine

router = APIRouter(prefix="/trips", tags=["trips"])

_errors = {
    code: {"model": ErrorResponse} for code in (400, 403, 404, 409, 500, 503)
}


@router.post(
    "/request",
    status_code=201,
    response_model=TripRequestResponse,
    summary="Request a trip",
    description=(
        "Creates a SEARCHING trip if the passenger has no active trip and at "
        "least one driver is available.  The suggested driver is advisory."
    ),
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def request_trip(
    request: Request,
    actor: Actor = Depends(require_roles(Role.PASSENGER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.request_trip(actor.actor_id)


@router.post(
    "/accept",
    response_model=TripResponse,
    summary="Accept a searching trip",
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def accept_trip(
    request: Request,
    body: TripActionRequest,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.accept_trip(actor.actor_id, body.trip_id)


@router.post(
    "/start",
    response_model=TripResponse,
    summary="Start an assigned trip",
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def start_trip(
    request: Request,
    body: TripActionRequest,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.start_trip(actor.actor_id, body.trip_id)


@router.post(
    "/finish",
    response_model=TripResponse,
    summary="Finish a trip in progress",
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def finish_trip(
    request: Request,
    body: TripActionRequest,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.finish_trip(actor.actor_id, body.trip_id)


@router.post(
    "/cancel",
    response_model=TripResponse,
    summary="Cancel a trip",
    description=(
        "The passenger may cancel while SEARCHING or ASSIGNED; the assigned "
        "driver while ASSIGNED or IN_PROGRESS.  The driver, if any, is made "
        "available again."
    ),
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def cancel_trip(
    request: Request,
    body: TripActionRequest,
    actor: Actor = Depends(require_roles(Role.PASSENGER, Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.cancel_trip(actor.actor_id, actor.roles, body.trip_id)


@router.get(
    "/passenger",
    response_model=list[TripResponse],
    summary="List the caller's trips as passenger",
)
@limiter.limit(settings.rate_limit)
async def list_passenger_trips(
    request: Request,
    actor: Actor = Depends(require_roles(Role.PASSENGER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.list_passenger_trips(actor.actor_id)


@router.get(
    "/driver",
    response_model=list[TripResponse],
    summary="List the caller's trips as driver",
)
@limiter.limit(settings.rate_limit)
async def list_driver_trips(
    request: Request,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.list_driver_trips(actor.actor_id)


@router.get(
    "/{trip_id}",
    response_model=TripResponse,
    summary="Get a trip",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.get_trip(trip_id)
