"""
Driver endpoints
================

POST /api/v1/drivers/register -- create the caller's driver record (AVAILABLE)
POST /api/v1/drivers/status   -- set AVAILABLE / OFFLINE (record created lazily)
"""

from fastapi import APIRouter, Depends, Request

from dispatch.api.auth import Actor, require_roles
from dispatch.api.dependencies import get_engine
from dispatch.api.middleware import limiter
from dispatch.api.schemas import DriverResponse, DriverStatusRequest, ErrorResponse
from dispatch.config import settings
from dispatch.domain.enums import Role
from dispatch.domain.lifecycle import TripLifecycleEngine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post(
    "/register",
    status_code=201,
    response_model=DriverResponse,
    summary="Register the caller as a driver",
    responses={409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def register_driver(
    request: Request,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.register_driver(actor.actor_id)


@router.post(
    "/status",
    response_model=DriverResponse,
    summary="Update the caller's availability",
    description=(
        "BUSY is managed by the trip lifecycle and is rejected here unless the "
        "driver holds an active trip, in which case nothing but BUSY is accepted."
    ),
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    body: DriverStatusRequest,
    actor: Actor = Depends(require_roles(Role.DRIVER)),
    engine: TripLifecycleEngine = Depends(get_engine),
):
    return await engine.update_driver_status(actor.actor_id, body.availability)
