"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from dispatch.domain.enums import CancelledBy, DriverAvailability, TripStatus


# ── Requests ──────────────────────────────────────────────────────────


class TripActionRequest(BaseModel):
    trip_id: uuid.UUID


class DriverStatusRequest(BaseModel):
    availability: DriverAvailability


# ── Responses ─────────────────────────────────────────────────────────


class TripResponse(BaseModel):
    id: uuid.UUID
    passenger_id: str
    driver_id: Optional[str] = None
    status: TripStatus
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[CancelledBy] = None

    model_config = {"from_attributes": True}


class DriverResponse(BaseModel):
    user_id: str
    availability: DriverAvailability
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TripRequestResponse(BaseModel):
    trip: TripResponse
    suggested_driver: DriverResponse

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
