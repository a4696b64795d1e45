"""
FastAPI application factory.

* Registers routes for trips, drivers and admin.
* Renders every ``DispatchError`` as ``{success, error, message}`` with the
  error's status code; nothing from the store is passed through.
* Starts / stops the availability reconciler via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dispatch.api.middleware import limiter
from dispatch.api.routes import admin, drivers, trips
from dispatch.api.schemas import ErrorResponse
from dispatch.config import settings
from dispatch.domain.errors import DispatchError
from dispatch.workers import reconciler as _reconciler

logging.basicConfig(level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reconciler on startup; stop on shutdown."""
    if settings.reconciler_enabled:
        await _reconciler.start_reconcile_loop()
    yield
    await _reconciler.stop_reconcile_loop()


async def dispatch_error_handler(request: Request, exc: DispatchError):
    body = ErrorResponse(error=exc.kind, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def create_app() -> FastAPI:
    app = FastAPI(
        title="Trip Dispatch API",
        description=(
            "Matches passengers with available drivers and tracks every trip "
            "from request to completion or cancellation, safely under "
            "concurrent requests."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
