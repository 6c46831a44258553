"""
FastAPI application factory.

* Registers routes for trips, drivers, zones, stations, events and admin.
* Starts / stops the background dispatch worker via lifespan events.
* Maps the dispatch error taxonomy onto HTTP statuses.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.routes import admin, drivers, events, stations, trips, zones
from taxi_dispatch.config import settings
from taxi_dispatch.domain.errors import DispatchError, Rejected
from taxi_dispatch.workers import dispatcher as _dispatcher

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the dispatch worker on startup; stop on shutdown."""
    if settings.run_dispatch_worker:
        await _dispatcher.start_dispatch_loop()
    yield
    if settings.run_dispatch_worker:
        await _dispatcher.stop_dispatch_loop()


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, Rejected):
        content["reason"] = exc.reason.value
    logger.debug("%s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Station Taxi Dispatch API",
        description=(
            "Dispatches taxi trips to the nearest available driver of a "
            "station.  Offers time out and move to the next candidate; "
            "exactly one driver wins each trip, even under concurrent claims."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(zones.router, prefix="/api/v1")
    app.include_router(stations.router, prefix="/api/v1")
    app.include_router(events.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
