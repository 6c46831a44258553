"""FastAPI dependency injection helpers."""

from functools import lru_cache
from typing import AsyncIterator, Optional

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.domain.enums import Role
from taxi_dispatch.infrastructure.database import unit_of_work
from taxi_dispatch.services.geocoding import Geocoder, default_geocoder


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield an async DB session; commit on success, rollback on error."""
    async with unit_of_work() as session:
        yield session


async def get_context(
    x_role: Optional[str] = Header(None),
    x_station_id: Optional[str] = Header(None),
    x_driver_id: Optional[str] = Header(None),
) -> RequestContext:
    """
    Build the principal from the headers the auth gateway sets after it
    has verified the caller's credentials.
    """
    if not x_role or not x_station_id:
        raise HTTPException(status_code=401, detail="Missing authentication headers")
    try:
        role = Role(x_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_role}")
    if role == Role.DRIVER:
        if not x_driver_id:
            raise HTTPException(status_code=401, detail="Driver identity missing")
        return RequestContext.for_driver(x_station_id, x_driver_id)
    return RequestContext.dispatcher(x_station_id)


@lru_cache
def get_geocoder() -> Geocoder:
    return default_geocoder()
