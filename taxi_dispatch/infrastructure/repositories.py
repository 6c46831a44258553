"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Every query that lists rows takes a
``station_id``: there is no unscoped listing.

The conditional updates here (``TripRepository.compare_and_set``,
``DriverRepository.set_online``, ``OfferRepository.close``) are single
``UPDATE ... WHERE <precondition>`` statements.  Their row count is the
verdict, which keeps them correct across processes.  A claim and a
driver going offline both touch one trip row and one driver row, so
both lock the driver row first (``DriverRepository.lock``) and then
decide with statements that see the other side's committed write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DispatchOfferModel,
    DriverModel,
    StationModel,
    TripModel,
    ZoneModel,
)
from taxi_dispatch.domain.enums import OfferStatus, TripStatus


class StationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, name: str) -> StationModel:
        station = StationModel(name=name)
        self.session.add(station)
        await self.session.flush()
        return station

    async def get_by_id(self, station_id: str) -> Optional[StationModel]:
        return await self.session.get(StationModel, station_id)

    async def list_all(self) -> list[StationModel]:
        result = await self.session.execute(
            select(StationModel).order_by(StationModel.created_at)
        )
        return list(result.scalars().all())

    async def all_ids(self) -> list[str]:
        result = await self.session.execute(select(StationModel.id))
        return list(result.scalars().all())


class ZoneRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, zone: ZoneModel) -> ZoneModel:
        self.session.add(zone)
        await self.session.flush()
        return zone

    async def get_by_id(self, zone_id: str) -> Optional[ZoneModel]:
        return await self.session.get(ZoneModel, zone_id)

    async def list_for_station(self, station_id: str) -> list[ZoneModel]:
        result = await self.session.execute(
            select(ZoneModel)
            .where(ZoneModel.station_id == station_id)
            .order_by(ZoneModel.created_at, ZoneModel.id)
        )
        return list(result.scalars().all())

    async def delete(self, zone: ZoneModel) -> None:
        """Delete a zone; drivers and trips inside it fall back to no zone."""
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.current_zone_id == zone.id)
            .values(current_zone_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(TripModel)
            .where(TripModel.zone_id == zone.id)
            .values(zone_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.delete(zone)
        await self.session.flush()


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, driver: DriverModel) -> DriverModel:
        self.session.add(driver)
        await self.session.flush()
        return driver

    async def get_by_id(
        self, driver_id: str, *, fresh: bool = False
    ) -> Optional[DriverModel]:
        return await self.session.get(
            DriverModel, driver_id, populate_existing=fresh
        )

    async def lock(self, driver_id: str) -> Optional[DriverModel]:
        """``SELECT ... FOR UPDATE`` on the driver row, refreshed from the DB."""
        result = await self.session.execute(
            select(DriverModel)
            .where(DriverModel.id == driver_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_station(
        self, station_id: str, *, online_only: bool = False
    ) -> list[DriverModel]:
        query = select(DriverModel).where(DriverModel.station_id == station_id)
        if online_only:
            query = query.where(DriverModel.is_online.is_(True))
        result = await self.session.execute(query.order_by(DriverModel.id))
        return list(result.scalars().all())

    async def list_dispatchable(
        self, station_id: str, zone_id: Optional[str] = None
    ) -> list[DriverModel]:
        query = select(DriverModel).where(
            DriverModel.station_id == station_id,
            DriverModel.is_online.is_(True),
            DriverModel.is_approved.is_(True),
            DriverModel.latitude.is_not(None),
            DriverModel.longitude.is_not(None),
        )
        if zone_id:
            query = query.where(DriverModel.current_zone_id == zone_id)
        result = await self.session.execute(query.order_by(DriverModel.id))
        return list(result.scalars().all())

    async def update_position(
        self,
        driver_id: str,
        *,
        latitude: float,
        longitude: float,
        heading: Optional[float],
        current_zone_id: Optional[str],
        at: datetime,
    ) -> bool:
        """Write a position only while the driver is online."""
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id, DriverModel.is_online.is_(True))
            .values(
                latitude=latitude,
                longitude=longitude,
                heading=heading,
                current_zone_id=current_zone_id,
                last_position_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_online(self, driver_id: str, online: bool, at: datetime) -> bool:
        """
        Toggle ``is_online``.  Going offline is conditional on the driver
        not being the assignee of an active trip, checked in the same
        statement as the write.
        """
        query = update(DriverModel).where(DriverModel.id == driver_id)
        if not online:
            query = query.where(
                ~exists().where(
                    TripModel.driver_id == driver_id,
                    TripModel.status == TripStatus.ACTIVE,
                )
            )
        result = await self.session.execute(
            query.values(is_online=online, updated_at=at).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount == 1

    async def set_approved(self, driver_id: str, approved: bool, at: datetime) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(is_approved=approved, updated_at=at)
            .execution_options(synchronize_session=False)
        )


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, trip: TripModel) -> TripModel:
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def get_by_id(
        self, trip_id: str, *, fresh: bool = False
    ) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id, populate_existing=fresh)

    async def compare_and_set(
        self,
        trip_id: str,
        expected: TripStatus,
        values: dict[str, Any],
        *,
        require_unassigned: bool = False,
    ) -> bool:
        """
        ``UPDATE trips SET ... WHERE id = :id AND status = :expected``
        (``AND driver_id IS NULL`` when *require_unassigned*).  When the
        update assigns a driver, that driver must still be online and
        approved at the moment of the write.
        Returns True iff exactly this call performed the update.
        """
        query = update(TripModel).where(
            TripModel.id == trip_id, TripModel.status == expected
        )
        if require_unassigned:
            query = query.where(TripModel.driver_id.is_(None))
        if values.get("driver_id"):
            query = query.where(
                exists().where(
                    DriverModel.id == values["driver_id"],
                    DriverModel.is_online.is_(True),
                    DriverModel.is_approved.is_(True),
                )
            )
        result = await self.session.execute(
            query.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_pending(
        self, station_id: str, zone_id: Optional[str] = None
    ) -> list[TripModel]:
        query = select(TripModel).where(
            TripModel.station_id == station_id,
            TripModel.status == TripStatus.PENDING,
            TripModel.driver_id.is_(None),
        )
        if zone_id:
            query = query.where(TripModel.zone_id == zone_id)
        result = await self.session.execute(
            query.order_by(TripModel.created_at, TripModel.id)
        )
        return list(result.scalars().all())

    async def list_for_station(
        self,
        station_id: str,
        status: Optional[TripStatus] = None,
        limit: int = 100,
    ) -> list[TripModel]:
        query = select(TripModel).where(TripModel.station_id == station_id)
        if status is not None:
            query = query.where(TripModel.status == status)
        result = await self.session.execute(
            query.order_by(TripModel.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def busy_driver_ids(self, station_id: str) -> set[str]:
        """Drivers that are the assignee of a live trip in the station."""
        result = await self.session.execute(
            select(TripModel.driver_id).where(
                TripModel.station_id == station_id,
                TripModel.status.in_([TripStatus.PENDING, TripStatus.ACTIVE]),
                TripModel.driver_id.is_not(None),
            )
        )
        return set(result.scalars().all())

    async def active_trip_for_driver(self, driver_id: str) -> Optional[TripModel]:
        result = await self.session.execute(
            select(TripModel)
            .where(
                TripModel.driver_id == driver_id,
                TripModel.status == TripStatus.ACTIVE,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_by_status(self, station_id: str) -> dict[str, int]:
        result = await self.session.execute(
            select(TripModel.status, func.count())
            .where(TripModel.station_id == station_id)
            .group_by(TripModel.status)
        )
        return {TripStatus(s).value: n for s, n in result.all()}


class OfferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_open(self, trip_id: str) -> Optional[DispatchOfferModel]:
        result = await self.session.execute(
            select(DispatchOfferModel)
            .where(
                DispatchOfferModel.trip_id == trip_id,
                DispatchOfferModel.status == OfferStatus.OPEN,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_trip(self, trip_id: str) -> list[DispatchOfferModel]:
        result = await self.session.execute(
            select(DispatchOfferModel)
            .where(DispatchOfferModel.trip_id == trip_id)
            .order_by(DispatchOfferModel.offered_at, DispatchOfferModel.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def excluded_driver_ids(self, trip_id: str) -> set[str]:
        """Drivers whose offer for this trip was closed for any reason."""
        result = await self.session.execute(
            select(DispatchOfferModel.driver_id).where(
                DispatchOfferModel.trip_id == trip_id,
                DispatchOfferModel.status != OfferStatus.OPEN,
            )
        )
        return set(result.scalars().all())

    async def last_closed_at(self, trip_id: str) -> Optional[datetime]:
        result = await self.session.execute(
            select(func.max(DispatchOfferModel.closed_at)).where(
                DispatchOfferModel.trip_id == trip_id
            )
        )
        return result.scalar()

    async def open_offer(self, offer: DispatchOfferModel) -> bool:
        """
        Insert an open offer.  Returns False when another open offer for
        the trip already exists (lost the uniqueness race).
        """
        try:
            async with self.session.begin_nested():
                self.session.add(offer)
                await self.session.flush()
        except IntegrityError:
            return False
        return True

    async def record(self, offer: DispatchOfferModel) -> DispatchOfferModel:
        self.session.add(offer)
        await self.session.flush()
        return offer

    async def close(
        self,
        offer_id: str,
        status: OfferStatus,
        at: datetime,
    ) -> bool:
        """Close an offer if it is still open."""
        result = await self.session.execute(
            update(DispatchOfferModel)
            .where(
                DispatchOfferModel.id == offer_id,
                DispatchOfferModel.status == OfferStatus.OPEN,
            )
            .values(status=status, closed_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
