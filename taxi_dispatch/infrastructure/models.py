"""
SQLAlchemy ORM models.

Tables
------
* ``stations``         -- tenants; every other row is scoped by one
* ``zones``            -- named polygons of a station (JSON vertex list)
* ``drivers``          -- identity, approval / online flags, live position
* ``trips``            -- trip lifecycle; mutated only by conditional updates
* ``dispatch_offers``  -- offers made by the matching engine, one open per trip

Indexes
-------
* **B-Tree** on ``(station_id, status)`` for trips and
  ``(station_id, is_online)`` for drivers: every query is station scoped.
* **Partial unique** index on ``dispatch_offers(trip_id) WHERE status='open'``
  so concurrent engine steps cannot open two offers for one trip.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    Float,
    ForeignKey,
    Index,
    String,
    text,
)

from .database import Base, UTCDateTime, utcnow
from taxi_dispatch.domain.enums import CancelReason, OfferStatus, TripStatus


def new_id() -> str:
    return uuid.uuid4().hex


def _enum(cls):
    """Store enum *values* (lower-case strings) as VARCHAR on every backend."""
    return Enum(
        cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class StationModel(Base):
    __tablename__ = "stations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ZoneModel(Base):
    __tablename__ = "zones"

    id = Column(String(36), primary_key=True, default=new_id)
    station_id = Column(String(36), ForeignKey("stations.id"), nullable=False)
    name = Column(String(120), nullable=False)
    color = Column(String(16), default="#F7C948")
    # [[lat, lng], ...] -- at least three vertices
    polygon = Column(JSON, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_zones_station", "station_id"),)


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(36), primary_key=True, default=new_id)
    station_id = Column(String(36), ForeignKey("stations.id"), nullable=False)
    full_name = Column(String(120), nullable=False)
    phone = Column(String(32), nullable=True)
    vehicle_number = Column(String(32), nullable=True)

    is_online = Column(Boolean, default=False, nullable=False)
    is_approved = Column(Boolean, default=True, nullable=False)

    # Null until the first location report
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    current_zone_id = Column(String(36), ForeignKey("zones.id"), nullable=True)
    last_position_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_drivers_station_online", "station_id", "is_online"),
        Index("idx_drivers_zone", "current_zone_id"),
    )


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(String(36), primary_key=True, default=new_id)
    station_id = Column(String(36), ForeignKey("stations.id"), nullable=False)
    zone_id = Column(String(36), ForeignKey("zones.id"), nullable=True)

    customer_phone = Column(String(32), nullable=True)
    pickup_address = Column(String(255), nullable=True)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    destination_address = Column(String(255), nullable=True)
    destination_lat = Column(Float, nullable=True)
    destination_lng = Column(Float, nullable=True)

    driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=True)
    status = Column(_enum(TripStatus), default=TripStatus.PENDING, nullable=False)
    cancel_reason = Column(_enum(CancelReason), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    accepted_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_trips_station_status", "station_id", "status"),
        Index("idx_trips_driver_status", "driver_id", "status"),
        Index("idx_trips_created", "created_at"),
    )


class DispatchOfferModel(Base):
    __tablename__ = "dispatch_offers"

    id = Column(String(36), primary_key=True, default=new_id)
    trip_id = Column(String(36), ForeignKey("trips.id"), nullable=False)
    station_id = Column(String(36), ForeignKey("stations.id"), nullable=False)
    driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=False)
    status = Column(_enum(OfferStatus), default=OfferStatus.OPEN, nullable=False)
    distance_m = Column(Float, nullable=True)

    offered_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)
    closed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_offers_trip", "trip_id"),
        Index(
            "uq_offers_open_trip",
            "trip_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )
