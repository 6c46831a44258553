"""Initial schema: stations, zones, drivers, trips and dispatch offers.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── stations ──────────────────────────────────────────────────────
    op.create_table(
        "stations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )

    # ── zones ─────────────────────────────────────────────────────────
    op.create_table(
        "zones",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "station_id", sa.String(36), sa.ForeignKey("stations.id"), nullable=False
        ),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("color", sa.String(16)),
        sa.Column("polygon", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_zones_station", "zones", ["station_id"])

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "station_id", sa.String(36), sa.ForeignKey("stations.id"), nullable=False
        ),
        sa.Column("full_name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(32)),
        sa.Column("vehicle_number", sa.String(32)),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_approved", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("latitude", sa.Float),
        sa.Column("longitude", sa.Float),
        sa.Column("heading", sa.Float),
        sa.Column("current_zone_id", sa.String(36), sa.ForeignKey("zones.id")),
        sa.Column("last_position_at", sa.DateTime(timezone=True)),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "idx_drivers_station_online", "drivers", ["station_id", "is_online"]
    )
    op.create_index("idx_drivers_zone", "drivers", ["current_zone_id"])

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "station_id", sa.String(36), sa.ForeignKey("stations.id"), nullable=False
        ),
        sa.Column("zone_id", sa.String(36), sa.ForeignKey("zones.id")),
        sa.Column("customer_phone", sa.String(32)),
        sa.Column("pickup_address", sa.String(255)),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("destination_address", sa.String(255)),
        sa.Column("destination_lat", sa.Float),
        sa.Column("destination_lng", sa.Float),
        sa.Column("driver_id", sa.String(36), sa.ForeignKey("drivers.id")),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("cancel_reason", sa.String(32)),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_trips_station_status", "trips", ["station_id", "status"])
    op.create_index("idx_trips_driver_status", "trips", ["driver_id", "status"])
    op.create_index("idx_trips_created", "trips", ["created_at"])

    # ── dispatch_offers ───────────────────────────────────────────────
    op.create_table(
        "dispatch_offers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "station_id", sa.String(36), sa.ForeignKey("stations.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.String(36), sa.ForeignKey("drivers.id"), nullable=False
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("distance_m", sa.Float),
        sa.Column(
            "offered_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_offers_trip", "dispatch_offers", ["trip_id"])
    # At most one open offer per trip
    op.create_index(
        "uq_offers_open_trip",
        "dispatch_offers",
        ["trip_id"],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
    )


def downgrade() -> None:
    op.drop_table("dispatch_offers")
    op.drop_table("trips")
    op.drop_table("drivers")
    op.drop_table("zones")
    op.drop_table("stations")
