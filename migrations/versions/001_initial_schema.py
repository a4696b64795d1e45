"""Initial schema: trips and drivers.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column(
            "availability",
            sa.Enum("AVAILABLE", "BUSY", "OFFLINE", name="driveravailability"),
            default="AVAILABLE",
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_drivers_availability", "drivers", ["availability"])

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("passenger_id", sa.String(64), nullable=False),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "SEARCHING",
                "ASSIGNED",
                "IN_PROGRESS",
                "FINISHED",
                "CANCELLED",
                name="tripstatus",
            ),
            default="SEARCHING",
            nullable=False,
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancelled_by",
            sa.Enum("passenger", "driver", name="cancelledby"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_passenger", "trips", ["passenger_id"])
    op.create_index("idx_trips_driver", "trips", ["driver_id"])


def downgrade() -> None:
    op.drop_table("trips")
    op.drop_table("drivers")
    op.execute("DROP TYPE IF EXISTS cancelledby")
    op.execute("DROP TYPE IF EXISTS tripstatus")
    op.execute("DROP TYPE IF EXISTS driveravailability")
