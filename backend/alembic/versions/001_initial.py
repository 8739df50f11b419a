"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Mechanic capability rows, keyed by the mechanic's user id
    op.create_table(
        "mechanic_profiles",
        sa.Column(
            "user_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            primary_key=True,
        ),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("rating_avg", sa.Float(), nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("service_radius_km", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("specialties", sa.JSON(), nullable=False),
        sa.Column("hourly_rate", sa.Numeric(10, 2), nullable=False, server_default="50.00"),
        sa.Column("monthly_rate", sa.Numeric(10, 2), nullable=False, server_default="29.99"),
        sa.Column("yearly_rate", sa.Numeric(10, 2), nullable=False, server_default="299.00"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "latitude IS NULL OR (latitude >= -90 AND latitude <= 90)",
            name="ck_mechanic_latitude_range",
        ),
        sa.CheckConstraint(
            "longitude IS NULL OR (longitude >= -180 AND longitude <= 180)",
            name="ck_mechanic_longitude_range",
        ),
        sa.CheckConstraint("rating_avg >= 0 AND rating_avg <= 5", name="ck_mechanic_rating_avg_range"),
    )

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "customer_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "mechanic_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=True,
            index=True,
        ),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("subscription_type", sa.String(20), nullable=False, server_default="hourly"),
        sa.Column("estimated_hours", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_rating", sa.Integer(), nullable=True),
        sa.Column("mechanic_rating", sa.Integer(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("mechanic_feedback", sa.Text(), nullable=True),
        sa.CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_booking_latitude_range"),
        sa.CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_booking_longitude_range"),
        sa.CheckConstraint(
            "customer_rating IS NULL OR (customer_rating >= 1 AND customer_rating <= 5)",
            name="ck_booking_customer_rating_range",
        ),
        sa.CheckConstraint(
            "mechanic_rating IS NULL OR (mechanic_rating >= 1 AND mechanic_rating <= 5)",
            name="ck_booking_mechanic_rating_range",
        ),
        sa.CheckConstraint("price IS NULL OR price >= 0", name="ck_booking_price_positive"),
        # The mechanic may only be missing while nobody has been assigned yet
        sa.CheckConstraint(
            "mechanic_id IS NOT NULL OR status IN ('pending', 'cancelled')",
            name="ck_booking_mechanic_assigned",
        ),
    )
    op.create_index("ix_booking_customer_created", "bookings", ["customer_id", "created_at"])
    op.create_index("ix_booking_mechanic_created", "bookings", ["mechanic_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_booking_mechanic_created", table_name="bookings")
    op.drop_index("ix_booking_customer_created", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("mechanic_profiles")
    op.drop_table("users")
