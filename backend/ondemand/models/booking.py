import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from ondemand.database import Base
from ondemand.models.enums import BookingStatus, SubscriptionType
from ondemand.models.types import GUID


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_booking_latitude_range"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_booking_longitude_range"),
        CheckConstraint(
            "customer_rating IS NULL OR (customer_rating >= 1 AND customer_rating <= 5)",
            name="ck_booking_customer_rating_range",
        ),
        CheckConstraint(
            "mechanic_rating IS NULL OR (mechanic_rating >= 1 AND mechanic_rating <= 5)",
            name="ck_booking_mechanic_rating_range",
        ),
        CheckConstraint("price IS NULL OR price >= 0", name="ck_booking_price_positive"),
        # The mechanic may only be missing while nobody has been assigned yet
        CheckConstraint(
            "mechanic_id IS NOT NULL OR status IN ('pending', 'cancelled')",
            name="ck_booking_mechanic_assigned",
        ),
        Index("ix_booking_customer_created", "customer_id", "created_at"),
        Index("ix_booking_mechanic_created", "mechanic_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Null only while the booking is PENDING and nobody has been assigned
    mechanic_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        String(20), nullable=False, default=BookingStatus.PENDING, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Request-time pickup position, never live mechanic tracking
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    subscription_type: Mapped[SubscriptionType] = mapped_column(
        String(20), nullable=False, default=SubscriptionType.HOURLY
    )
    estimated_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    customer_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mechanic_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    mechanic_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    customer: Mapped["User"] = relationship("User", foreign_keys=[customer_id], lazy="raise")
    mechanic: Mapped["User | None"] = relationship("User", foreign_keys=[mechanic_id], lazy="raise")

    @validates("latitude", "longitude")
    def _position_is_immutable(self, key: str, value: float) -> float:
        if getattr(self, key) is not None:
            raise ValueError(f"Booking {key} cannot change after creation")
        return value
