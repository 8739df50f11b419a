import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ondemand.models.enums import BookingStatus, RaterRole, SubscriptionType


class BookingCreateRequest(BaseModel):
    # Coordinates are range-checked by the booking service so that a bad
    # position surfaces as a validation_error like every other domain failure
    latitude: float
    longitude: float
    description: str = Field(min_length=1, max_length=2000)
    mechanic_id: uuid.UUID | None = None
    customer_id: uuid.UUID | None = Field(None, description="Dispatchers only: book on behalf of a customer")
    address: str | None = Field(None, max_length=500)
    subscription_type: SubscriptionType = SubscriptionType.HOURLY
    estimated_hours: int = Field(1, ge=1, le=1000)
    scheduled_at: datetime | None = None


class RateRequest(BaseModel):
    role: RaterRole
    score: int
    comment: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    mechanic_id: uuid.UUID | None
    status: BookingStatus
    description: str
    address: str | None
    latitude: float
    longitude: float
    subscription_type: SubscriptionType
    estimated_hours: int
    price: Decimal | None
    distance_km: float | None
    scheduled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    rejected_at: datetime | None
    cancelled_at: datetime | None
    customer_rating: int | None
    mechanic_rating: int | None
    feedback: str | None
    mechanic_feedback: str | None

    model_config = {"from_attributes": True}
