import uuid
from decimal import Decimal

from pydantic import BaseModel, Field


class LocationUpdateRequest(BaseModel):
    latitude: float
    longitude: float


class AvailabilityUpdateRequest(BaseModel):
    is_available: bool


class MechanicUpdateRequest(BaseModel):
    service_radius_km: int | None = Field(None, ge=1, le=200)
    specialties: list[str] | None = Field(None, max_length=20)
    hourly_rate: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)
    monthly_rate: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)
    yearly_rate: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)


class NearbyMechanicItem(BaseModel):
    id: uuid.UUID
    name: str
    latitude: float
    longitude: float
    distance_km: float
    rating_avg: float
    completed_jobs: int
    service_radius_km: int
    specialties: list[str]
    hourly_rate: Decimal | None = None


class MechanicDetailResponse(BaseModel):
    id: uuid.UUID
    name: str
    latitude: float | None
    longitude: float | None
    is_available: bool
    rating_avg: float
    rating_count: int
    completed_jobs: int
    service_radius_km: int
    specialties: list[str]
    hourly_rate: Decimal
    monthly_rate: Decimal
    yearly_rate: Decimal
