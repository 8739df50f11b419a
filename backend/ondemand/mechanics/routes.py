import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ondemand.config import settings
from ondemand.database import get_db
from ondemand.dependencies import get_current_mechanic, get_mechanic_index
from ondemand.errors import NotFoundError, ValidationError
from ondemand.geo.index import IndexedMechanic, MechanicIndex
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from ondemand.schemas.mechanic import (
    AvailabilityUpdateRequest,
    LocationUpdateRequest,
    MechanicDetailResponse,
    MechanicUpdateRequest,
    NearbyMechanicItem,
)
from ondemand.utils.geo import validate_coordinates
from ondemand.utils.rate_limit import LIST_RATE_LIMIT, WRITE_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


def _detail(profile: MechanicProfile, name: str) -> MechanicDetailResponse:
    return MechanicDetailResponse(
        id=profile.user_id,
        name=name,
        latitude=profile.latitude,
        longitude=profile.longitude,
        is_available=profile.is_available,
        rating_avg=round(profile.rating_avg or 0.0, 2),
        rating_count=profile.rating_count,
        completed_jobs=profile.completed_jobs,
        service_radius_km=profile.service_radius_km,
        specialties=list(profile.specialties or []),
        hourly_rate=profile.hourly_rate,
        monthly_rate=profile.monthly_rate,
        yearly_rate=profile.yearly_rate,
    )


# --- Static routes first (before /{mechanic_id}) ---


@router.get("/nearby", response_model=list[NearbyMechanicItem])
@limiter.limit(LIST_RATE_LIMIT)
async def find_nearby_mechanics(
    request: Request,
    lat: float = Query(...),
    lng: float = Query(...),
    radius: float = Query(settings.DEFAULT_SEARCH_RADIUS_KM),
    limit: int = Query(50, ge=1, le=200),
    index: MechanicIndex = Depends(get_mechanic_index),
):
    """Available mechanics within ``radius`` km, nearest first.

    Ties on distance go to the better rated mechanic. Served from the
    in-memory index, which may lag the database by one resync interval for
    mechanics updated on another worker.
    """
    if radius > settings.MAX_SEARCH_RADIUS_KM:
        raise ValidationError(f"Radius must be at most {settings.MAX_SEARCH_RADIUS_KM} km")

    results = index.find_nearby(lat, lng, radius, limit=limit)
    return [
        NearbyMechanicItem(
            id=r.mechanic.mechanic_id,
            name=r.mechanic.name,
            latitude=r.mechanic.latitude,
            longitude=r.mechanic.longitude,
            distance_km=round(r.distance_km, 2),
            rating_avg=round(r.mechanic.rating, 2),
            completed_jobs=r.mechanic.completed_jobs,
            service_radius_km=r.mechanic.service_radius_km,
            specialties=list(r.mechanic.specialties),
            hourly_rate=r.mechanic.hourly_rate,
        )
        for r in results
    ]


@router.put("/me/location", response_model=MechanicDetailResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def update_my_location(
    request: Request,
    body: LocationUpdateRequest,
    mechanic: tuple[User, MechanicProfile] = Depends(get_current_mechanic),
    db: AsyncSession = Depends(get_db),
    index: MechanicIndex = Depends(get_mechanic_index),
):
    """Record the mechanic's current position."""
    user, profile = mechanic
    validate_coordinates(body.latitude, body.longitude)

    profile.latitude = body.latitude
    profile.longitude = body.longitude
    profile.location_updated_at = datetime.now(timezone.utc)
    await db.commit()

    if profile.user_id in index:
        index.update_position(profile.user_id, body.latitude, body.longitude)
    else:
        index.upsert(IndexedMechanic.from_profile(profile, user.name))
    logger.info("mechanic_location_updated", mechanic_id=str(profile.user_id))
    return _detail(profile, user.name)


@router.put("/me/availability", response_model=MechanicDetailResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def update_my_availability(
    request: Request,
    body: AvailabilityUpdateRequest,
    mechanic: tuple[User, MechanicProfile] = Depends(get_current_mechanic),
    db: AsyncSession = Depends(get_db),
    index: MechanicIndex = Depends(get_mechanic_index),
):
    user, profile = mechanic
    profile.is_available = body.is_available
    await db.commit()

    if profile.user_id in index:
        index.set_available(profile.user_id, body.is_available)
    else:
        index.upsert(IndexedMechanic.from_profile(profile, user.name))
    logger.info(
        "mechanic_availability_updated",
        mechanic_id=str(profile.user_id),
        is_available=body.is_available,
    )
    return _detail(profile, user.name)


@router.put("/me", response_model=MechanicDetailResponse)
@limiter.limit("30/minute")
async def update_mechanic_profile(
    request: Request,
    body: MechanicUpdateRequest,
    mechanic: tuple[User, MechanicProfile] = Depends(get_current_mechanic),
    db: AsyncSession = Depends(get_db),
    index: MechanicIndex = Depends(get_mechanic_index),
):
    """Update the current mechanic's service radius, specialties and rates."""
    user, profile = mechanic

    UPDATABLE_FIELDS = {"service_radius_km", "specialties", "hourly_rate", "monthly_rate", "yearly_rate"}

    update_data = body.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        if field in UPDATABLE_FIELDS and value is not None:
            setattr(profile, field, value)
    await db.commit()

    index.upsert(IndexedMechanic.from_profile(profile, user.name))
    logger.info("mechanic_profile_updated", mechanic_id=str(profile.user_id))
    return _detail(profile, user.name)


@router.get("/{mechanic_id}", response_model=MechanicDetailResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def get_mechanic(
    request: Request,
    mechanic_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(MechanicProfile)
        .where(MechanicProfile.user_id == mechanic_id)
        .options(selectinload(MechanicProfile.user))
        .execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if profile is None or not profile.user.is_active:
        raise NotFoundError(f"Mechanic {mechanic_id} not found")
    return _detail(profile, profile.user.name)
