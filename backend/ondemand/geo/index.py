"""In-memory geospatial index of mechanic positions.

Nearby search is a linear haversine scan over a dict snapshot. Writers replace
entries in place, so readers never block and may observe a slightly stale
position or availability flag for a mechanic being updated concurrently.
"""

import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ondemand.errors import NotFoundError, ValidationError
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.utils.geo import calculate_distance_km, validate_coordinates

logger = structlog.get_logger()


@dataclass(frozen=True)
class IndexedMechanic:
    mechanic_id: uuid.UUID
    name: str
    latitude: float | None
    longitude: float | None
    available: bool
    rating: float = 0.0
    rating_count: int = 0
    completed_jobs: int = 0
    service_radius_km: int = 20
    specialties: tuple[str, ...] = ()
    hourly_rate: Decimal | None = None

    @classmethod
    def from_profile(cls, profile: MechanicProfile, name: str) -> "IndexedMechanic":
        return cls(
            mechanic_id=profile.user_id,
            name=name,
            latitude=profile.latitude,
            longitude=profile.longitude,
            available=profile.is_available,
            rating=profile.rating_avg or 0.0,
            rating_count=profile.rating_count or 0,
            completed_jobs=profile.completed_jobs or 0,
            service_radius_km=profile.service_radius_km,
            specialties=tuple(profile.specialties or ()),
            hourly_rate=profile.hourly_rate,
        )


@dataclass(frozen=True)
class NearbyMechanic:
    mechanic: IndexedMechanic
    distance_km: float = field(default=0.0)


class MechanicIndex:
    def __init__(self) -> None:
        self._entries: dict[uuid.UUID, IndexedMechanic] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, mechanic_id: uuid.UUID) -> bool:
        return mechanic_id in self._entries

    def get(self, mechanic_id: uuid.UUID) -> IndexedMechanic | None:
        return self._entries.get(mechanic_id)

    def upsert(self, entry: IndexedMechanic) -> None:
        self._entries[entry.mechanic_id] = entry

    def remove(self, mechanic_id: uuid.UUID) -> None:
        self._entries.pop(mechanic_id, None)

    def _require(self, mechanic_id: uuid.UUID) -> IndexedMechanic:
        entry = self._entries.get(mechanic_id)
        if entry is None:
            raise NotFoundError(f"Mechanic {mechanic_id} is not indexed")
        return entry

    def update_position(self, mechanic_id: uuid.UUID, lat: float, lng: float) -> None:
        validate_coordinates(lat, lng)
        entry = self._require(mechanic_id)
        self._entries[mechanic_id] = replace(entry, latitude=lat, longitude=lng)

    def set_available(self, mechanic_id: uuid.UUID, available: bool) -> None:
        entry = self._entries.get(mechanic_id)
        if entry is None:
            # Mirror of a committed write; the next resync picks the row up
            logger.warning("index_entry_missing", mechanic_id=str(mechanic_id))
            return
        self._entries[mechanic_id] = replace(entry, available=available)

    def set_rating(self, mechanic_id: uuid.UUID, rating: float, rating_count: int) -> None:
        entry = self._entries.get(mechanic_id)
        if entry is None:
            logger.warning("index_entry_missing", mechanic_id=str(mechanic_id))
            return
        self._entries[mechanic_id] = replace(entry, rating=rating, rating_count=rating_count)

    def increment_completed(self, mechanic_id: uuid.UUID) -> None:
        entry = self._entries.get(mechanic_id)
        if entry is not None:
            self._entries[mechanic_id] = replace(entry, completed_jobs=entry.completed_jobs + 1)

    def find_nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        limit: int | None = None,
    ) -> list[NearbyMechanic]:
        """Available, positioned mechanics within radius_km of (lat, lng).

        Ordered by distance, then rating (highest first), then id. An empty
        list is a valid answer.
        """
        validate_coordinates(lat, lng)
        if radius_km is None or radius_km <= 0:
            raise ValidationError(f"Radius must be positive, got {radius_km}")

        results: list[NearbyMechanic] = []
        for entry in list(self._entries.values()):
            if not entry.available or entry.latitude is None or entry.longitude is None:
                continue
            distance = calculate_distance_km(lat, lng, entry.latitude, entry.longitude)
            if distance <= radius_km:
                results.append(NearbyMechanic(mechanic=entry, distance_km=distance))

        results.sort(key=lambda r: (r.distance_km, -r.mechanic.rating, str(r.mechanic.mechanic_id)))
        if limit is not None:
            results = results[:limit]
        return results

    async def load(self, db: AsyncSession) -> int:
        """Rebuild the index from the mechanic_profiles table."""
        result = await db.execute(
            select(MechanicProfile)
            .options(selectinload(MechanicProfile.user))
            .execution_options(populate_existing=True)
        )
        entries = {
            profile.user_id: IndexedMechanic.from_profile(profile, profile.user.name)
            for profile in result.scalars().all()
            if profile.user.is_active
        }
        # Swap in one assignment so concurrent readers see old or new, never half
        self._entries = entries
        logger.info("mechanic_index_loaded", mechanics=len(entries))
        return len(entries)
