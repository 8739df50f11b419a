import uuid

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ondemand.errors import NotFoundError, ValidationError
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.utils.keyed_lock import KeyedLock

logger = structlog.get_logger()

MIN_SCORE = 1
MAX_SCORE = 5


def validate_score(score: int) -> None:
    if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
        raise ValidationError(f"Rating must be an integer between {MIN_SCORE} and {MAX_SCORE}, got {score!r}")


class RatingAggregator:
    """Folds customer scores into a mechanic's running average.

    The new mean is computed by the database in a single UPDATE so two ratings
    for different bookings of the same mechanic cannot overwrite each other,
    and writers in this process are additionally queued per mechanic id.
    The caller owns the transaction.
    """

    def __init__(self, locks: KeyedLock | None = None):
        self._locks = locks or KeyedLock()

    async def update_rating(
        self, db: AsyncSession, mechanic_id: uuid.UUID, new_score: int
    ) -> tuple[float, int]:
        validate_score(new_score)
        async with self._locks.hold(mechanic_id):
            result = await db.execute(
                update(MechanicProfile)
                .where(MechanicProfile.user_id == mechanic_id)
                .values(
                    rating_avg=case(
                        (MechanicProfile.rating_count == 0, float(new_score)),
                        else_=(MechanicProfile.rating_avg * MechanicProfile.rating_count + new_score)
                        / (MechanicProfile.rating_count + 1),
                    ),
                    rating_count=MechanicProfile.rating_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Mechanic {mechanic_id} not found")

            row = (
                await db.execute(
                    select(MechanicProfile.rating_avg, MechanicProfile.rating_count).where(
                        MechanicProfile.user_id == mechanic_id
                    )
                )
            ).one()

        logger.info(
            "mechanic_rating_updated",
            mechanic_id=str(mechanic_id),
            rating_avg=round(row.rating_avg, 4),
            rating_count=row.rating_count,
        )
        return row.rating_avg, row.rating_count
