import uuid

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ondemand.auth.service import decode_token
from ondemand.bookings.service import BookingService
from ondemand.database import get_db, get_session_factory
from ondemand.geo.index import MechanicIndex
from ondemand.models.enums import UserRole
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from ondemand.notifications.hub import NotificationHub
from ondemand.services.ratings import RatingAggregator
from ondemand.utils.keyed_lock import KeyedLock

logger = structlog.get_logger()
security = HTTPBearer()


async def _authenticate(credentials: HTTPAuthorizationCredentials, db: AsyncSession) -> User:
    payload = decode_token(credentials.credentials, "access")
    # Tokens without a jti predate the current token format
    if payload is None or not payload.get("jti"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )
    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account has been deactivated. Contact support for more information.",
        )
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate JWT token, return the authenticated user."""
    return await _authenticate(credentials, db)


async def get_subscriber_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> uuid.UUID:
    """Authenticate a long-lived stream.

    The session is closed before the stream starts, so an open stream holds
    no pooled connection.
    """
    async with session_factory() as db:
        user = await _authenticate(credentials, db)
        return user.id


async def get_current_mechanic(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> tuple[User, MechanicProfile]:
    """Get current user and verify they are a mechanic with a profile."""
    if user.role != UserRole.MECHANIC:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only mechanics can access this resource",
        )

    result = await db.execute(
        select(MechanicProfile).where(MechanicProfile.user_id == user.id)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Mechanic profile not found",
        )
    return user, profile


# Process-scoped registries live on app.state (see ondemand.main) and are
# reached through these providers so tests can swap in fresh instances.

def get_mechanic_index(request: Request) -> MechanicIndex:
    return request.app.state.mechanic_index


def get_notification_hub(request: Request) -> NotificationHub:
    return request.app.state.notification_hub


def get_booking_locks(request: Request) -> KeyedLock:
    return request.app.state.booking_locks


def get_rating_aggregator(request: Request) -> RatingAggregator:
    return request.app.state.rating_aggregator


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    index: MechanicIndex = Depends(get_mechanic_index),
    hub: NotificationHub = Depends(get_notification_hub),
    locks: KeyedLock = Depends(get_booking_locks),
    ratings: RatingAggregator = Depends(get_rating_aggregator),
) -> BookingService:
    return BookingService(db, index, hub, locks, ratings)
