import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ondemand.auth.service import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password_async,
    verify_password_async,
)
from ondemand.config import settings
from ondemand.database import get_db
from ondemand.dependencies import get_current_user, get_mechanic_index
from ondemand.geo.index import IndexedMechanic, MechanicIndex
from ondemand.metrics import USERS_REGISTERED
from ondemand.models.enums import UserRole
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from ondemand.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest, TokenResponse, UserResponse
from ondemand.utils.rate_limit import AUTH_RATE_LIMIT, limiter

# Dummy hash for constant-time login failure on unknown emails
_DUMMY_HASH = "$2b$12$LJ3m4ys3Lg2UxMHFSKDcOedTqJtFHSfVLO7GRFXlI0Xp9jHQvaFYe"

logger = structlog.get_logger()
router = APIRouter()


def _token_pair(user_id: str) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user_id),
        refresh_token=create_refresh_token(user_id),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(AUTH_RATE_LIMIT)
async def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    index: MechanicIndex = Depends(get_mechanic_index),
):
    """Register a customer or a mechanic. Dispatcher accounts are provisioned out of band."""
    # Token responses must not be cached by proxies
    response.headers["Cache-Control"] = "no-store"

    result = await db.execute(select(User).where(User.email == body.email))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    profile = None
    try:
        user = User(
            id=uuid.uuid4(),
            name=body.name,
            email=body.email,
            password_hash=await hash_password_async(body.password),
            role=UserRole(body.role.value),
            phone=body.phone,
            is_active=True,
        )
        db.add(user)
        await db.flush()

        if user.role == UserRole.MECHANIC:
            profile = MechanicProfile(
                user_id=user.id,
                is_available=True,
                hourly_rate=settings.DEFAULT_HOURLY_RATE,
                monthly_rate=settings.DEFAULT_MONTHLY_RATE,
                yearly_rate=settings.DEFAULT_YEARLY_RATE,
                specialties=[],
            )
            db.add(profile)
            await db.flush()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("registration_race_condition")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    if profile is not None:
        # Not searchable until the first location update, but known to the index
        index.upsert(IndexedMechanic.from_profile(profile, user.name))

    USERS_REGISTERED.labels(role=body.role.value).inc()
    logger.info("user_registered", user_id=str(user.id), role=body.role.value)
    return _token_pair(str(user.id))


@router.post("/login", response_model=TokenResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login(request: Request, response: Response, body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate a user and return a JWT token pair."""
    response.headers["Cache-Control"] = "no-store"

    result = await db.execute(select(User).where(User.email == body.email))
    user = result.scalar_one_or_none()

    if not user:
        # Hash against a dummy so response time does not reveal unknown emails
        await verify_password_async(body.password, _DUMMY_HASH)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not await verify_password_async(body.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account has been deactivated. Contact support for more information.",
        )

    logger.info("user_login", user_id=str(user.id))
    return _token_pair(str(user.id))


@router.post("/refresh", response_model=TokenResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def refresh_tokens(request: Request, response: Response, body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    """Exchange a refresh token for a new access + refresh token pair."""
    response.headers["Cache-Control"] = "no-store"
    user_id = decode_refresh_token(body.refresh_token)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
        )

    result = await db.execute(select(User).where(User.id == uuid.UUID(user_id)))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    logger.info("token_refreshed", user_id=user_id)
    return _token_pair(user_id)


@router.get("/me", response_model=UserResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def get_me(request: Request, user: User = Depends(get_current_user)):
    return user
