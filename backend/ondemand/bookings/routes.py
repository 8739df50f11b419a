import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Request, status

from ondemand.bookings.service import BookingService, NewBooking
from ondemand.dependencies import get_booking_service, get_current_user
from ondemand.models.user import User
from ondemand.schemas.booking import BookingCreateRequest, BookingResponse, RateRequest
from ondemand.utils.rate_limit import LIST_RATE_LIMIT, WRITE_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Create a booking, optionally binding a mechanic picked from a nearby search."""
    booking = await service.create(user, NewBooking(**body.model_dump()))
    return BookingResponse.model_validate(booking)


@router.get("", response_model=list[BookingResponse])
@limiter.limit(LIST_RATE_LIMIT)
async def list_bookings(
    request: Request,
    customer_id: uuid.UUID | None = Query(None),
    mechanic_id: uuid.UUID | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0, le=10000),
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    bookings = await service.list_bookings(
        user,
        customer_id=customer_id,
        mechanic_id=mechanic_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def get_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(await service.get(booking_id, user))


@router.put("/{booking_id}/assign/{mechanic_id}", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def assign_mechanic(
    request: Request,
    booking_id: uuid.UUID,
    mechanic_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Bind a mechanic to a pending booking (customer, dispatcher, or the mechanic claiming it)."""
    return BookingResponse.model_validate(await service.assign(booking_id, mechanic_id, user))


@router.put("/{booking_id}/accept", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def accept_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Accept a pending booking (assigned mechanic only)."""
    return BookingResponse.model_validate(await service.accept(booking_id, user))


@router.put("/{booking_id}/reject", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def reject_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(await service.reject(booking_id, user))


@router.put("/{booking_id}/start", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def start_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(await service.start(booking_id, user))


@router.put("/{booking_id}/complete", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def complete_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(await service.complete(booking_id, user))


@router.put("/{booking_id}/cancel", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Cancel a booking (customer only), not allowed close to the scheduled time."""
    return BookingResponse.model_validate(await service.cancel(booking_id, user))


@router.put("/{booking_id}/rate", response_model=BookingResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def rate_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: RateRequest,
    user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Rate the other party of a completed booking, once per side."""
    booking = await service.rate(booking_id, user, body.role, body.score, body.comment)
    return BookingResponse.model_validate(booking)
