"""Booking lifecycle.

Every mutating operation follows the same shape: take the in-process lock
for the booking, load the row with ``FOR UPDATE NOWAIT``, check (booking
exists, actor may act, state allows it, business rules), mutate, commit.
Only after the commit, and outside the lock, is the in-memory mechanic index
updated and the counterpart notified. A failed notification never undoes a
committed transition.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ondemand.bookings.state import validate_transition
from ondemand.config import settings
from ondemand.errors import (
    AuthorizationError,
    ConflictError,
    IllegalStateTransitionError,
    NotFoundError,
    ValidationError,
)
from ondemand.geo.index import MechanicIndex
from ondemand.metrics import BOOKING_CONFLICTS, BOOKING_TRANSITIONS, BOOKINGS_CREATED, RATINGS_SUBMITTED
from ondemand.models.booking import Booking
from ondemand.models.enums import BookingEventType, BookingStatus, RaterRole, SubscriptionType, UserRole
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from ondemand.notifications.hub import BookingEvent, NotificationHub
from ondemand.services.pricing import calculate_booking_price
from ondemand.services.ratings import RatingAggregator, validate_score
from ondemand.utils.geo import calculate_distance_km, validate_coordinates
from ondemand.utils.keyed_lock import KeyedLock

logger = structlog.get_logger()


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class NewBooking:
    latitude: float
    longitude: float
    description: str
    mechanic_id: uuid.UUID | None = None
    customer_id: uuid.UUID | None = None
    address: str | None = None
    subscription_type: SubscriptionType = SubscriptionType.HOURLY
    estimated_hours: int = 1
    scheduled_at: datetime | None = None


class BookingService:
    def __init__(
        self,
        db: AsyncSession,
        index: MechanicIndex,
        hub: NotificationHub,
        locks: KeyedLock,
        ratings: RatingAggregator,
    ):
        self.db = db
        self.index = index
        self.hub = hub
        self.locks = locks
        self.ratings = ratings

    # ------------------------------------------------------------------ reads

    async def get(self, booking_id: uuid.UUID, actor: User) -> Booking:
        booking = await self.db.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if actor.role != UserRole.ADMIN and actor.id not in (booking.customer_id, booking.mechanic_id):
            raise AuthorizationError("Not a participant of this booking")
        return booking

    async def list_bookings(
        self,
        actor: User,
        customer_id: uuid.UUID | None = None,
        mechanic_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        """Bookings visible to actor, newest first.

        Customers and mechanics only ever see bookings they take part in;
        asking for somebody else's raises AuthorizationError.
        """
        status_filter = None
        if status is not None:
            try:
                status_filter = BookingStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown booking status '{status}'")

        if actor.role == UserRole.CUSTOMER:
            if customer_id is not None and customer_id != actor.id:
                raise AuthorizationError("Customers can only list their own bookings")
            customer_id = actor.id
        elif actor.role == UserRole.MECHANIC:
            if mechanic_id is not None and mechanic_id != actor.id:
                raise AuthorizationError("Mechanics can only list their own bookings")
            mechanic_id = actor.id

        query = select(Booking)
        if customer_id is not None:
            query = query.where(Booking.customer_id == customer_id)
        if mechanic_id is not None:
            query = query.where(Booking.mechanic_id == mechanic_id)
        if status_filter is not None:
            query = query.where(Booking.status == status_filter)
        query = query.order_by(Booking.created_at.desc(), Booking.id).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ---------------------------------------------------------------- helpers

    async def _load_for_update(self, booking_id: uuid.UUID, operation: str) -> Booking:
        try:
            result = await self.db.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .with_for_update(nowait=True)
                .execution_options(populate_existing=True)
            )
        except OperationalError:
            await self.db.rollback()
            BOOKING_CONFLICTS.labels(operation=operation).inc()
            logger.warning("booking_row_locked", booking_id=str(booking_id), operation=operation)
            raise ConflictError("Booking is being modified by another request, retry shortly")
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def _load_mechanic(self, mechanic_id: uuid.UUID) -> MechanicProfile:
        result = await self.db.execute(
            select(MechanicProfile)
            .where(MechanicProfile.user_id == mechanic_id)
            .options(selectinload(MechanicProfile.user))
            .execution_options(populate_existing=True)
        )
        profile = result.scalar_one_or_none()
        if profile is None or not profile.user.is_active:
            raise NotFoundError(f"Mechanic {mechanic_id} not found")
        return profile

    def _check_transition(self, booking: Booking, target: BookingStatus, operation: str) -> None:
        try:
            validate_transition(BookingStatus(booking.status), target)
        except ConflictError:
            BOOKING_CONFLICTS.labels(operation=operation).inc()
            raise

    def _require_mechanic(self, booking: Booking, actor: User) -> None:
        if booking.mechanic_id is None or actor.id != booking.mechanic_id:
            raise AuthorizationError("Only the assigned mechanic can perform this action")

    def _require_customer(self, booking: Booking, actor: User) -> None:
        if actor.id != booking.customer_id:
            raise AuthorizationError("Only the booking's customer can perform this action")

    def _bind_mechanic(self, booking: Booking, profile: MechanicProfile) -> None:
        if not profile.is_available:
            raise ConflictError(f"Mechanic {profile.user_id} is not available")
        distance_km = None
        if profile.has_position:
            distance_km = round(
                calculate_distance_km(profile.latitude, profile.longitude, booking.latitude, booking.longitude),
                2,
            )
        booking.mechanic_id = profile.user_id
        booking.distance_km = distance_km
        booking.price = calculate_booking_price(
            profile,
            SubscriptionType(booking.subscription_type),
            booking.estimated_hours,
            distance_km or 0.0,
        )

    async def _commit(self, booking: Booking) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        # Reload server-generated timestamps
        await self.db.refresh(booking)

    def _notify(self, recipient_id: uuid.UUID | None, event_type: BookingEventType, booking: Booking) -> None:
        event = BookingEvent(
            type=event_type,
            booking_id=booking.id,
            status=BookingStatus(booking.status),
            latitude=booking.latitude,
            longitude=booking.longitude,
            description=booking.description,
        )
        self.hub.publish(recipient_id, event)

    def _record(self, booking: Booking, previous: BookingStatus, event: str) -> None:
        BOOKING_TRANSITIONS.labels(from_status=previous.value, to_status=BookingStatus(booking.status).value).inc()
        logger.info(
            event,
            booking_id=str(booking.id),
            from_status=previous.value,
            to_status=BookingStatus(booking.status).value,
        )

    # ----------------------------------------------------------- transitions

    async def create(self, actor: User, data: NewBooking) -> Booking:
        if actor.role == UserRole.ADMIN and data.customer_id is not None:
            customer = await self.db.get(User, data.customer_id)
            if customer is None or customer.role != UserRole.CUSTOMER:
                raise NotFoundError(f"Customer {data.customer_id} not found")
        elif actor.role == UserRole.CUSTOMER:
            if data.customer_id is not None and data.customer_id != actor.id:
                raise AuthorizationError("Customers can only create bookings for themselves")
            customer = actor
        else:
            raise AuthorizationError("Only customers can create bookings")

        validate_coordinates(data.latitude, data.longitude)
        if not data.description or not data.description.strip():
            raise ValidationError("Description is required")
        if data.estimated_hours < 1:
            raise ValidationError("estimated_hours must be at least 1")

        booking = Booking(
            id=uuid.uuid4(),
            customer_id=customer.id,
            status=BookingStatus.PENDING,
            description=data.description.strip(),
            address=data.address,
            latitude=data.latitude,
            longitude=data.longitude,
            subscription_type=data.subscription_type,
            estimated_hours=data.estimated_hours,
            scheduled_at=data.scheduled_at,
        )
        if data.mechanic_id is not None:
            self._bind_mechanic(booking, await self._load_mechanic(data.mechanic_id))

        self.db.add(booking)
        await self._commit(booking)

        BOOKINGS_CREATED.labels(assigned=str(booking.mechanic_id is not None).lower()).inc()
        logger.info(
            "booking_created",
            booking_id=str(booking.id),
            customer_id=str(booking.customer_id),
            mechanic_id=str(booking.mechanic_id) if booking.mechanic_id else None,
        )
        if booking.mechanic_id is not None:
            self._notify(booking.mechanic_id, BookingEventType.BOOKING_CREATED, booking)
        return booking

    async def assign(self, booking_id: uuid.UUID, mechanic_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "assign")
            if not (
                actor.role == UserRole.ADMIN
                or actor.id == booking.customer_id
                or (actor.role == UserRole.MECHANIC and actor.id == mechanic_id)
            ):
                raise AuthorizationError("Not allowed to assign a mechanic to this booking")
            if booking.mechanic_id is not None:
                if booking.mechanic_id == mechanic_id and booking.status == BookingStatus.PENDING:
                    BOOKING_CONFLICTS.labels(operation="assign").inc()
                    raise ConflictError("Mechanic is already assigned to this booking")
                raise IllegalStateTransitionError("Booking already has a mechanic assigned")
            if booking.status != BookingStatus.PENDING:
                raise IllegalStateTransitionError(
                    f"Cannot assign a mechanic to a '{BookingStatus(booking.status).value}' booking"
                )
            self._bind_mechanic(booking, await self._load_mechanic(mechanic_id))
            await self._commit(booking)

        logger.info(
            "booking_assigned",
            booking_id=str(booking.id),
            mechanic_id=str(mechanic_id),
            price=str(booking.price),
        )
        self._notify(booking.mechanic_id, BookingEventType.BOOKING_ASSIGNED, booking)
        return booking

    async def accept(self, booking_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "accept")
            self._require_mechanic(booking, actor)
            previous = BookingStatus(booking.status)
            self._check_transition(booking, BookingStatus.ACCEPTED, "accept")
            booking.status = BookingStatus.ACCEPTED
            booking.accepted_at = datetime.now(timezone.utc)
            await self._commit(booking)

        self._record(booking, previous, "booking_accepted")
        self._notify(booking.customer_id, BookingEventType.BOOKING_ACCEPTED, booking)
        return booking

    async def reject(self, booking_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "reject")
            self._require_mechanic(booking, actor)
            previous = BookingStatus(booking.status)
            self._check_transition(booking, BookingStatus.REJECTED, "reject")
            booking.status = BookingStatus.REJECTED
            booking.rejected_at = datetime.now(timezone.utc)
            await self._commit(booking)

        self._record(booking, previous, "booking_rejected")
        self._notify(booking.customer_id, BookingEventType.BOOKING_REJECTED, booking)
        return booking

    async def start(self, booking_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "start")
            self._require_mechanic(booking, actor)
            previous = BookingStatus(booking.status)
            self._check_transition(booking, BookingStatus.IN_PROGRESS, "start")
            booking.status = BookingStatus.IN_PROGRESS
            booking.started_at = datetime.now(timezone.utc)
            await self.db.execute(
                update(MechanicProfile)
                .where(MechanicProfile.user_id == booking.mechanic_id)
                .values(is_available=False)
                .execution_options(synchronize_session=False)
            )
            await self._commit(booking)

        self.index.set_available(booking.mechanic_id, False)
        self._record(booking, previous, "booking_started")
        self._notify(booking.customer_id, BookingEventType.BOOKING_STARTED, booking)
        return booking

    async def complete(self, booking_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "complete")
            self._require_mechanic(booking, actor)
            previous = BookingStatus(booking.status)
            self._check_transition(booking, BookingStatus.COMPLETED, "complete")
            booking.status = BookingStatus.COMPLETED
            booking.completed_at = datetime.now(timezone.utc)
            await self.db.execute(
                update(MechanicProfile)
                .where(MechanicProfile.user_id == booking.mechanic_id)
                .values(is_available=True, completed_jobs=MechanicProfile.completed_jobs + 1)
                .execution_options(synchronize_session=False)
            )
            await self._commit(booking)

        self.index.set_available(booking.mechanic_id, True)
        self.index.increment_completed(booking.mechanic_id)
        self._record(booking, previous, "booking_completed")
        self._notify(booking.customer_id, BookingEventType.BOOKING_COMPLETED, booking)
        return booking

    async def cancel(self, booking_id: uuid.UUID, actor: User) -> Booking:
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "cancel")
            self._require_customer(booking, actor)
            previous = BookingStatus(booking.status)
            self._check_transition(booking, BookingStatus.CANCELLED, "cancel")

            scheduled_at = _as_utc(booking.scheduled_at)
            if scheduled_at is not None:
                cutoff = timedelta(hours=settings.CANCELLATION_CUTOFF_HOURS)
                if scheduled_at - datetime.now(timezone.utc) < cutoff:
                    raise IllegalStateTransitionError(
                        f"Bookings cannot be cancelled less than "
                        f"{settings.CANCELLATION_CUTOFF_HOURS}h before the scheduled time"
                    )

            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = datetime.now(timezone.utc)
            if previous == BookingStatus.IN_PROGRESS:
                await self.db.execute(
                    update(MechanicProfile)
                    .where(MechanicProfile.user_id == booking.mechanic_id)
                    .values(is_available=True)
                    .execution_options(synchronize_session=False)
                )
            await self._commit(booking)

        if previous == BookingStatus.IN_PROGRESS:
            self.index.set_available(booking.mechanic_id, True)
        self._record(booking, previous, "booking_cancelled")
        if booking.mechanic_id is not None:
            self._notify(booking.mechanic_id, BookingEventType.BOOKING_CANCELLED, booking)
        return booking

    async def rate(
        self,
        booking_id: uuid.UUID,
        actor: User,
        role: RaterRole,
        score: int,
        comment: str | None = None,
    ) -> Booking:
        """Record one side's rating of a completed booking.

        The customer's score also feeds the mechanic's running average. Each
        side can rate at most once; a second attempt raises ConflictError.
        """
        rating = None
        async with self.locks.hold(booking_id):
            booking = await self._load_for_update(booking_id, "rate")
            if role == RaterRole.CUSTOMER:
                self._require_customer(booking, actor)
            else:
                self._require_mechanic(booking, actor)
            if booking.status != BookingStatus.COMPLETED:
                raise IllegalStateTransitionError(
                    f"Only completed bookings can be rated, booking is '{BookingStatus(booking.status).value}'"
                )
            existing = booking.customer_rating if role == RaterRole.CUSTOMER else booking.mechanic_rating
            if existing is not None:
                BOOKING_CONFLICTS.labels(operation="rate").inc()
                raise ConflictError(f"Booking has already been rated by the {role.value}")
            validate_score(score)

            try:
                if role == RaterRole.CUSTOMER:
                    booking.customer_rating = score
                    booking.feedback = comment
                    rating = await self.ratings.update_rating(self.db, booking.mechanic_id, score)
                else:
                    booking.mechanic_rating = score
                    booking.mechanic_feedback = comment
            except Exception:
                await self.db.rollback()
                raise
            await self._commit(booking)

        if rating is not None:
            self.index.set_rating(booking.mechanic_id, *rating)
        RATINGS_SUBMITTED.labels(role=role.value).inc()
        logger.info("booking_rated", booking_id=str(booking.id), role=role.value, score=score)
        recipient = booking.mechanic_id if role == RaterRole.CUSTOMER else booking.customer_id
        self._notify(recipient, BookingEventType.BOOKING_RATED, booking)
        return booking
