import enum

# Enums are stored as VARCHAR columns rather than native PG ENUM types so that
# adding a value does not need an ALTER TYPE migration.


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    MECHANIC = "mechanic"
    ADMIN = "admin"  # dispatcher


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)


class SubscriptionType(str, enum.Enum):
    HOURLY = "hourly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RaterRole(str, enum.Enum):
    CUSTOMER = "customer"
    MECHANIC = "mechanic"


class BookingEventType(str, enum.Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_ASSIGNED = "booking_assigned"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_STARTED = "booking_started"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_RATED = "booking_rated"
