from ondemand.errors import ConflictError, IllegalStateTransitionError
from ondemand.models.enums import BookingStatus

# Defines all valid status transitions for a booking
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,  # Short jobs finished without an explicit start
        BookingStatus.CANCELLED,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.COMPLETED: set(),  # Terminal state
    BookingStatus.REJECTED: set(),  # Terminal state
    BookingStatus.CANCELLED: set(),  # Terminal state
}


def can_transition(current: BookingStatus, new: BookingStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: BookingStatus, new: BookingStatus) -> None:
    """Validate a booking status transition.

    Asking for the state the booking is already in raises ConflictError (the
    other writer got there first); any other invalid move raises
    IllegalStateTransitionError.
    """
    if current == new:
        raise ConflictError(f"Booking is already '{current.value}'")
    if not can_transition(current, new):
        raise IllegalStateTransitionError(
            f"Cannot transition from '{current.value}' to '{new.value}'"
        )
