"""Domain errors raised by the booking, discovery and rating services.

Each error carries a ``kind`` and the HTTP status it maps to.
``ondemand.main`` renders them as a structured
``{"error": kind, "detail": message}`` response. Non-HTTP callers such as
the scheduler and scripts just catch them as exceptions.
"""

from fastapi import status


class DomainError(Exception):
    kind = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "detail": self.message}


class NotFoundError(DomainError):
    """Unknown booking, mechanic or customer id."""

    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(DomainError):
    """Bad coordinates, out-of-range rating, malformed status."""

    kind = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class IllegalStateTransitionError(DomainError):
    kind = "illegal_state_transition"
    status_code = status.HTTP_409_CONFLICT


class AuthorizationError(DomainError):
    """Actor is not the booking's customer/mechanic for a role-restricted operation."""

    kind = "authorization_error"
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(DomainError):
    """Double rating, or the losing side of a concurrent transition."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT
