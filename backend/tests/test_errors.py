import pytest

from ondemand.errors import (
    AuthorizationError,
    ConflictError,
    IllegalStateTransitionError,
    NotFoundError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error_cls,kind,status_code",
    [
        (NotFoundError, "not_found", 404),
        (ValidationError, "validation_error", 422),
        (IllegalStateTransitionError, "illegal_state_transition", 409),
        (AuthorizationError, "authorization_error", 403),
        (ConflictError, "conflict", 409),
    ],
)
def test_domain_error_kind_and_status(error_cls, kind, status_code):
    error = error_cls("something went wrong")
    assert error.status_code == status_code
    assert error.to_dict() == {"error": kind, "detail": "something went wrong"}
    assert str(error) == "something went wrong"
