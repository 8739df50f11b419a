import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from ondemand.bookings.service import BookingService, NewBooking
from ondemand.errors import ConflictError
from ondemand.geo.index import MechanicIndex
from ondemand.models.booking import Booking
from ondemand.models.enums import BookingStatus
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from tests.conftest import booking_payload, make_mechanic, user_header


async def _create(client: AsyncClient, customer: User, **overrides) -> dict:
    response = await client.post("/bookings", json=booking_payload(**overrides), headers=user_header(customer))
    assert response.status_code == 201, response.text
    return response.json()


async def _put(client: AsyncClient, booking_id: str, action: str, user: User, **kwargs):
    return await client.put(f"/bookings/{booking_id}/{action}", headers=user_header(user), **kwargs)


# --- Creation ---


@pytest.mark.asyncio
async def test_create_booking_pending_without_mechanic(client: AsyncClient, customer_user: User):
    data = await _create(client, customer_user)
    assert data["status"] == "pending"
    assert data["customer_id"] == str(customer_user.id)
    assert data["mechanic_id"] is None
    assert data["price"] is None
    assert data["latitude"] == 40.01
    assert data["accepted_at"] is None


@pytest.mark.asyncio
async def test_create_booking_with_mechanic_prices_it(
    client: AsyncClient, customer_user: User, mechanic_user: User
):
    data = await _create(
        client, customer_user, mechanic_id=str(mechanic_user.id), subscription_type="hourly", estimated_hours=2
    )
    assert data["status"] == "pending"
    assert data["mechanic_id"] == str(mechanic_user.id)
    assert Decimal(data["price"]) == Decimal("100.00")
    assert data["distance_km"] == pytest.approx(1.11, abs=0.01)


@pytest.mark.asyncio
async def test_create_booking_bad_coordinates(client: AsyncClient, customer_user: User):
    response = await client.post(
        "/bookings", json=booking_payload(latitude=95.0), headers=user_header(customer_user)
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_mechanic_cannot_create_booking(client: AsyncClient, mechanic_user: User):
    response = await client.post("/bookings", json=booking_payload(), headers=user_header(mechanic_user))
    assert response.status_code == 403
    assert response.json()["error"] == "authorization_error"


@pytest.mark.asyncio
async def test_create_booking_unknown_mechanic(client: AsyncClient, customer_user: User):
    response = await client.post(
        "/bookings", json=booking_payload(mechanic_id=str(uuid.uuid4())), headers=user_header(customer_user)
    )
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_create_booking_unavailable_mechanic(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex, customer_user: User
):
    busy, _ = await make_mechanic(db, mechanic_index, "busy@test.com", is_available=False)
    response = await client.post(
        "/bookings", json=booking_payload(mechanic_id=str(busy.id)), headers=user_header(customer_user)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_dispatcher_creates_for_customer(client: AsyncClient, admin_user: User, customer_user: User):
    response = await client.post(
        "/bookings",
        json=booking_payload(customer_id=str(customer_user.id)),
        headers=user_header(admin_user),
    )
    assert response.status_code == 201
    assert response.json()["customer_id"] == str(customer_user.id)


@pytest.mark.asyncio
async def test_dispatcher_creates_for_unknown_customer(client: AsyncClient, admin_user: User):
    response = await client.post(
        "/bookings",
        json=booking_payload(customer_id=str(uuid.uuid4())),
        headers=user_header(admin_user),
    )
    assert response.status_code == 404


# --- Full lifecycle ---


@pytest.mark.asyncio
async def test_full_lifecycle_with_single_ratings(
    client: AsyncClient,
    db: AsyncSession,
    mechanic_index: MechanicIndex,
    customer_user: User,
    mechanic_user: User,
    mechanic_profile: MechanicProfile,
):
    booking = await _create(client, customer_user)
    booking_id = booking["id"]

    response = await _put(client, booking_id, f"assign/{mechanic_user.id}", customer_user)
    assert response.status_code == 200
    assert response.json()["mechanic_id"] == str(mechanic_user.id)
    assert Decimal(response.json()["price"]) == Decimal("50.00")

    response = await _put(client, booking_id, "accept", mechanic_user)
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    assert response.json()["accepted_at"] is not None

    response = await _put(client, booking_id, "start", mechanic_user)
    assert response.status_code == 200
    assert response.json()["status"] == "in_progress"
    assert mechanic_index.get(mechanic_user.id).available is False
    assert mechanic_index.find_nearby(40.01, -74.0, 5) == []

    response = await _put(client, booking_id, "complete", mechanic_user)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["completed_at"] is not None
    assert mechanic_index.get(mechanic_user.id).available is True

    await db.refresh(mechanic_profile)
    assert mechanic_profile.is_available is True
    assert mechanic_profile.completed_jobs == 1

    response = await _put(
        client, booking_id, "rate", customer_user, json={"role": "customer", "score": 5, "comment": "Great job"}
    )
    assert response.status_code == 200
    assert response.json()["customer_rating"] == 5
    assert response.json()["feedback"] == "Great job"

    response = await _put(
        client, booking_id, "rate", mechanic_user, json={"role": "mechanic", "score": 4, "comment": "Friendly"}
    )
    assert response.status_code == 200
    assert response.json()["mechanic_rating"] == 4
    assert response.json()["mechanic_feedback"] == "Friendly"

    response = await _put(client, booking_id, "rate", customer_user, json={"role": "customer", "score": 1})
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"

    await db.refresh(mechanic_profile)
    assert mechanic_profile.rating_avg == pytest.approx(5.0)
    assert mechanic_profile.rating_count == 1
    assert mechanic_index.get(mechanic_user.id).rating == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_complete_directly_from_accepted(
    client: AsyncClient, customer_user: User, mechanic_user: User
):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)

    response = await _put(client, booking["id"], "complete", mechanic_user)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["started_at"] is None


# --- Illegal transitions ---


@pytest.mark.asyncio
async def test_pending_cannot_complete(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "complete", mechanic_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_pending_cannot_start(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "start", mechanic_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_double_accept_is_conflict(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    assert (await _put(client, booking["id"], "accept", mechanic_user)).status_code == 200

    response = await _put(client, booking["id"], "accept", mechanic_user)
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_accept_by_other_mechanic_forbidden(
    client: AsyncClient, customer_user: User, mechanic_user: User, other_mechanic: User
):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "accept", other_mechanic)
    assert response.status_code == 403
    assert response.json()["error"] == "authorization_error"


@pytest.mark.asyncio
async def test_unknown_booking(client: AsyncClient, mechanic_user: User):
    response = await _put(client, str(uuid.uuid4()), "accept", mechanic_user)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_reject_pending_booking(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "reject", mechanic_user)
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["rejected_at"] is not None

    response = await _put(client, booking["id"], "accept", mechanic_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_reject_after_accept_is_illegal(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)
    response = await _put(client, booking["id"], "reject", mechanic_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


# --- Assignment ---


@pytest.mark.asyncio
async def test_assign_twice(client: AsyncClient, customer_user: User, mechanic_user: User, other_mechanic: User):
    booking = await _create(client, customer_user)
    assert (await _put(client, booking["id"], f"assign/{mechanic_user.id}", customer_user)).status_code == 200

    response = await _put(client, booking["id"], f"assign/{mechanic_user.id}", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"

    response = await _put(client, booking["id"], f"assign/{other_mechanic.id}", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_mechanic_claims_pending_booking(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user)
    response = await _put(client, booking["id"], f"assign/{mechanic_user.id}", mechanic_user)
    assert response.status_code == 200
    assert response.json()["mechanic_id"] == str(mechanic_user.id)


@pytest.mark.asyncio
async def test_mechanic_cannot_assign_someone_else(
    client: AsyncClient, customer_user: User, mechanic_user: User, other_mechanic: User
):
    booking = await _create(client, customer_user)
    response = await _put(client, booking["id"], f"assign/{other_mechanic.id}", mechanic_user)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_dispatcher_assigns(client: AsyncClient, admin_user: User, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user)
    response = await _put(client, booking["id"], f"assign/{mechanic_user.id}", admin_user)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_assign_unavailable_mechanic(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex, customer_user: User
):
    busy, _ = await make_mechanic(db, mechanic_index, "busy2@test.com", is_available=False)
    booking = await _create(client, customer_user)
    response = await _put(client, booking["id"], f"assign/{busy.id}", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_travel_fee_beyond_free_zone(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex, customer_user: User
):
    # About 22.2 km north of the pickup, 12.2 km beyond the free zone
    far, _ = await make_mechanic(db, mechanic_index, "far@test.com", latitude=40.21, longitude=-74.0)
    booking = await _create(client, customer_user)
    response = await _put(client, booking["id"], f"assign/{far.id}", customer_user)
    assert response.status_code == 200
    data = response.json()
    assert data["distance_km"] == pytest.approx(22.24, abs=0.01)
    assert Decimal(data["price"]) == Decimal("56.12")


# --- Cancellation ---


@pytest.mark.asyncio
async def test_customer_cancels_pending(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancelled_at"] is not None


@pytest.mark.asyncio
async def test_mechanic_cannot_cancel(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "cancel", mechanic_user)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_double_cancel_is_conflict(client: AsyncClient, customer_user: User):
    booking = await _create(client, customer_user)
    assert (await _put(client, booking["id"], "cancel", customer_user)).status_code == 200
    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_cannot_cancel_completed(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)
    await _put(client, booking["id"], "complete", mechanic_user)

    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_cancel_inside_cutoff_window(client: AsyncClient, customer_user: User):
    scheduled = datetime.now(timezone.utc) + timedelta(hours=1)
    booking = await _create(client, customer_user, scheduled_at=scheduled.isoformat())
    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
async def test_cancel_outside_cutoff_window(client: AsyncClient, customer_user: User):
    scheduled = datetime.now(timezone.utc) + timedelta(hours=5)
    booking = await _create(client, customer_user, scheduled_at=scheduled.isoformat())
    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_cancel_in_progress_frees_mechanic(
    client: AsyncClient,
    db: AsyncSession,
    mechanic_index: MechanicIndex,
    customer_user: User,
    mechanic_user: User,
    mechanic_profile: MechanicProfile,
):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)
    await _put(client, booking["id"], "start", mechanic_user)
    assert mechanic_index.get(mechanic_user.id).available is False

    response = await _put(client, booking["id"], "cancel", customer_user)
    assert response.status_code == 200
    assert mechanic_index.get(mechanic_user.id).available is True
    await db.refresh(mechanic_profile)
    assert mechanic_profile.is_available is True


# --- Ratings ---


@pytest.mark.asyncio
async def test_rate_before_completion(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    response = await _put(client, booking["id"], "rate", customer_user, json={"role": "customer", "score": 5})
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_state_transition"


@pytest.mark.asyncio
@pytest.mark.parametrize("score", [0, 6, -1])
async def test_rate_out_of_range(client: AsyncClient, customer_user: User, mechanic_user: User, score: int):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)
    await _put(client, booking["id"], "complete", mechanic_user)

    response = await _put(client, booking["id"], "rate", customer_user, json={"role": "customer", "score": score})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_rate_as_wrong_party(client: AsyncClient, customer_user: User, mechanic_user: User):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _put(client, booking["id"], "accept", mechanic_user)
    await _put(client, booking["id"], "complete", mechanic_user)

    response = await _put(client, booking["id"], "rate", mechanic_user, json={"role": "customer", "score": 5})
    assert response.status_code == 403


# --- Reads ---


@pytest.mark.asyncio
async def test_get_booking_visibility(
    client: AsyncClient, customer_user: User, other_customer: User, admin_user: User, mechanic_user: User
):
    booking = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))

    assert (await client.get(f"/bookings/{booking['id']}", headers=user_header(customer_user))).status_code == 200
    assert (await client.get(f"/bookings/{booking['id']}", headers=user_header(mechanic_user))).status_code == 200
    assert (await client.get(f"/bookings/{booking['id']}", headers=user_header(admin_user))).status_code == 200
    assert (await client.get(f"/bookings/{booking['id']}", headers=user_header(other_customer))).status_code == 403


@pytest.mark.asyncio
async def test_list_bookings_filters(
    client: AsyncClient, customer_user: User, other_customer: User, admin_user: User, mechanic_user: User
):
    first = await _create(client, customer_user, mechanic_id=str(mechanic_user.id))
    await _create(client, customer_user)
    await _create(client, other_customer)
    await _put(client, first["id"], "accept", mechanic_user)

    response = await client.get("/bookings", headers=user_header(customer_user))
    assert response.status_code == 200
    assert len(response.json()) == 2

    response = await client.get("/bookings", params={"status": "accepted"}, headers=user_header(customer_user))
    assert [b["id"] for b in response.json()] == [first["id"]]

    response = await client.get("/bookings", headers=user_header(mechanic_user))
    assert [b["id"] for b in response.json()] == [first["id"]]

    response = await client.get("/bookings", headers=user_header(admin_user))
    assert len(response.json()) == 3

    response = await client.get(
        "/bookings", params={"customer_id": str(other_customer.id)}, headers=user_header(admin_user)
    )
    assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_list_bookings_malformed_status(client: AsyncClient, customer_user: User):
    response = await client.get("/bookings", params={"status": "finished"}, headers=user_header(customer_user))
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_customer_cannot_list_other_customer(client: AsyncClient, customer_user: User, other_customer: User):
    response = await client.get(
        "/bookings", params={"customer_id": str(other_customer.id)}, headers=user_header(customer_user)
    )
    assert response.status_code == 403


# --- Service level ---


@pytest.mark.asyncio
async def test_concurrent_accepts_single_winner(
    booking_service: BookingService, customer_user: User, mechanic_user: User
):
    booking = await booking_service.create(
        customer_user,
        NewBooking(latitude=40.01, longitude=-74.0, description="Dead battery", mechanic_id=mechanic_user.id),
    )

    results = await asyncio.gather(
        booking_service.accept(booking.id, mechanic_user),
        booking_service.accept(booking.id, mechanic_user),
        return_exceptions=True,
    )
    winners = [r for r in results if isinstance(r, Booking)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert len(booking_service.locks) == 0


@pytest.mark.asyncio
async def test_booking_position_is_immutable(
    booking_service: BookingService, customer_user: User
):
    booking = await booking_service.create(
        customer_user, NewBooking(latitude=40.01, longitude=-74.0, description="Oil leak")
    )
    with pytest.raises(ValueError):
        booking.latitude = 41.0
    assert booking.status == BookingStatus.PENDING
