import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from ondemand.geo.index import MechanicIndex
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User
from tests.conftest import make_mechanic, user_header


@pytest.mark.asyncio
async def test_nearby_radius_scenario(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex, customer_user: User
):
    # Roughly 1.1 km from the query point
    near, _ = await make_mechanic(db, mechanic_index, "near@test.com", name="Near", latitude=40.01, longitude=-74.0)

    response = await client.get("/mechanics/nearby", params={"lat": 40.0, "lng": -74.0, "radius": 5})
    assert response.status_code == 200
    data = response.json()
    assert [m["id"] for m in data] == [str(near.id)]
    assert data[0]["distance_km"] == pytest.approx(1.11, abs=0.01)

    response = await client.get("/mechanics/nearby", params={"lat": 40.0, "lng": -74.0, "radius": 0.5})
    assert response.json() == []


@pytest.mark.asyncio
async def test_nearby_orders_by_distance_then_rating(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex
):
    far, _ = await make_mechanic(db, mechanic_index, "far@test.com", latitude=40.05, longitude=-74.0)
    low, _ = await make_mechanic(
        db, mechanic_index, "low@test.com", latitude=40.01, longitude=-74.0, rating_avg=3.0, rating_count=2
    )
    high, _ = await make_mechanic(
        db, mechanic_index, "high@test.com", latitude=40.01, longitude=-74.0, rating_avg=4.8, rating_count=9
    )

    response = await client.get("/mechanics/nearby", params={"lat": 40.0, "lng": -74.0, "radius": 10})
    assert [m["id"] for m in response.json()] == [str(high.id), str(low.id), str(far.id)]


@pytest.mark.asyncio
async def test_nearby_rejects_bad_input(client: AsyncClient):
    response = await client.get("/mechanics/nearby", params={"lat": 91, "lng": 0, "radius": 5})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"

    response = await client.get("/mechanics/nearby", params={"lat": 0, "lng": 0, "radius": 0})
    assert response.status_code == 422

    response = await client.get("/mechanics/nearby", params={"lat": 0, "lng": 0, "radius": 5000})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_location_update_makes_mechanic_visible(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex
):
    user, _ = await make_mechanic(db, mechanic_index, "roaming@test.com", latitude=None, longitude=None)
    params = {"lat": 48.8566, "lng": 2.3522, "radius": 2}
    assert (await client.get("/mechanics/nearby", params=params)).json() == []

    response = await client.put(
        "/mechanics/me/location", json={"latitude": 48.857, "longitude": 2.352}, headers=user_header(user)
    )
    assert response.status_code == 200
    assert response.json()["latitude"] == 48.857

    nearby = (await client.get("/mechanics/nearby", params=params)).json()
    assert [m["id"] for m in nearby] == [str(user.id)]


@pytest.mark.asyncio
async def test_location_update_rejects_bad_coordinates(client: AsyncClient, mechanic_user: User):
    response = await client.put(
        "/mechanics/me/location", json={"latitude": 10.0, "longitude": 190.0}, headers=user_header(mechanic_user)
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_customer_cannot_update_location(client: AsyncClient, customer_user: User):
    response = await client.put(
        "/mechanics/me/location", json={"latitude": 10.0, "longitude": 10.0}, headers=user_header(customer_user)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_availability_toggle(
    client: AsyncClient, db: AsyncSession, mechanic_index: MechanicIndex, mechanic_user: User
):
    params = {"lat": 40.0, "lng": -74.0, "radius": 5}
    response = await client.put(
        "/mechanics/me/availability", json={"is_available": False}, headers=user_header(mechanic_user)
    )
    assert response.status_code == 200
    assert response.json()["is_available"] is False
    assert (await client.get("/mechanics/nearby", params=params)).json() == []

    await client.put("/mechanics/me/availability", json={"is_available": True}, headers=user_header(mechanic_user))
    assert len((await client.get("/mechanics/nearby", params=params)).json()) == 1

    profile = await db.get(MechanicProfile, mechanic_user.id)
    assert profile.is_available is True


@pytest.mark.asyncio
async def test_update_profile_rates(client: AsyncClient, mechanic_index: MechanicIndex, mechanic_user: User):
    response = await client.put(
        "/mechanics/me",
        json={"hourly_rate": "65.00", "specialties": ["tyres", "diagnostics"]},
        headers=user_header(mechanic_user),
    )
    assert response.status_code == 200
    assert Decimal(response.json()["hourly_rate"]) == Decimal("65.00")
    assert mechanic_index.get(mechanic_user.id).specialties == ("tyres", "diagnostics")


@pytest.mark.asyncio
async def test_get_mechanic_detail(client: AsyncClient, mechanic_user: User):
    response = await client.get(f"/mechanics/{mechanic_user.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Sam Mechanic"
    assert data["rating_count"] == 0
    assert data["specialties"] == ["brakes"]


@pytest.mark.asyncio
async def test_get_unknown_mechanic(client: AsyncClient):
    response = await client.get(f"/mechanics/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
