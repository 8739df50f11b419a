"""Seed script for local development.

Creates one dispatcher, two positioned mechanics in Manhattan and two
customers. Idempotent: existing users are left untouched.
Run with: python seed.py

Passwords come from SEED_ADMIN_PASSWORD / SEED_USER_PASSWORD with dev-only
fallbacks.
"""

import asyncio
import os
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from ondemand.config import settings

# Guard: prevent running on production
if settings.APP_ENV == "production":
    print("ERROR: Cannot seed production database.")
    sys.exit(1)

from sqlalchemy import select

from ondemand.auth.service import hash_password
from ondemand.database import Base, async_session, engine
from ondemand.models.enums import UserRole
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User

SEED_ADMIN_PASSWORD = os.environ.get("SEED_ADMIN_PASSWORD", "Admin1234!")
SEED_USER_PASSWORD = os.environ.get("SEED_USER_PASSWORD", "Test1234!")

SEED_USERS = [
    {"email": "dispatch@ondemand.local", "name": "Dispatch Desk", "role": UserRole.ADMIN, "password": SEED_ADMIN_PASSWORD},
    {"email": "mechanic1@ondemand.local", "name": "Sam Rivera", "role": UserRole.MECHANIC, "password": SEED_USER_PASSWORD},
    {"email": "mechanic2@ondemand.local", "name": "Alex Chen", "role": UserRole.MECHANIC, "password": SEED_USER_PASSWORD},
    {"email": "customer1@ondemand.local", "name": "Jordan Lee", "role": UserRole.CUSTOMER, "password": SEED_USER_PASSWORD},
    {"email": "customer2@ondemand.local", "name": "Casey Morgan", "role": UserRole.CUSTOMER, "password": SEED_USER_PASSWORD},
]

MECHANIC_PROFILES = [
    {
        "email": "mechanic1@ondemand.local",
        "latitude": 40.7580,
        "longitude": -73.9855,
        "specialties": ["brakes", "batteries"],
        "hourly_rate": Decimal("55.00"),
    },
    {
        "email": "mechanic2@ondemand.local",
        "latitude": 40.7128,
        "longitude": -74.0060,
        "specialties": ["engine", "diagnostics"],
        "hourly_rate": Decimal("65.00"),
    },
]


async def seed() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as db:
        user_map: dict[str, User] = {}

        for user_data in SEED_USERS:
            result = await db.execute(select(User).where(User.email == user_data["email"]))
            existing = result.scalar_one_or_none()
            if existing:
                print(f"  [skip] User {user_data['email']} already exists")
                user_map[user_data["email"]] = existing
                continue

            user = User(
                id=uuid.uuid4(),
                email=user_data["email"],
                name=user_data["name"],
                password_hash=hash_password(user_data["password"]),
                role=user_data["role"],
                is_active=True,
            )
            db.add(user)
            await db.flush()
            user_map[user_data["email"]] = user
            print(f"  [created] User {user_data['email']} ({user_data['role'].value})")

        for profile_data in MECHANIC_PROFILES:
            user = user_map[profile_data["email"]]
            result = await db.execute(select(MechanicProfile).where(MechanicProfile.user_id == user.id))
            if result.scalar_one_or_none():
                print(f"  [skip] Profile for {profile_data['email']} already exists")
                continue
            db.add(
                MechanicProfile(
                    user_id=user.id,
                    latitude=profile_data["latitude"],
                    longitude=profile_data["longitude"],
                    location_updated_at=datetime.now(timezone.utc),
                    is_available=True,
                    specialties=profile_data["specialties"],
                    hourly_rate=profile_data["hourly_rate"],
                    monthly_rate=settings.DEFAULT_MONTHLY_RATE,
                    yearly_rate=settings.DEFAULT_YEARLY_RATE,
                )
            )
            await db.flush()
            print(f"  [created] MechanicProfile for {profile_data['email']}")

        await db.commit()
    print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
