"""Create a dispatcher (admin) account in the database.

Dispatchers cannot self-register through the API.

Usage:
    python scripts/create_admin.py dispatch@example.com "Dispatch Desk" Password123
"""

import asyncio
import sys

from sqlalchemy import select

from ondemand.auth.service import hash_password
from ondemand.database import async_session
from ondemand.models.enums import UserRole
from ondemand.models.user import User


async def create_admin(email: str, name: str, password: str) -> None:
    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none():
            print(f"Error: User with email '{email}' already exists.")
            sys.exit(1)

        user = User(
            email=email,
            name=name,
            password_hash=hash_password(password),
            role=UserRole.ADMIN,
            is_active=True,
        )
        db.add(user)
        await db.commit()

        print(f"Dispatcher created successfully: {email} (id={user.id})")


def main() -> None:
    if len(sys.argv) != 4:
        print("Usage: python scripts/create_admin.py <email> <name> <password>")
        sys.exit(1)

    asyncio.run(create_admin(sys.argv[1], sys.argv[2], sys.argv[3]))


if __name__ == "__main__":
    main()
