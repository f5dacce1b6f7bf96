"""
Create a login for the CRM backend.

Usage:
    python -m scripts.create_user user@example.com
    CREATE_USER_PASSWORD=... python -m scripts.create_user user@example.com

The password is read from CREATE_USER_PASSWORD or prompted for.
"""
import argparse
import asyncio
import getpass
import os
import sys

from crm_auth.crud.user import UserRepository
from crm_auth.database import dispose_engine, get_session_factory
from crm_auth.utils.security import hash_password


async def create_user(email: str, password: str) -> int:
    async with get_session_factory()() as session:
        users = UserRepository(session)
        if await users.get_by_email(email) is not None:
            print(f"User '{email}' already exists, skipping...")
            return 1
        user = await users.create(email, hash_password(password))
        await session.commit()
        print(f"Created user: {user.email} ({user.id})")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a CRM user")
    parser.add_argument("email")
    args = parser.parse_args(argv)

    password = os.getenv("CREATE_USER_PASSWORD") or getpass.getpass("Password: ")
    if not password:
        print("ERROR: password must not be empty")
        return 2

    async def _run() -> int:
        try:
            return await create_user(args.email, password)
        finally:
            await dispose_engine()

    return asyncio.run(_run())


if __name__ == "__main__":
    sys.exit(main())
