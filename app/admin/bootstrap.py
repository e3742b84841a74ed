from __future__ import annotations

import argparse
import asyncio
import getpass

from sqlalchemy import select

from app.core.database import get_sessionmaker, init_db
from app.models.account import Account
from app.services.auth import hash_password


async def _create_account(email: str, password: str) -> None:
    factory = get_sessionmaker()
    if factory is None:
        raise ValueError("DATABASE_URL is not configured")
    await init_db()
    async with factory() as session:
        result = await session.execute(select(Account).where(Account.email == email))
        if result.scalars().first():
            raise ValueError(f"Account already exists: {email}")

        account = Account(email=email, hashed_password=hash_password(password), is_active=True)
        session.add(account)
        await session.commit()
        await session.refresh(account)

    print(f"Created account: {account.email} (id={account.id})")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create an account for the local identity provider."
    )
    parser.add_argument("--email", required=True, help="Login email.")
    parser.add_argument("--password", help="Password (prompted if omitted).")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    email = args.email.strip().lower()
    password = args.password or getpass.getpass("Password: ")
    if not password.strip():
        raise SystemExit("Password is required")

    try:
        asyncio.run(_create_account(email=email, password=password))
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
