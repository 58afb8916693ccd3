#!/usr/bin/env python3
"""Seed script to create or update the single administrator account."""

from __future__ import annotations

import argparse
import asyncio
from getpass import getpass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.app.config import settings
from backend.agency.app.errors import AdminProtected, AgencyError
from backend.agency.app.security import hash_password
from backend.agency.app.users import AdminInvariant, normalise_email
from backend.agency.db.base import create_all, create_engine, create_session, dispose_engine
from backend.agency.db.models import User, UserRole


async def ensure_admin(
    session: AsyncSession,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    invariant: AdminInvariant,
) -> User:
    """Create the administrator, or promote and update the identity bound to ``email``.

    ``email`` must be the reserved administrator address when one is
    configured, and no other administrator may exist.
    """

    normalised = normalise_email(email)
    if invariant.admin_email and not invariant.is_reserved(normalised):
        raise AdminProtected("The administrator must use the configured ADMIN_EMAIL address")

    result = await session.execute(select(User).where(User.role == UserRole.ADMIN))
    for admin in result.scalars().all():
        if admin.email != normalised:
            raise AdminProtected("Another administrator already exists")

    result = await session.execute(select(User).where(func.lower(User.email) == normalised))
    user = result.scalars().first()
    if user is None:
        user = User(
            first_name=first_name,
            last_name=last_name,
            email=normalised,
            password_hash=hash_password(password),
            role=UserRole.ADMIN,
            is_active=True,
        )
        session.add(user)
    else:
        user.password_hash = hash_password(password)
        user.role = UserRole.ADMIN
        user.is_active = True
        user.logout_until = None

    await session.commit()
    await session.refresh(user)
    return user


async def _seed_admin(
    *,
    database_url: str,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
) -> None:
    create_engine(database_url, echo=False)
    await create_all()

    session = create_session()
    try:
        user = await ensure_admin(
            session,
            email=email,
            password=password,
            first_name=first_name,
            last_name=last_name,
            invariant=AdminInvariant(settings.auth.admin_email or email),
        )
    except IntegrityError as exc:  # pragma: no cover - interactive script guard
        await session.rollback()
        raise SystemExit(f"Failed to create admin user: {exc}") from exc
    except AgencyError as exc:
        await session.rollback()
        raise SystemExit(f"Failed to create admin user: {exc.message}") from exc
    finally:
        await session.close()
        await dispose_engine()

    print(f"Admin account ready: {user.full_name} <{user.email}>")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the administrator of the agency database")
    parser.add_argument(
        "--email",
        default=settings.auth.admin_email,
        help="Admin e-mail address (defaults to ADMIN_EMAIL).",
    )
    parser.add_argument("--first-name", default="Admin", help="Administrator first name")
    parser.add_argument("--last-name", default="Agency", help="Administrator last name")
    parser.add_argument(
        "--password",
        default=None,
        help="Admin password. If omitted, an interactive prompt is shown.",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL to connect to (defaults to configured application URL).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    if not args.email:
        raise SystemExit("An administrator e-mail is required (--email or ADMIN_EMAIL)")
    password = args.password or getpass("Admin password: ")
    if len(password) < settings.auth.min_password_length:
        raise SystemExit(
            f"Password must be at least {settings.auth.min_password_length} characters long"
        )

    asyncio.run(
        _seed_admin(
            database_url=args.database_url,
            email=args.email,
            password=password,
            first_name=args.first_name,
            last_name=args.last_name,
        )
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
