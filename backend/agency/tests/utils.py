"""Testing utilities for agency API tests."""
from __future__ import annotations

from datetime import datetime

from httpx import AsyncClient, Response
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.app.security import hash_password
from backend.agency.db.models import User, UserRole

ADMIN_EMAIL = "admin@agency.example.com"
ADMIN_PASSWORD = "Admin-Secret-123"
DEFAULT_PASSWORD = "correct-horse"


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    password: str | None = DEFAULT_PASSWORD,
    role: UserRole = UserRole.USER,
    first_name: str = "Test",
    last_name: str = "User",
    active: bool = True,
    logout_until: datetime | None = None,
) -> User:
    """Persist an identity directly, bypassing the registration rules."""

    user = User(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password_hash=hash_password(password) if password else None,
        role=role,
        is_active=active,
        logout_until=logout_until,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def create_admin(session: AsyncSession, *, password: str = ADMIN_PASSWORD) -> User:
    return await create_user(
        session,
        email=ADMIN_EMAIL,
        password=password,
        role=UserRole.ADMIN,
        first_name="Agency",
        last_name="Admin",
    )


async def login(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD) -> Response:
    return await client.post("/auth/login", json={"email": email, "password": password})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def cookie_header(**cookies: str) -> dict[str, str]:
    """Build an explicit ``Cookie`` header; the test client never replays secure cookies over http."""

    return {"Cookie": "; ".join(f"{name}={value}" for name, value in cookies.items())}


def set_cookie_headers(response: Response, name: str) -> list[str]:
    return [
        header
        for header in response.headers.get_list("set-cookie")
        if header.split("=", 1)[0].strip() == name
    ]


def extract_cookie(response: Response, name: str) -> str | None:
    headers = set_cookie_headers(response, name)
    if not headers:
        return None
    value = headers[-1].split("=", 1)[1].split(";", 1)[0]
    return value.strip('"')
