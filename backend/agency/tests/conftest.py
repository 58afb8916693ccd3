"""Common test fixtures for agency unit and API tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.agency.app.clock import FrozenClock
from backend.agency.app.config import AuthSettings, settings
from backend.agency.app.dependencies import (
    build_login_throttle,
    build_token_service,
    get_admin_invariant,
    get_clock,
    get_email_dispatcher,
    get_identity_cache,
    get_login_throttle,
    get_session,
    get_token_service,
)
from backend.agency.app.email import EmailDispatcher
from backend.agency.app.identity_cache import IdentityCache
from backend.agency.app.main import create_app
from backend.agency.app.throttle import LoginThrottle
from backend.agency.app.tokens import TokenService
from backend.agency.app.users import AdminInvariant, UserService
from backend.agency.db.base import create_all, create_engine, create_session, dispose_engine

from .utils import ADMIN_EMAIL


class InMemoryEmailDispatcher(EmailDispatcher):
    def __init__(self) -> None:
        super().__init__()
        self.outbox: list[dict[str, Any]] = []

    async def send_password_reset_email(
        self,
        *,
        email: str,
        token: str,
        expires_at: datetime,
    ) -> None:
        self.outbox.append(
            {
                "type": "password_reset",
                "email": email,
                "token": token,
                "expires_at": expires_at,
                "url": self.password_reset_url(token),
            }
        )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a throwaway SQLite database for one test."""

    db_path = tmp_path / "agency.sqlite3"
    engine = create_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    await create_all()
    try:
        yield engine
    finally:
        await dispose_engine()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> Callable[[], AsyncSession]:
    """Provide a helper to create fresh async sessions on demand."""

    def factory() -> AsyncSession:
        return create_session()

    return factory


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def auth_settings() -> AuthSettings:
    return settings.auth.model_copy(update={"admin_email": ADMIN_EMAIL})


@pytest.fixture
def invariant() -> AdminInvariant:
    return AdminInvariant(ADMIN_EMAIL)


@pytest.fixture
def identity_cache(clock: FrozenClock) -> IdentityCache:
    return IdentityCache(ttl_seconds=300, capacity=1000, clock=clock)


@pytest.fixture
def throttle(auth_settings: AuthSettings, clock: FrozenClock) -> LoginThrottle:
    return build_login_throttle(auth_settings, clock)


@pytest.fixture
def token_service(auth_settings: AuthSettings, clock: FrozenClock) -> TokenService:
    return build_token_service(auth_settings, clock)


@pytest.fixture
def user_service(
    db_session: AsyncSession,
    identity_cache: IdentityCache,
    invariant: AdminInvariant,
    clock: FrozenClock,
) -> UserService:
    return UserService(db_session, cache=identity_cache, invariant=invariant, clock=clock)


@pytest.fixture
def app(
    db_session: AsyncSession,
    clock: FrozenClock,
    identity_cache: IdentityCache,
    throttle: LoginThrottle,
    token_service: TokenService,
    invariant: AdminInvariant,
) -> FastAPI:
    """Create a FastAPI test application with database and state overrides."""

    application = create_app()
    email_dispatcher = InMemoryEmailDispatcher()

    async def _override_session():
        yield db_session

    application.dependency_overrides[get_session] = _override_session
    application.dependency_overrides[get_email_dispatcher] = lambda: email_dispatcher
    application.dependency_overrides[get_clock] = lambda: clock
    application.dependency_overrides[get_identity_cache] = lambda: identity_cache
    application.dependency_overrides[get_login_throttle] = lambda: throttle
    application.dependency_overrides[get_token_service] = lambda: token_service
    application.dependency_overrides[get_admin_invariant] = lambda: invariant
    application.state.email_dispatcher = email_dispatcher
    return application


@pytest.fixture
def email_outbox(app: FastAPI) -> list[dict[str, Any]]:
    dispatcher: InMemoryEmailDispatcher = app.state.email_dispatcher
    dispatcher.outbox.clear()
    return dispatcher.outbox
