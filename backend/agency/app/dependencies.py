"""Common FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.session import get_session

from .clock import Clock, SystemClock
from .config import AuthSettings, settings
from .credentials import CredentialVerifier
from .email import EmailDispatcher
from .identity_cache import IdentityCache
from .reset_tokens import ResetTokenService
from .revocation import RevocationController
from .security import JWTCodec
from .throttle import LoginThrottle
from .tokens import TokenService
from .users import AdminInvariant, UserService


def build_token_service(auth: AuthSettings, clock: Clock) -> TokenService:
    """Wire a :class:`TokenService` with one codec per signing secret."""

    return TokenService(
        access_codec=JWTCodec(auth.jwt_secret, algorithm=auth.jwt_algorithm, clock=clock),
        refresh_codec=JWTCodec(auth.jwt_refresh_secret, algorithm=auth.jwt_algorithm, clock=clock),
        settings=auth,
        clock=clock,
    )


def build_login_throttle(auth: AuthSettings, clock: Clock) -> LoginThrottle:
    return LoginThrottle(
        max_attempts=auth.login_max_attempts,
        window_seconds=auth.login_window_seconds,
        ttl_seconds=auth.login_attempt_ttl_seconds,
        capacity=auth.login_attempts_capacity,
        clock=clock,
    )


_clock = SystemClock()
_email_dispatcher = EmailDispatcher()
_token_service = build_token_service(settings.auth, _clock)
_login_throttle = build_login_throttle(settings.auth, _clock)
_identity_cache = IdentityCache(
    ttl_seconds=settings.cache.ttl_seconds,
    capacity=settings.cache.capacity,
    clock=_clock,
)
_admin_invariant = AdminInvariant(settings.auth.admin_email)


def get_clock() -> Clock:
    return _clock


def get_email_dispatcher() -> EmailDispatcher:
    """Return the configured e-mail dispatcher instance."""

    return _email_dispatcher


def get_token_service() -> TokenService:
    return _token_service


def get_login_throttle() -> LoginThrottle:
    """Return the process wide login throttle."""

    return _login_throttle


def get_identity_cache() -> IdentityCache:
    return _identity_cache


def get_admin_invariant() -> AdminInvariant:
    return _admin_invariant


def get_user_service(
    session: AsyncSession = Depends(get_session),
    cache: IdentityCache = Depends(get_identity_cache),
    invariant: AdminInvariant = Depends(get_admin_invariant),
    clock: Clock = Depends(get_clock),
) -> UserService:
    return UserService(session, cache=cache, invariant=invariant, clock=clock)


def get_credential_verifier(
    users: UserService = Depends(get_user_service),
    clock: Clock = Depends(get_clock),
) -> CredentialVerifier:
    return CredentialVerifier(users, clock=clock)


def get_reset_token_service(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> ResetTokenService:
    return ResetTokenService(
        session,
        ttl_seconds=settings.auth.password_reset_token_ttl_seconds,
        clock=clock,
    )


def get_revocation_controller(
    session: AsyncSession = Depends(get_session),
    users: UserService = Depends(get_user_service),
    tokens: TokenService = Depends(get_token_service),
    clock: Clock = Depends(get_clock),
) -> RevocationController:
    return RevocationController(
        session,
        users=users,
        tokens=tokens,
        lockout_seconds=settings.auth.global_logout_seconds,
        clock=clock,
    )


__all__ = [
    "build_login_throttle",
    "build_token_service",
    "get_admin_invariant",
    "get_clock",
    "get_credential_verifier",
    "get_email_dispatcher",
    "get_identity_cache",
    "get_login_throttle",
    "get_reset_token_service",
    "get_revocation_controller",
    "get_session",
    "get_token_service",
    "get_user_service",
]
