"""Issuance and rotation of access/refresh credential pairs.

Access credentials are stateless. Every refresh credential is backed by a
``refresh_sessions`` row holding its digest; rotating claims that row with a
conditional update so each refresh value yields at most one new pair. Rows
issued from one login share a ``family_id`` and the absolute expiry of that
login.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request, Response
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.models import RefreshSession, User, UserRole

from .audit import client_ip
from .clock import Clock, SystemClock
from .config import AuthSettings
from .errors import SessionExpired, TokenExpired, TokenInvalid
from .locks import KeyedLock
from .logging import get_logger
from .security import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    AccessClaims,
    JWTCodec,
    hash_token,
)


logger = get_logger("agency.tokens")

ROTATED = "ROTATED"
REUSE_DETECTED = "REUSE DETECTED"
SESSION_EXPIRED = "SESSION EXPIRED"
ACCOUNT_BLOCKED = "ACCOUNT BLOCKED"
MANUAL_REVOKE = "MANUAL REVOKE"
REVOKE_ALL = "REVOKE ALL"


@dataclass(frozen=True, slots=True)
class TokenPair:
    """A freshly issued access/refresh pair and the session it belongs to."""

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_expires_at: datetime
    family_id: str
    issued_at: datetime
    user: User

    @property
    def access_max_age(self) -> int:
        return max(int((self.access_expires_at - self.issued_at).total_seconds()), 0)

    @property
    def refresh_max_age(self) -> int:
        return max(int((self.refresh_expires_at - self.issued_at).total_seconds()), 0)


class TokenService:
    """Issue, rotate and revoke credential pairs."""

    def __init__(
        self,
        *,
        access_codec: JWTCodec,
        refresh_codec: JWTCodec,
        settings: AuthSettings,
        clock: Clock | None = None,
    ) -> None:
        self._access_codec = access_codec
        self._refresh_codec = refresh_codec
        self._settings = settings
        self._clock = clock or SystemClock()
        self._locks = KeyedLock()

    @property
    def access_cookie_name(self) -> str:
        return self._settings.access_cookie_name

    @property
    def refresh_cookie_name(self) -> str:
        return self._settings.refresh_cookie_name

    def decode_access(self, token: str) -> AccessClaims:
        return self._access_codec.decode(token)

    async def issue(
        self,
        session: AsyncSession,
        user: User,
        *,
        request: Request | None = None,
        family_id: str | None = None,
        session_started_at: datetime | None = None,
        absolute_expires_at: datetime | None = None,
        parent_id: int | None = None,
    ) -> TokenPair:
        """Mint a pair for ``user`` and persist the refresh session row.

        Without ``family_id`` a new login session starts now. Neither
        credential outlives the session's absolute expiry. The row is only
        flushed; the caller commits.
        """

        now = self._clock.now()
        started = session_started_at or now
        absolute = absolute_expires_at or started + timedelta(
            seconds=self._settings.max_session_seconds
        )
        family = family_id or uuid.uuid4().hex
        role = user.role.value

        access_token, _, access_exp = self._access_codec.encode(
            user_id=user.id,
            email=user.email,
            role=role,
            active=bool(user.is_active),
            token_type=ACCESS_TOKEN_TYPE,
            ttl=timedelta(seconds=self._settings.access_token_ttl_seconds),
            expires_at=min(now + timedelta(seconds=self._settings.access_token_ttl_seconds), absolute),
        )
        refresh_token, jti, refresh_exp = self._refresh_codec.encode(
            user_id=user.id,
            email=user.email,
            role=role,
            active=bool(user.is_active),
            token_type=REFRESH_TOKEN_TYPE,
            ttl=timedelta(seconds=self._settings.refresh_token_ttl_seconds),
            expires_at=min(now + timedelta(seconds=self._settings.refresh_token_ttl_seconds), absolute),
            extra={"sid": family},
        )

        session.add(
            RefreshSession(
                user_id=user.id,
                token_hash=hash_token(refresh_token),
                jti=jti,
                family_id=family,
                parent_id=parent_id,
                session_started_at=started,
                absolute_expires_at=absolute,
                expires_at=refresh_exp,
                user_agent=request.headers.get("user-agent") if request is not None else None,
                ip_address=client_ip(request),
                created_at=now,
            )
        )
        await session.flush()
        logger.info("tokens.issued", user_id=user.id, family_id=family, rotated=parent_id is not None)
        return TokenPair(
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_exp,
            session_expires_at=absolute,
            family_id=family,
            issued_at=now,
            user=user,
        )

    async def rotate(
        self,
        session: AsyncSession,
        refresh_token: str | None,
        *,
        request: Request | None = None,
    ) -> TokenPair:
        """Exchange ``refresh_token`` for a new pair or raise :class:`SessionExpired`.

        Presenting a value that was already rotated revokes its whole family.
        """

        if not refresh_token:
            raise SessionExpired(reason="missing")
        try:
            claims = self._refresh_codec.decode(refresh_token)
        except TokenExpired as exc:
            await self._close_if_past_absolute(session, refresh_token)
            raise SessionExpired(reason="expired") from exc
        except TokenInvalid as exc:
            raise SessionExpired(reason="invalid") from exc
        if claims.token_type != REFRESH_TOKEN_TYPE:
            raise SessionExpired(reason="wrong_type")

        token_hash = hash_token(refresh_token)
        async with self._locks.hold(token_hash):
            result = await session.execute(
                select(RefreshSession)
                .where(RefreshSession.token_hash == token_hash)
                .execution_options(populate_existing=True)
            )
            record = result.scalars().first()
            if record is None:
                raise SessionExpired(reason="unknown")

            now = self._clock.now()
            if record.revoked_at is not None:
                if record.revoked_reason == ROTATED:
                    await self.revoke_family(session, record.family_id, reason=REUSE_DETECTED)
                    await session.commit()
                    logger.warning(
                        "tokens.reuse_detected",
                        user_id=record.user_id,
                        family_id=record.family_id,
                    )
                    raise SessionExpired(reason="reuse")
                raise SessionExpired(reason="revoked")

            if record.absolute_expires_at <= now:
                await self.revoke_family(session, record.family_id, reason=SESSION_EXPIRED)
                await session.commit()
                raise SessionExpired(reason="absolute_expiry")
            if record.expires_at <= now:
                raise SessionExpired(reason="expired")

            user = await session.get(User, record.user_id, populate_existing=True)
            if user is None or not self._may_continue(user, now):
                await self.revoke_family(session, record.family_id, reason=ACCOUNT_BLOCKED)
                await session.commit()
                raise SessionExpired(reason="account_blocked")

            claimed = await session.execute(
                update(RefreshSession)
                .where(RefreshSession.id == record.id, RefreshSession.revoked_at.is_(None))
                .values(revoked_at=now, revoked_reason=ROTATED)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await session.rollback()
                raise SessionExpired(reason="race")

            pair = await self.issue(
                session,
                user,
                request=request,
                family_id=record.family_id,
                session_started_at=record.session_started_at,
                absolute_expires_at=record.absolute_expires_at,
                parent_id=record.id,
            )
            await session.commit()
        return pair

    async def _close_if_past_absolute(self, session: AsyncSession, refresh_token: str) -> None:
        result = await session.execute(
            select(RefreshSession).where(RefreshSession.token_hash == hash_token(refresh_token))
        )
        record = result.scalars().first()
        if record is None or record.absolute_expires_at > self._clock.now():
            return
        if await self.revoke_family(session, record.family_id, reason=SESSION_EXPIRED):
            await session.commit()

    @staticmethod
    def _may_continue(user: User, now: datetime) -> bool:
        if user.role == UserRole.ADMIN:
            return True
        if not user.is_active:
            return False
        return user.logout_until is None or user.logout_until <= now

    async def revoke_family(self, session: AsyncSession, family_id: str, *, reason: str) -> int:
        result = await session.execute(
            update(RefreshSession)
            .where(RefreshSession.family_id == family_id, RefreshSession.revoked_at.is_(None))
            .values(revoked_at=self._clock.now(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        logger.info("tokens.family_revoked", family_id=family_id, reason=reason, rows=result.rowcount)
        return result.rowcount or 0

    async def revoke_token_family(
        self, session: AsyncSession, refresh_token: str | None, *, reason: str
    ) -> int:
        """Revoke the family of a presented refresh value; unknown values are ignored."""

        if not refresh_token:
            return 0
        result = await session.execute(
            select(RefreshSession.family_id).where(
                RefreshSession.token_hash == hash_token(refresh_token)
            )
        )
        family_id = result.scalars().first()
        if family_id is None:
            return 0
        return await self.revoke_family(session, family_id, reason=reason)

    async def revoke_user_sessions(self, session: AsyncSession, user_id: int, *, reason: str) -> int:
        result = await session.execute(
            update(RefreshSession)
            .where(RefreshSession.user_id == user_id, RefreshSession.revoked_at.is_(None))
            .values(revoked_at=self._clock.now(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def revoke_standard_sessions(self, session: AsyncSession, *, reason: str) -> int:
        """Revoke every live refresh session that does not belong to the administrator."""

        standard_ids = select(User.id).where(User.role != UserRole.ADMIN)
        result = await session.execute(
            update(RefreshSession)
            .where(RefreshSession.user_id.in_(standard_ids), RefreshSession.revoked_at.is_(None))
            .values(revoked_at=self._clock.now(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def purge_expired(self, session: AsyncSession) -> int:
        """Delete refresh rows whose credential has expired; the caller commits.

        Revoked rows are kept until then so that replaying a rotated value is
        still recognised as reuse.
        """

        result = await session.execute(
            delete(RefreshSession)
            .where(RefreshSession.expires_at <= self._clock.now())
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount or 0
        logger.info("tokens.purged", removed=removed)
        return removed

    def set_cookies(self, response: Response, pair: TokenPair) -> None:
        common = {
            "secure": self._settings.cookie_secure,
            "samesite": self._settings.cookie_samesite,
            "path": "/",
        }
        response.set_cookie(
            key=self._settings.access_cookie_name,
            value=pair.access_token,
            max_age=pair.access_max_age,
            httponly=False,
            **common,
        )
        response.set_cookie(
            key=self._settings.refresh_cookie_name,
            value=pair.refresh_token,
            max_age=pair.refresh_max_age,
            httponly=True,
            **common,
        )

    def clear_cookies(self, response: Response) -> None:
        for name, httponly in (
            (self._settings.access_cookie_name, False),
            (self._settings.refresh_cookie_name, True),
        ):
            response.delete_cookie(
                key=name,
                path="/",
                secure=self._settings.cookie_secure,
                httponly=httponly,
                samesite=self._settings.cookie_samesite,
            )


__all__ = [
    "ACCOUNT_BLOCKED",
    "MANUAL_REVOKE",
    "REUSE_DETECTED",
    "REVOKE_ALL",
    "ROTATED",
    "SESSION_EXPIRED",
    "TokenPair",
    "TokenService",
]
