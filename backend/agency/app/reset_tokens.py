"""Helpers for issuing and consuming one-time password reset tokens."""
from __future__ import annotations

from datetime import timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.agency.db.models import PasswordResetToken, User

from .clock import Clock, SystemClock
from .logging import get_logger
from .security import generate_opaque_token, hash_token


logger = get_logger("agency.reset_tokens")


class ResetTokenService:
    """Issue and consume single-use reset tokens associated with a user."""

    def __init__(self, session: AsyncSession, *, ttl_seconds: int, clock: Clock | None = None) -> None:
        self._session = session
        self._ttl = timedelta(seconds=int(ttl_seconds))
        self._clock = clock or SystemClock()

    async def issue(self, user: User) -> tuple[PasswordResetToken, str]:
        """Replace any previous token for ``user`` and return ``(record, plaintext)``."""

        issued_at = self._clock.now()
        await self._session.execute(
            delete(PasswordResetToken).where(PasswordResetToken.user_id == user.id)
        )

        token = generate_opaque_token()
        record = PasswordResetToken(
            user_id=user.id,
            token_hash=hash_token(token),
            expires_at=issued_at + self._ttl,
            created_at=issued_at,
        )
        self._session.add(record)
        await self._session.flush()
        return record, token

    async def consume(self, token: str) -> PasswordResetToken | None:
        """Mark ``token`` as consumed and return the record if it was still usable.

        The claim is a conditional update, so of several concurrent callers at
        most one gets the record back.
        """

        token_hash = hash_token(token)
        now = self._clock.now()
        claimed = await self._session.execute(
            update(PasswordResetToken)
            .where(
                PasswordResetToken.token_hash == token_hash,
                PasswordResetToken.consumed_at.is_(None),
                PasswordResetToken.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return None

        result = await self._session.execute(
            select(PasswordResetToken)
            .options(selectinload(PasswordResetToken.user))
            .where(PasswordResetToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def purge_expired(self) -> int:
        """Delete consumed and expired tokens; the caller commits."""

        result = await self._session.execute(
            delete(PasswordResetToken)
            .where(
                or_(
                    PasswordResetToken.consumed_at.is_not(None),
                    PasswordResetToken.expires_at <= self._clock.now(),
                )
            )
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount or 0
        logger.info("reset_tokens.purged", removed=removed)
        return removed


__all__ = ["ResetTokenService"]
