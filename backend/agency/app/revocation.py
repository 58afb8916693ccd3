"""Single-session logout and administrative mass revocation."""
from __future__ import annotations

import uuid
from datetime import timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.models import User, UserRole

from .clock import Clock, SystemClock
from .errors import ValidationError
from .logging import get_logger, mask_email
from .schemas import LogoutAllResponse
from .security import AccessClaims
from .tokens import MANUAL_REVOKE, REVOKE_ALL, TokenService
from .users import UserService


logger = get_logger("agency.revocation")


def _format_duration(seconds: int) -> str:
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


class RevocationController:
    """End one session or sign every standard identity out for a lockout window.

    Access credentials that were already issued stay valid until they expire;
    only refresh sessions are revoked.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        users: UserService,
        tokens: TokenService,
        lockout_seconds: int = 86_400,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._users = users
        self._tokens = tokens
        self._lockout = timedelta(seconds=lockout_seconds)
        self._clock = clock or SystemClock()

    async def logout(
        self,
        claims: AccessClaims,
        refresh_token: str | None,
        *,
        reason: str = "user_logout",
    ) -> str:
        """Record the logout and revoke the presented refresh session family.

        Returns the logout transaction id.
        """

        now = self._clock.now()
        transaction_id = uuid.uuid4().hex
        user = await self._session.get(User, claims.user_id, populate_existing=True)
        if user is not None:
            user.last_logout = now
            user.logout_reason = reason
            user.logout_transaction_id = transaction_id
            user.logout_count = (user.logout_count or 0) + 1

        revoked = await self._tokens.revoke_token_family(
            self._session, refresh_token, reason=MANUAL_REVOKE
        )
        await self._session.commit()
        await self._users.cache.invalidate(claims.user_id, email=claims.email)
        logger.info(
            "auth.logout",
            user_id=claims.user_id,
            reason=reason,
            sessions_revoked=revoked,
            transaction_id=transaction_id,
        )
        return transaction_id

    async def logout_all(self, admin_claims: AccessClaims) -> LogoutAllResponse:
        """Lock every active standard identity out and revoke their refresh sessions.

        The administrator is excluded by role and by e-mail. The update runs as
        one statement inside one transaction.
        """

        admin_email = self._users.invariant.admin_email
        if not admin_email:
            raise ValidationError("The administrator e-mail is not configured")
        admin = await self._users.find_by_email(admin_email)
        if admin is None or admin.role != UserRole.ADMIN:
            raise ValidationError("The administrator account was not found")

        now = self._clock.now()
        transaction_id = uuid.uuid4().hex
        targets = and_(
            User.role != UserRole.ADMIN,
            User.email != admin_email,
            User.is_active.is_(True),
        )

        result = await self._session.execute(select(User.email).where(targets).order_by(User.id))
        emails = list(result.scalars().all())

        if emails:
            await self._session.execute(
                update(User)
                .where(targets)
                .values(
                    logout_until=now + self._lockout,
                    last_logout=now,
                    logout_reason=REVOKE_ALL,
                    logout_transaction_id=transaction_id,
                    logout_count=User.logout_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        revoked = await self._tokens.revoke_standard_sessions(self._session, reason=REVOKE_ALL)
        await self._session.commit()
        await self._users.cache.clear()

        duration = _format_duration(int(self._lockout.total_seconds()))
        logger.warning(
            "users.logout_all",
            actor_user_id=admin_claims.user_id,
            users_logged_out=len(emails),
            sessions_revoked=revoked,
            transaction_id=transaction_id,
            duration=duration,
        )
        message = (
            f"{len(emails)} user(s) signed out for {duration}"
            if emails
            else "No standard user to sign out"
        )
        return LogoutAllResponse(
            message=message,
            users_logged_out=len(emails),
            admin_preserved=True,
            admin_email=mask_email(admin_email),
            duration=duration,
            timestamp=now,
            transaction_id=transaction_id,
            user_emails=emails,
        )


__all__ = ["RevocationController"]
