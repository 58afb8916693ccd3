"""Email and password verification against the identity store."""
from __future__ import annotations

from backend.agency.db.models import User, UserRole

from .clock import Clock, SystemClock
from .errors import InvalidCredentials
from .logging import get_logger, mask_email
from .security import verify_password
from .users import UserService, evaluate_account_state


logger = get_logger("agency.credentials")


class CredentialVerifier:
    """Turn an email/password pair into a verified :class:`User` or a coded error."""

    def __init__(self, users: UserService, *, clock: Clock | None = None) -> None:
        self._users = users
        self._clock = clock or SystemClock()

    async def verify(self, email: str, password: str) -> User:
        """Return the identity for ``email`` when ``password`` matches and it may sign in.

        Records the login (timestamp and counter) on success only.
        """

        user = await self._users.find_by_email(email)
        if user is None:
            logger.info("credentials.unknown_email", email=mask_email(email))
            raise InvalidCredentials()

        if user.role == UserRole.ADMIN and not self._users.invariant.is_legitimate_admin(user):
            logger.warning("credentials.admin_email_mismatch", user_id=user.id)
            raise InvalidCredentials()

        if user.password_hash and not verify_password(user.password_hash, password):
            logger.info("credentials.password_mismatch", user_id=user.id)
            raise InvalidCredentials()

        maintenance = False
        if user.role != UserRole.ADMIN:
            maintenance = await self._users.is_maintenance_mode()
        evaluate_account_state(user, maintenance=maintenance, now=self._clock.now())

        await self._users.record_login(user)
        logger.info("credentials.verified", user_id=user.id, role=user.role.value)
        return user


__all__ = ["CredentialVerifier"]
