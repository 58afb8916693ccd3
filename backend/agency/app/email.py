"""Outbound e-mail hooks used by the password reset flow."""
from __future__ import annotations

import logging
from datetime import datetime

from .config import settings
from .logging import mask_email

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """Send password reset links to end users.

    The default implementation only logs the message; deployments plug in a
    transport by subclassing and overriding :meth:`send_password_reset_email`.
    """

    def __init__(self) -> None:
        self._config = settings.auth

    def password_reset_url(self, token: str) -> str:
        base = self._config.public_base_url.rstrip("/")
        return f"{base}{self._config.password_reset_path}?token={token}"

    async def send_password_reset_email(
        self,
        *,
        email: str,
        token: str,
        expires_at: datetime,
    ) -> None:
        """Send a password reset link for the supplied ``token``."""

        logger.info(
            "Dispatching password reset email",
            extra={
                "email": mask_email(email),
                "expires_at": expires_at.isoformat(),
                "ttl_seconds": self._config.password_reset_token_ttl_seconds,
            },
        )


__all__ = ["EmailDispatcher"]
