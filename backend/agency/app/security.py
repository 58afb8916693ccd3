"""Password hashing and signed credential helpers."""
from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Final, Mapping

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jwt import InvalidTokenError

from .clock import Clock, SystemClock
from .errors import TokenExpired, TokenInvalid

_PASSWORD_HASHER: Final[PasswordHasher] = PasswordHasher()

ACCESS_TOKEN_TYPE: Final[str] = "access"
REFRESH_TOKEN_TYPE: Final[str] = "refresh"


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(stored_hash: str | None, candidate: str) -> bool:
    """Verify a plaintext password against the stored hash."""

    if not stored_hash:
        return False
    try:
        return _PASSWORD_HASHER.verify(stored_hash, candidate)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def hash_token(token: str) -> str:
    """Digest opaque or signed tokens before they are persisted."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True, slots=True)
class AccessClaims:
    """Identity snapshot carried by a credential.

    ``active`` reflects the account at issuance time; later changes only show
    up once a new credential is issued.
    """

    user_id: int
    email: str
    role: str
    active: bool
    token_type: str
    jti: str
    expires_at: datetime
    session_id: str | None = None
    raw: Mapping[str, Any] | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class JWTCodec:
    """Encode and decode HS256 credentials against one signing secret."""

    def __init__(self, secret: str, *, algorithm: str = "HS256", clock: Clock | None = None) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock or SystemClock()

    def encode(
        self,
        *,
        user_id: int,
        email: str,
        role: str,
        token_type: str,
        ttl: timedelta,
        active: bool = True,
        expires_at: datetime | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> tuple[str, str, datetime]:
        """Return ``(token, jti, expires_at)`` for a new credential."""

        now = self._clock.now()
        exp = expires_at or now + ttl
        jti = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "active": active,
            "tokenType": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        if extra:
            payload.update(extra)
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return token, jti, datetime.fromtimestamp(payload["exp"], tz=timezone.utc)

    def decode(self, token: str) -> AccessClaims:
        """Verify the signature and expiry of ``token`` against the clock."""

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={
                    "require": ["sub", "exp", "tokenType"],
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except InvalidTokenError as exc:
            raise TokenInvalid() from exc

        try:
            exp = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            user_id = int(payload["sub"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if exp <= self._clock.now():
            raise TokenExpired()

        active = payload.get("active")
        return AccessClaims(
            user_id=user_id,
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
            active=active is not False,
            token_type=str(payload["tokenType"]),
            jti=str(payload.get("jti") or ""),
            expires_at=exp,
            session_id=payload.get("sid"),
            raw=payload,
        )


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "AccessClaims",
    "JWTCodec",
    "REFRESH_TOKEN_TYPE",
    "generate_opaque_token",
    "hash_password",
    "hash_token",
    "verify_password",
]
