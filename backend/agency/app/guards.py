"""Request authentication and role authorization dependencies."""
from __future__ import annotations

from typing import Iterable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.agency.db.models import UserRole

from .dependencies import get_token_service
from .errors import AccountDisabled, InsufficientRole, InvalidTokenType, SessionInvalid
from .logging import get_logger
from .security import ACCESS_TOKEN_TYPE, AccessClaims
from .tokens import TokenService


logger = get_logger("agency.guards")

_bearer_scheme = HTTPBearer(auto_error=False)


def _extract_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
    cookie_name: str,
) -> str | None:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(cookie_name) or None


async def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    tokens: TokenService = Depends(get_token_service),
) -> AccessClaims:
    """Authenticate the request from its bearer header or access cookie.

    Only the credential itself is consulted; account changes made after it
    was issued take effect once the client obtains a new one.
    """

    token = _extract_token(request, credentials, tokens.access_cookie_name)
    if token is None:
        logger.info("access_guard.missing_credential", path=request.url.path)
        raise SessionInvalid()

    claims = tokens.decode_access(token)
    if not claims.active:
        logger.info("access_guard.inactive", user_id=claims.user_id)
        raise AccountDisabled()
    if claims.token_type != ACCESS_TOKEN_TYPE:
        logger.info("access_guard.wrong_type", user_id=claims.user_id, token_type=claims.token_type)
        raise InvalidTokenType()

    request.state.claims = claims
    return claims


def _role_value(role: UserRole | str) -> str:
    return role.value if isinstance(role, UserRole) else str(role).strip().lower()


def authorize_roles(claims: AccessClaims | None, required: Iterable[UserRole | str]) -> None:
    """Raise :class:`InsufficientRole` unless ``claims`` carries one of ``required``."""

    roles = {_role_value(role) for role in required}
    if not roles:
        logger.debug("role_guard.allowed", reason="no_requirement")
        return
    if claims is None:
        logger.warning("role_guard.denied", reason="no_identity", required=sorted(roles))
        raise InsufficientRole()
    if not claims.role:
        logger.warning("role_guard.denied", reason="no_role", user_id=claims.user_id)
        raise InsufficientRole()
    if claims.role not in roles:
        logger.warning(
            "role_guard.denied",
            reason="role_mismatch",
            user_id=claims.user_id,
            role=claims.role,
            required=sorted(roles),
        )
        raise InsufficientRole()
    logger.debug("role_guard.allowed", user_id=claims.user_id, role=claims.role)


class RequireRoles:
    """Dependency that authenticates the caller and checks its role."""

    def __init__(self, *roles: UserRole | str) -> None:
        self.roles = frozenset(_role_value(role) for role in roles)

    async def __call__(self, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        authorize_roles(claims, self.roles)
        return claims


require_admin = RequireRoles(UserRole.ADMIN)


__all__ = ["RequireRoles", "authorize_roles", "get_current_claims", "require_admin"]
