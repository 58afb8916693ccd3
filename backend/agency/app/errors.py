"""Coded exceptions raised by the authentication and user services.

Every error carries an HTTP status, a stable ``code`` and an optional
``context`` mapping. The exception handler installed by
:func:`register_exception_handlers` renders them as
``{"message": ..., "code": ..., **context}``.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Mapping

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .logging import get_logger


logger = get_logger("agency.errors")


class AgencyError(Exception):
    """Base class for errors mapped to JSON responses."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.context: dict[str, Any] = dict(context or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "code": self.code}
        payload.update(self.context)
        return payload


# Authentication


class AuthenticationError(AgencyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    default_message = "Authentication failed"


class InvalidCredentials(AuthenticationError):
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class SessionInvalid(AuthenticationError):
    code = "SESSION_INVALID"
    default_message = "Authentication required"


class TokenInvalid(AuthenticationError):
    code = "TOKEN_INVALID"
    default_message = "Invalid token"


class TokenExpired(AuthenticationError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, context={"requiresRefresh": True})


class InvalidTokenType(AuthenticationError):
    code = "INVALID_TOKEN_TYPE"
    default_message = "Invalid token type"


class SessionExpired(AuthenticationError):
    """Refresh was refused; the client must log in again."""

    code = "SESSION_EXPIRED"
    default_message = "Session expired, please log in again"

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        super().__init__(message, context={"loggedOut": True, "requiresReauth": True})
        self.reason = reason


# Authorization


class AuthorizationError(AgencyError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Access denied"


class InsufficientRole(AuthorizationError):
    code = "INSUFFICIENT_ROLE"
    default_message = "Insufficient role"


class AdminProtected(AuthorizationError):
    code = "ADMIN_PROTECTED"
    default_message = "The administrator account cannot be modified this way"


# Account state


class AccountStateError(AgencyError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCOUNT_STATE"


class AccountDisabled(AccountStateError):
    code = "COMPTE_DESACTIVE"
    default_message = "Account disabled, contact the administrator"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, context={"requiresAdmin": True})


class TemporarilyLockedOut(AccountStateError):
    code = "COMPTE_TEMPORAIREMENT_DECONNECTE"

    def __init__(self, *, logout_until: datetime, remaining_seconds: float) -> None:
        remaining_hours = max(1, math.ceil(remaining_seconds / 3600))
        super().__init__(
            f"Account temporarily signed out, try again in {remaining_hours} hour(s)",
            context={
                "remainingHours": remaining_hours,
                "logoutUntil": logout_until.isoformat(),
            },
        )
        self.remaining_hours = remaining_hours
        self.logout_until = logout_until


class PasswordResetRequired(AccountStateError):
    code = "PASSWORD_RESET_REQUIRED"
    default_message = "A password must be set before signing in"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, context={"requiresPasswordReset": True})


class MaintenanceMode(AccountStateError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "MAINTENANCE_MODE"
    default_message = "The service is under maintenance, please come back later"


# Rate limiting


class RateLimitError(AgencyError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"


class TooManyAttempts(RateLimitError):
    code = "TOO_MANY_ATTEMPTS"

    def __init__(
        self,
        *,
        retry_after: int,
        attempts: int,
        max_attempts: int,
        window_minutes: int,
    ) -> None:
        super().__init__(
            f"Too many login attempts, try again in {retry_after} seconds",
            context={
                "retryAfter": retry_after,
                "attempts": attempts,
                "maxAttempts": max_attempts,
                "windowMinutes": window_minutes,
            },
        )
        self.retry_after = retry_after
        self.attempts = attempts
        self.max_attempts = max_attempts


# Validation and lookups


class ValidationError(AgencyError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class MissingCredentials(ValidationError):
    code = "MISSING_CREDENTIALS"
    default_message = "Email is required"


class InvalidPassword(ValidationError):
    code = "INVALID_PASSWORD"
    default_message = "Password does not meet the requirements"


class InvalidResetToken(ValidationError):
    code = "INVALID_RESET_TOKEN"
    default_message = "Invalid or expired token"


class NotFoundError(AgencyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AgencyError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "Resource already exists"


def error_response(exc: AgencyError) -> JSONResponse:
    headers: dict[str, str] | None = None
    if isinstance(exc, TooManyAttempts):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Render :class:`AgencyError` subclasses with their status and context."""

    @app.exception_handler(AgencyError)
    async def handle_agency_error(request: Request, exc: AgencyError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 and exc.status_code != 503 else logger.warning
        log(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
        )
        return error_response(exc)


__all__ = [
    "AccountDisabled",
    "AccountStateError",
    "AdminProtected",
    "AgencyError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "InsufficientRole",
    "InvalidCredentials",
    "InvalidPassword",
    "InvalidResetToken",
    "InvalidTokenType",
    "MaintenanceMode",
    "MissingCredentials",
    "NotFoundError",
    "PasswordResetRequired",
    "RateLimitError",
    "SessionExpired",
    "SessionInvalid",
    "TemporarilyLockedOut",
    "TokenExpired",
    "TokenInvalid",
    "TooManyAttempts",
    "ValidationError",
    "error_response",
    "register_exception_handlers",
]
