"""Pydantic request and response models shared by the API routers."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

from backend.agency.db.models import User, UserRole

from .config import settings


def _clean_name(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Name cannot be empty")
    return cleaned


def _check_password(value: str) -> str:
    if len(value) < settings.auth.min_password_length:
        raise ValueError(
            f"Password must be at least {settings.auth.min_password_length} characters long"
        )
    return value


Name = Annotated[str, AfterValidator(_clean_name)]
Password = Annotated[str, AfterValidator(_check_password)]


class UserResource(BaseModel):
    id: int
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    email: str
    telephone: str | None = None
    role: UserRole
    is_active: bool = Field(alias="isActive")
    logout_until: datetime | None = Field(default=None, alias="logoutUntil")
    last_logout: datetime | None = Field(default=None, alias="lastLogout")
    logout_reason: str | None = Field(default=None, alias="logoutReason")
    logout_count: int = Field(default=0, alias="logoutCount")
    last_login: datetime | None = Field(default=None, alias="lastLogin")
    login_count: int = Field(default=0, alias="loginCount")
    has_password: bool = Field(default=True, alias="hasPassword")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def serialize_user(user: User) -> UserResource:
    return UserResource(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        telephone=user.telephone,
        role=user.role,
        is_active=bool(user.is_active),
        logout_until=user.logout_until,
        last_logout=user.last_logout,
        logout_reason=user.logout_reason,
        logout_count=user.logout_count or 0,
        last_login=user.last_login,
        login_count=user.login_count or 0,
        has_password=bool(user.password_hash),
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


class OperationStatus(BaseModel):
    message: str


class RegisterRequest(BaseModel):
    first_name: Name = Field(alias="firstName", min_length=1, max_length=100)
    last_name: Name = Field(alias="lastName", min_length=1, max_length=100)
    email: EmailStr
    password: Password
    telephone: str | None = Field(default=None, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class AdminCreateUserRequest(BaseModel):
    first_name: Name = Field(alias="firstName", min_length=1, max_length=100)
    last_name: Name = Field(alias="lastName", min_length=1, max_length=100)
    email: EmailStr
    password: Password | None = None
    telephone: str | None = Field(default=None, max_length=32)
    is_active: bool = Field(default=True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class UpdateUserRequest(BaseModel):
    first_name: Name | None = Field(default=None, alias="firstName", max_length=100)
    last_name: Name | None = Field(default=None, alias="lastName", max_length=100)
    email: EmailStr | None = None
    telephone: str | None = Field(default=None, max_length=32)
    role: UserRole | None = None
    is_active: bool | None = Field(default=None, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class LoginRequest(BaseModel):
    email: str | None = None
    password: str = Field(default="")


class TokenResponse(BaseModel):
    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")
    refresh_expires_at: datetime = Field(alias="refreshExpiresAt")
    session_expires_at: datetime = Field(alias="sessionExpiresAt")
    user: UserResource

    model_config = ConfigDict(populate_by_name=True)


class UpdatePasswordRequest(BaseModel):
    current_password: str | None = Field(default=None, alias="currentPassword")
    new_password: Password = Field(alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: Password = Field(alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class AdminResetPasswordRequest(BaseModel):
    new_password: Password = Field(alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class MaintenanceModeRequest(BaseModel):
    enabled: bool


class MaintenanceStatus(BaseModel):
    enabled: bool


class LogoutAllResponse(BaseModel):
    message: str
    users_logged_out: int = Field(alias="usersLoggedOut")
    admin_preserved: bool = Field(alias="adminPreserved")
    admin_email: str | None = Field(default=None, alias="adminEmail")
    duration: str
    timestamp: datetime
    transaction_id: str = Field(alias="transactionId")
    user_emails: list[str] = Field(alias="userEmails")

    model_config = ConfigDict(populate_by_name=True)


class UserStats(BaseModel):
    total: int
    active: int
    inactive: int
    admins: int
    users: int
    locked_out: int = Field(alias="lockedOut")

    model_config = ConfigDict(populate_by_name=True)


class AccessCheck(BaseModel):
    user_id: int = Field(alias="userId")
    allowed: bool
    code: str | None = None
    message: str | None = None
    remaining_hours: int | None = Field(default=None, alias="remainingHours")

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "AccessCheck",
    "AdminCreateUserRequest",
    "AdminResetPasswordRequest",
    "ForgotPasswordRequest",
    "LoginRequest",
    "LogoutAllResponse",
    "MaintenanceModeRequest",
    "MaintenanceStatus",
    "OperationStatus",
    "RegisterRequest",
    "ResetPasswordRequest",
    "TokenResponse",
    "UpdatePasswordRequest",
    "UpdateUserRequest",
    "UserResource",
    "UserStats",
    "serialize_user",
]
