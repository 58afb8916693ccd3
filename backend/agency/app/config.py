"""Centralized application configuration for the agency backend."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT_DIR = Path(__file__).resolve().parents[3]
_AGENCY_DIR = _ROOT_DIR / "backend" / "agency"
_DEFAULT_ENV_FILES: tuple[Path, ...] = (
    _ROOT_DIR / ".env",
    _AGENCY_DIR / ".env",
)

_EMAIL_STR_ADAPTER = TypeAdapter(EmailStr)

# Placeholders for local runs; HS256 keys shorter than 32 bytes are refused.
DEFAULT_JWT_SECRET = "change-me-access-secret-0000000000000000"
DEFAULT_JWT_REFRESH_SECRET = "change-me-refresh-secret-000000000000000"
_PRODUCTION_ENVS = frozenset({"prod", "production"})

# Unprefixed environment names accepted for nested sections.
_FLAT_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "auth": (
        "JWT_SECRET",
        "JWT_REFRESH_SECRET",
        "ADMIN_EMAIL",
        "EMAIL_USER",
        "FRONTEND_URL",
        "AUTH_COOKIE_SECURE",
        "AUTH_LOGIN_MAX_ATTEMPTS",
        "AUTH_LOGIN_WINDOW_SECONDS",
    ),
    "storage": ("DATABASE_URL", "SQLALCHEMY_ECHO"),
}


class AuthSettings(BaseModel):
    """Credential, throttling and session lifetime configuration."""

    jwt_secret: str = Field(
        default=DEFAULT_JWT_SECRET,
        min_length=32,
        validation_alias=AliasChoices("JWT_SECRET", "AUTH__JWT_SECRET"),
    )
    jwt_refresh_secret: str = Field(
        default=DEFAULT_JWT_REFRESH_SECRET,
        min_length=32,
        validation_alias=AliasChoices("JWT_REFRESH_SECRET", "AUTH__JWT_REFRESH_SECRET"),
    )
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = Field(default=900, ge=60)
    refresh_token_ttl_seconds: int = Field(default=1_800, ge=60)
    max_session_seconds: int = Field(
        default=1_800,
        ge=60,
        description="Absolute lifetime of a login session across refreshes.",
    )
    login_max_attempts: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("AUTH_LOGIN_MAX_ATTEMPTS", "AUTH__LOGIN_MAX_ATTEMPTS"),
    )
    login_window_seconds: int = Field(
        default=900,
        ge=1,
        validation_alias=AliasChoices("AUTH_LOGIN_WINDOW_SECONDS", "AUTH__LOGIN_WINDOW_SECONDS"),
    )
    login_attempt_ttl_seconds: int = Field(default=1_800, ge=1)
    login_attempts_capacity: int = Field(default=1_000, ge=1)
    password_reset_token_ttl_seconds: int = Field(default=1_200, ge=60, le=86_400)
    global_logout_seconds: int = Field(
        default=86_400,
        ge=60,
        description="Lockout window applied to every standard identity by a mass logout.",
    )
    min_password_length: int = Field(default=8, ge=1)
    admin_email: EmailStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ADMIN_EMAIL", "EMAIL_USER", "AUTH__ADMIN_EMAIL"),
    )
    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    cookie_secure: bool = Field(
        default=True,
        validation_alias=AliasChoices("AUTH_COOKIE_SECURE", "AUTH__COOKIE_SECURE"),
    )
    cookie_samesite: str = Field(default="none", pattern="^(lax|strict|none)$")
    public_base_url: str = Field(
        default="http://localhost:4200",
        validation_alias=AliasChoices("FRONTEND_URL", "AUTH__PUBLIC_BASE_URL"),
        description="Front-end origin used to build password reset links.",
    )
    password_reset_path: str = Field(default="/reset-password")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("admin_email", mode="before")
    @classmethod
    def _normalise_admin_email(cls, value: str | EmailStr | None) -> EmailStr | None:
        if value is None:
            return None
        normalised = str(value).strip().lower()
        if not normalised:
            return None
        return _EMAIL_STR_ADAPTER.validate_python(normalised)

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _normalise_public_base_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("FRONTEND_URL must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("FRONTEND_URL must be a non-empty string")
        return cleaned.rstrip("/") or cleaned

    @field_validator("password_reset_path", mode="before")
    @classmethod
    def _normalise_path(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("Endpoint paths must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Endpoint paths must be non-empty strings")
        if not cleaned.startswith("/"):
            cleaned = f"/{cleaned}"
        return cleaned

    @model_validator(mode="after")
    def _check_lifetimes(self) -> "AuthSettings":
        if self.refresh_token_ttl_seconds > self.max_session_seconds:
            raise ValueError("Refresh token lifetime cannot exceed the absolute session lifetime")
        if self.access_token_ttl_seconds > self.max_session_seconds:
            raise ValueError("Access token lifetime cannot exceed the absolute session lifetime")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


class CacheSettings(BaseModel):
    """In-process identity cache configuration."""

    ttl_seconds: int = Field(default=300, ge=1)
    capacity: int = Field(default=1_000, ge=1)


class StorageSettings(BaseModel):
    """Relational storage configuration."""

    database_url: str = Field(
        default="sqlite+aiosqlite:///./agency.db",
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )
    sqlalchemy_echo: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("SQLALCHEMY_ECHO", "STORAGE__SQLALCHEMY_ECHO"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("database_url", mode="before")
    @classmethod
    def _ensure_database_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("DATABASE_URL must be configured")
        url = value.strip()
        if not url:
            raise ValueError("DATABASE_URL must be a non-empty string")
        return url


class Settings(BaseSettings):
    """Top level configuration for the agency API."""

    env: str = Field(default="dev", validation_alias=AliasChoices("ENV", "APP_ENV"))
    cors_origins: str = Field(
        default="http://localhost:4200",
        validation_alias=AliasChoices("CORS_ORIGINS", "CORS__ORIGINS"),
    )
    auth: AuthSettings = Field(default_factory=AuthSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_env_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        for section, names in _FLAT_ENV_NAMES.items():
            found = {name: os.environ[name] for name in names if name in os.environ}
            current = data.get(section)
            if not found or (current is not None and not isinstance(current, dict)):
                continue
            merged = dict(current or {})
            for name, value in found.items():
                merged.setdefault(name, value)
            data[section] = merged
        return data

    @model_validator(mode="after")
    def _reject_placeholder_secrets(self) -> "Settings":
        if self.env.strip().lower() not in _PRODUCTION_ENVS:
            return self
        if self.auth.jwt_secret == DEFAULT_JWT_SECRET or (
            self.auth.jwt_refresh_secret == DEFAULT_JWT_REFRESH_SECRET
        ):
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be set in production")
        return self

    @property
    def allowed_origins(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]

    @property
    def database_url(self) -> str:
        return self.storage.database_url

    @property
    def sqlalchemy_echo(self) -> bool:
        if self.storage.sqlalchemy_echo is not None:
            return self.storage.sqlalchemy_echo
        return False


settings = Settings()

__all__ = [
    "AuthSettings",
    "DEFAULT_JWT_REFRESH_SECRET",
    "DEFAULT_JWT_SECRET",
    "CacheSettings",
    "Settings",
    "StorageSettings",
    "settings",
]
