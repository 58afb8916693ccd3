"""Identity store access, the single administrator rule and cached read views."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.models import SystemSetting, User, UserRole

from .clock import Clock, SystemClock
from .errors import (
    AccountDisabled,
    AdminProtected,
    AgencyError,
    ConflictError,
    InvalidCredentials,
    InvalidPassword,
    MaintenanceMode,
    NotFoundError,
    PasswordResetRequired,
    TemporarilyLockedOut,
)
from .identity_cache import IdentityCache, make_key
from .logging import get_logger, mask_email
from .schemas import AccessCheck, UserResource, UserStats, serialize_user
from .security import hash_password, verify_password


logger = get_logger("agency.users")

MAINTENANCE_KEY = "maintenance_mode"


def normalise_email(email: str) -> str:
    return email.strip().lower()


class AdminInvariant:
    """The one place that enforces the single privileged identity rule.

    At most one ``admin`` exists, bound to the reserved e-mail. It cannot be
    deleted, deactivated, demoted, locked out or moved to another e-mail, and
    no other identity can be promoted.
    """

    def __init__(self, admin_email: str | None) -> None:
        self._admin_email = normalise_email(admin_email) if admin_email else None

    @property
    def admin_email(self) -> str | None:
        return self._admin_email

    def is_reserved(self, email: str | None) -> bool:
        return bool(self._admin_email and email and normalise_email(email) == self._admin_email)

    def is_legitimate_admin(self, user: User) -> bool:
        return user.role == UserRole.ADMIN and self.is_reserved(user.email)

    def role_for_registration(self, email: str, *, admin_exists: bool) -> UserRole:
        if self.is_reserved(email) and not admin_exists:
            return UserRole.ADMIN
        return UserRole.USER

    def check_create(self, email: str, role: UserRole, *, admin_exists: bool) -> None:
        if role == UserRole.ADMIN:
            if not self.is_reserved(email):
                raise AdminProtected("Only the reserved administrator e-mail can hold the admin role")
            if admin_exists:
                raise ConflictError("An administrator already exists")
        elif self.is_reserved(email):
            raise AdminProtected("The administrator e-mail is reserved")

    def check_update(
        self,
        user: User,
        *,
        email: str | None = None,
        role: UserRole | None = None,
        is_active: bool | None = None,
        logout_until: datetime | None = None,
    ) -> None:
        if user.role == UserRole.ADMIN:
            if role is not None and role != UserRole.ADMIN:
                raise AdminProtected("The administrator cannot be demoted")
            if is_active is False:
                raise AdminProtected("The administrator cannot be deactivated")
            if logout_until is not None:
                raise AdminProtected("The administrator cannot be locked out")
            if email is not None and not self.is_reserved(email):
                raise AdminProtected("The administrator e-mail cannot be changed")
            return
        if role == UserRole.ADMIN:
            raise AdminProtected("Only one administrator may exist")
        if email is not None and self.is_reserved(email):
            raise AdminProtected("The administrator e-mail is reserved")

    def check_delete(self, user: User) -> None:
        if user.role == UserRole.ADMIN:
            raise AdminProtected("The administrator cannot be deleted")


def evaluate_account_state(
    user: User,
    *,
    maintenance: bool,
    now: datetime,
) -> None:
    """Raise the account-state error that blocks ``user`` from signing in, if any.

    The administrator is only ever refused for a missing password.
    """

    if user.role == UserRole.ADMIN:
        if not user.password_hash:
            raise PasswordResetRequired()
        return
    if maintenance:
        raise MaintenanceMode()
    if not user.is_active:
        raise AccountDisabled()
    if user.logout_until is not None and user.logout_until > now:
        remaining = (user.logout_until - now).total_seconds()
        raise TemporarilyLockedOut(logout_until=user.logout_until, remaining_seconds=remaining)
    if not user.password_hash:
        raise PasswordResetRequired()


class UserService:
    """Request scoped facade over the ``users`` table.

    Read views (single identity, lists, statistics, access checks) go through
    the :class:`IdentityCache`; every write invalidates the entries it can
    affect once the transaction is committed.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        cache: IdentityCache,
        invariant: AdminInvariant,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._cache = cache
        self._invariant = invariant
        self._clock = clock or SystemClock()

    @property
    def invariant(self) -> AdminInvariant:
        return self._invariant

    @property
    def cache(self) -> IdentityCache:
        return self._cache

    # Store access -----------------------------------------------------

    async def get(self, user_id: int) -> User:
        user = await self._session.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def find_by_email(self, email: str) -> User | None:
        stmt = select(User).where(func.lower(User.email) == normalise_email(email))
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def exists(self, email: str) -> bool:
        stmt = select(User.id).where(func.lower(User.email) == normalise_email(email))
        result = await self._session.execute(stmt)
        return result.scalars().first() is not None

    async def find_admin(self) -> User | None:
        result = await self._session.execute(
            select(User)
            .where(User.role == UserRole.ADMIN)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _admin_exists(self) -> bool:
        result = await self._session.execute(
            select(func.count(User.id)).where(User.role == UserRole.ADMIN)
        )
        return (result.scalar_one() or 0) > 0

    async def _commit(self) -> None:
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ConflictError("Email is already associated with another account.") from exc

    # Cached read views ------------------------------------------------

    async def find_one(self, user_id: int) -> UserResource:
        async def _load() -> UserResource | None:
            user = await self._session.get(User, user_id, populate_existing=True)
            return serialize_user(user) if user is not None else None

        resource = await self._cache.get_or_load(make_key("find_one", user_id), _load)
        if resource is None:
            raise NotFoundError("User not found")
        return resource

    async def find_all(self) -> list[UserResource]:
        async def _load() -> list[UserResource]:
            result = await self._session.execute(
                select(User).order_by(User.id.asc()).execution_options(populate_existing=True)
            )
            return [serialize_user(user) for user in result.scalars().all()]

        return await self._cache.get_or_load(make_key("find_all"), _load)

    async def find_by_role(self, role: UserRole) -> list[UserResource]:
        async def _load() -> list[UserResource]:
            result = await self._session.execute(
                select(User)
                .where(User.role == role)
                .order_by(User.id.asc())
                .execution_options(populate_existing=True)
            )
            return [serialize_user(user) for user in result.scalars().all()]

        return await self._cache.get_or_load(make_key("find_by_role", role.value), _load)

    async def stats(self) -> UserStats:
        async def _load() -> UserStats:
            now = self._clock.now()
            result = await self._session.execute(
                select(User).execution_options(populate_existing=True)
            )
            users = result.scalars().all()
            return UserStats(
                total=len(users),
                active=sum(1 for user in users if user.is_active),
                inactive=sum(1 for user in users if not user.is_active),
                admins=sum(1 for user in users if user.role == UserRole.ADMIN),
                users=sum(1 for user in users if user.role == UserRole.USER),
                locked_out=sum(
                    1 for user in users if user.logout_until is not None and user.logout_until > now
                ),
            )

        return await self._cache.get_or_load(make_key("stats"), _load)

    async def is_maintenance_mode(self) -> bool:
        key = make_key("maintenance", "flag")
        cached = await self._cache.get(key)
        if cached is not None:
            return bool(cached)
        generation = self._cache.generation
        setting = await self._session.get(SystemSetting, MAINTENANCE_KEY, populate_existing=True)
        enabled = bool(setting and setting.value.get("enabled"))
        await self._cache.set(key, enabled, generation=generation)
        return enabled

    async def set_maintenance_mode(self, enabled: bool) -> bool:
        setting = await self._session.get(SystemSetting, MAINTENANCE_KEY)
        if setting is None:
            setting = SystemSetting(key=MAINTENANCE_KEY, value={"enabled": enabled})
            self._session.add(setting)
        else:
            setting.value = {"enabled": enabled}
        await self._session.commit()
        await self._cache.clear()
        logger.info("users.maintenance_mode", enabled=enabled)
        return enabled

    async def check_access(self, user_id: int) -> AccessCheck:
        """Report whether ``user_id`` could sign in right now.

        Administrator results are evicted after one TTL by a timer.
        """

        key = make_key("check_access", user_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        generation = self._cache.generation
        user = await self.get(user_id)
        maintenance = await self.is_maintenance_mode()
        try:
            evaluate_account_state(user, maintenance=maintenance, now=self._clock.now())
        except AgencyError as exc:
            check = AccessCheck(
                user_id=user.id,
                allowed=False,
                code=exc.code,
                message=exc.message,
                remaining_hours=exc.context.get("remainingHours"),
            )
        else:
            check = AccessCheck(user_id=user.id, allowed=True)

        stored = await self._cache.set(key, check, generation=generation)
        if stored and check.allowed and user.role == UserRole.ADMIN:
            self._cache.schedule_eviction(key)
        return check

    # Writes -----------------------------------------------------------

    async def register(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        telephone: str | None = None,
    ) -> User:
        """Create an identity from the public sign-up form.

        The first registrant using the reserved e-mail becomes the administrator.
        """

        normalised = normalise_email(email)
        if await self.exists(normalised):
            raise ConflictError("Email is already associated with another account.")
        admin_exists = await self._admin_exists()
        role = self._invariant.role_for_registration(normalised, admin_exists=admin_exists)
        self._invariant.check_create(normalised, role, admin_exists=admin_exists)
        user = User(
            first_name=first_name,
            last_name=last_name,
            email=normalised,
            telephone=telephone,
            password_hash=hash_password(password),
            role=role,
            is_active=True,
        )
        self._session.add(user)
        await self._commit()
        await self._session.refresh(user)
        await self._cache.invalidate(user.id, email=user.email)
        logger.info("users.registered", user_id=user.id, email=mask_email(user.email), role=role.value)
        return user

    async def create(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str | None,
        telephone: str | None = None,
        is_active: bool = True,
    ) -> User:
        """Provision a standard identity; without a password it must reset first."""

        normalised = normalise_email(email)
        if await self.exists(normalised):
            raise ConflictError("Email is already associated with another account.")
        self._invariant.check_create(normalised, UserRole.USER, admin_exists=await self._admin_exists())
        user = User(
            first_name=first_name,
            last_name=last_name,
            email=normalised,
            telephone=telephone,
            password_hash=hash_password(password) if password else None,
            role=UserRole.USER,
            is_active=is_active,
        )
        self._session.add(user)
        await self._commit()
        await self._session.refresh(user)
        await self._cache.invalidate(user.id, email=user.email)
        return user

    async def update(self, user_id: int, changes: dict[str, Any]) -> User:
        user = await self.get(user_id)
        previous_email = user.email
        email = changes.get("email")
        if email is not None:
            email = normalise_email(str(email))
        self._invariant.check_update(
            user,
            email=email,
            role=changes.get("role"),
            is_active=changes.get("is_active"),
        )
        if email is not None and email != user.email:
            if await self.exists(email):
                raise ConflictError("Email is already associated with another account.")
            user.email = email
        for field in ("first_name", "last_name", "telephone", "role", "is_active"):
            if field in changes and changes[field] is not None:
                setattr(user, field, changes[field])
        await self._commit()
        await self._session.refresh(user)
        await self._cache.invalidate(user.id, email=previous_email)
        await self._cache.invalidate(user.id, email=user.email)
        return user

    async def toggle_status(self, user_id: int) -> User:
        user = await self.get(user_id)
        target = not user.is_active
        self._invariant.check_update(user, is_active=target)
        user.is_active = target
        await self._commit()
        await self._session.refresh(user)
        await self._cache.invalidate(user.id, email=user.email)
        logger.info("users.status_toggled", user_id=user.id, is_active=target)
        return user

    async def update_password(
        self,
        user_id: int,
        *,
        current_password: str | None,
        new_password: str,
    ) -> User:
        """Change a password after checking the current one.

        An administrator provisioned without a password may set one directly.
        """

        user = await self.get(user_id)
        if user.password_hash:
            if not current_password or not verify_password(user.password_hash, current_password):
                raise InvalidCredentials("Current password is incorrect")
            if verify_password(user.password_hash, new_password):
                raise InvalidPassword("The new password must differ from the current one")
        elif user.role != UserRole.ADMIN:
            raise PasswordResetRequired()
        user.password_hash = hash_password(new_password)
        await self._commit()
        await self._cache.invalidate(user.id, email=user.email)
        return user

    async def set_password(self, user: User, new_password: str) -> None:
        """Store a new password without checking the previous one (reset flows)."""

        user.password_hash = hash_password(new_password)
        await self._session.flush()
        await self._cache.invalidate(user.id, email=user.email)

    async def record_login(self, user: User) -> None:
        user.last_login = self._clock.now()
        user.login_count = (user.login_count or 0) + 1
        await self._session.flush()
        await self._cache.invalidate(user.id, email=user.email)

    async def delete(self, user_id: int) -> None:
        user = await self.get(user_id)
        self._invariant.check_delete(user)
        email = user.email
        await self._session.delete(user)
        await self._commit()
        await self._cache.invalidate(user_id, email=email)
        logger.info("users.deleted", user_id=user_id, email=mask_email(email))

    async def clear_cache(self) -> int:
        return await self._cache.clear()


__all__ = [
    "AdminInvariant",
    "MAINTENANCE_KEY",
    "UserService",
    "evaluate_account_state",
    "normalise_email",
]
