"""User administration and profile endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.models import UserRole

from ..audit import record_audit_event
from ..dependencies import get_session, get_token_service, get_user_service
from ..guards import get_current_claims, require_admin
from ..schemas import (
    AccessCheck,
    AdminCreateUserRequest,
    AdminResetPasswordRequest,
    MaintenanceModeRequest,
    MaintenanceStatus,
    OperationStatus,
    UpdateUserRequest,
    UserResource,
    UserStats,
    serialize_user,
)
from ..security import AccessClaims
from ..tokens import TokenService
from ..users import UserService

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserResource], dependencies=[Depends(require_admin)])
async def list_users(
    role: UserRole | None = None,
    users: UserService = Depends(get_user_service),
) -> list[UserResource]:
    if role is not None:
        return await users.find_by_role(role)
    return await users.find_all()


@router.post("", response_model=UserResource, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: AdminCreateUserRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    user = await users.create(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=str(payload.email),
        password=payload.password,
        telephone=payload.telephone,
        is_active=payload.is_active,
    )
    await record_audit_event(
        db,
        action="users.create",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        target_user_id=user.id,
    )
    await db.commit()
    return serialize_user(user)


@router.get("/stats", response_model=UserStats, dependencies=[Depends(require_admin)])
async def user_stats(users: UserService = Depends(get_user_service)) -> UserStats:
    return await users.stats()


@router.get("/maintenance-status", response_model=MaintenanceStatus)
async def maintenance_status(users: UserService = Depends(get_user_service)) -> MaintenanceStatus:
    return MaintenanceStatus(enabled=await users.is_maintenance_mode())


@router.post("/maintenance-mode", response_model=MaintenanceStatus)
async def set_maintenance_mode(
    payload: MaintenanceModeRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
) -> MaintenanceStatus:
    enabled = await users.set_maintenance_mode(payload.enabled)
    await record_audit_event(
        db,
        action="users.maintenance_mode",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        metadata={"enabled": enabled},
    )
    await db.commit()
    return MaintenanceStatus(enabled=enabled)


@router.get(
    "/check-access/{user_id}",
    response_model=AccessCheck,
    dependencies=[Depends(require_admin)],
)
async def check_access(user_id: int, users: UserService = Depends(get_user_service)) -> AccessCheck:
    return await users.check_access(user_id)


@router.get("/profile/me", response_model=UserResource)
async def read_profile(
    claims: AccessClaims = Depends(get_current_claims),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    return await users.find_one(claims.user_id)


@router.delete("/cache/clear", response_model=OperationStatus, dependencies=[Depends(require_admin)])
async def clear_cache(users: UserService = Depends(get_user_service)) -> OperationStatus:
    cleared = await users.clear_cache()
    return OperationStatus(message=f"Cache cleared ({cleared} entries)")


@router.get("/{user_id}", response_model=UserResource, dependencies=[Depends(require_admin)])
async def get_user(user_id: int, users: UserService = Depends(get_user_service)) -> UserResource:
    return await users.find_one(user_id)


@router.patch("/{user_id}", response_model=UserResource)
async def update_user(
    user_id: int,
    payload: UpdateUserRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    changes = payload.model_dump(exclude_unset=True)
    user = await users.update(user_id, changes)
    await record_audit_event(
        db,
        action="users.update",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        target_user_id=user.id,
        metadata={"fields": sorted(changes)},
    )
    await db.commit()
    return serialize_user(user)


@router.patch("/{user_id}/toggle-status", response_model=UserResource)
async def toggle_status(
    user_id: int,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    user = await users.toggle_status(user_id)
    await record_audit_event(
        db,
        action="users.toggle_status",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        target_user_id=user.id,
        metadata={"is_active": user.is_active},
    )
    await db.commit()
    return serialize_user(user)


@router.post("/{user_id}/reset-password", response_model=OperationStatus)
async def admin_reset_password(
    user_id: int,
    payload: AdminResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
    tokens: TokenService = Depends(get_token_service),
) -> OperationStatus:
    user = await users.get(user_id)
    await users.set_password(user, payload.new_password)
    await tokens.revoke_user_sessions(db, user.id, reason="PASSWORD RESET")
    await record_audit_event(
        db,
        action="users.reset_password",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        target_user_id=user.id,
    )
    await db.commit()
    return OperationStatus(message="Password updated")


@router.delete("/{user_id}", response_model=OperationStatus)
async def delete_user(
    user_id: int,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    users: UserService = Depends(get_user_service),
) -> OperationStatus:
    await users.delete(user_id)
    await record_audit_event(
        db,
        action="users.delete",
        result="success",
        request=request,
        actor_user_id=claims.user_id,
        target_user_id=user_id,
    )
    await db.commit()
    return OperationStatus(message="User deleted")


__all__ = ["router"]
