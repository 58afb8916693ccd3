"""Authentication API endpoints."""
from __future__ import annotations

from typing import Any, Mapping

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit import record_audit_event
from ..credentials import CredentialVerifier
from ..dependencies import (
    get_credential_verifier,
    get_email_dispatcher,
    get_login_throttle,
    get_reset_token_service,
    get_revocation_controller,
    get_session,
    get_token_service,
    get_user_service,
)
from ..email import EmailDispatcher
from ..errors import AgencyError, InvalidResetToken, SessionExpired, error_response
from ..guards import get_current_claims, require_admin
from ..logging import get_logger, mask_email
from ..reset_tokens import ResetTokenService
from ..revocation import RevocationController
from ..schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    OperationStatus,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UpdatePasswordRequest,
    UserResource,
    serialize_user,
)
from ..security import AccessClaims
from ..throttle import LoginThrottle
from ..tokens import TokenPair, TokenService
from ..users import UserService

router = APIRouter(prefix="/auth", tags=["auth"])

logger = get_logger("agency.routes.auth")

_FORGOT_PASSWORD_MESSAGE = "If the account exists, password reset instructions have been sent."


async def _record_auth_event(
    db: AsyncSession,
    request: Request,
    *,
    action: str,
    result: str,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    await record_audit_event(
        db,
        action=action,
        result=result,
        request=request,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        metadata=metadata,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        expires_in=pair.access_max_age,
        refresh_expires_at=pair.refresh_expires_at,
        session_expires_at=pair.session_expires_at,
        user=serialize_user(pair.user),
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    responses={
        status.HTTP_401_UNAUTHORIZED: {"model": OperationStatus},
        status.HTTP_403_FORBIDDEN: {"model": OperationStatus},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": OperationStatus},
    },
)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    throttle: LoginThrottle = Depends(get_login_throttle),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    tokens: TokenService = Depends(get_token_service),
) -> TokenResponse:
    try:
        await throttle.hit(payload.email)
        user = await verifier.verify(payload.email or "", payload.password)
    except AgencyError as exc:
        await _record_auth_event(
            db,
            request,
            action="auth.login",
            result="failure",
            metadata={"reason": exc.code, "email": mask_email(payload.email)},
        )
        await db.commit()
        raise

    await throttle.reset(user.email)
    pair = await tokens.issue(db, user, request=request)
    await _record_auth_event(
        db,
        request,
        action="auth.login",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        metadata={"family_id": pair.family_id},
    )
    await db.commit()

    tokens.set_cookies(response, pair)
    logger.info("auth.login.success", user_id=user.id, role=user.role.value)
    return _token_response(pair)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses={status.HTTP_401_UNAUTHORIZED: {"model": OperationStatus}},
)
async def refresh_tokens(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> TokenResponse | JSONResponse:
    refresh_token = request.cookies.get(tokens.refresh_cookie_name)
    try:
        pair = await tokens.rotate(db, refresh_token, request=request)
    except SessionExpired as exc:
        await _record_auth_event(
            db,
            request,
            action="auth.refresh",
            result="failure",
            metadata={"reason": exc.reason},
        )
        await db.commit()
        logger.info("auth.refresh.rejected", reason=exc.reason)
        failure = error_response(exc)
        tokens.clear_cookies(failure)
        return failure

    await _record_auth_event(
        db,
        request,
        action="auth.refresh",
        result="success",
        actor_user_id=pair.user.id,
        target_user_id=pair.user.id,
        metadata={"family_id": pair.family_id},
    )
    await db.commit()
    tokens.set_cookies(response, pair)
    return _token_response(pair)


@router.post("/register", response_model=UserResource, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    user = await users.register(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=str(payload.email),
        password=payload.password,
        telephone=payload.telephone,
    )
    await _record_auth_event(
        db,
        request,
        action="auth.register",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        metadata={"role": user.role.value},
    )
    await db.commit()
    return serialize_user(user)


@router.post("/logout", response_model=OperationStatus)
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(get_current_claims),
    tokens: TokenService = Depends(get_token_service),
    controller: RevocationController = Depends(get_revocation_controller),
) -> OperationStatus:
    await _record_auth_event(
        db,
        request,
        action="auth.logout",
        result="success",
        actor_user_id=claims.user_id,
        target_user_id=claims.user_id,
    )
    await controller.logout(claims, request.cookies.get(tokens.refresh_cookie_name))
    tokens.clear_cookies(response)
    return OperationStatus(message="Logged out")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(require_admin),
    controller: RevocationController = Depends(get_revocation_controller),
) -> LogoutAllResponse:
    outcome = await controller.logout_all(claims)
    await _record_auth_event(
        db,
        request,
        action="auth.logout_all",
        result="success",
        actor_user_id=claims.user_id,
        metadata={
            "users_logged_out": outcome.users_logged_out,
            "transaction_id": outcome.transaction_id,
        },
    )
    await db.commit()
    return outcome


@router.get("/me", response_model=UserResource)
async def get_me(
    claims: AccessClaims = Depends(get_current_claims),
    users: UserService = Depends(get_user_service),
) -> UserResource:
    return await users.find_one(claims.user_id)


@router.post("/update-password", response_model=OperationStatus)
async def update_password(
    payload: UpdatePasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    claims: AccessClaims = Depends(get_current_claims),
    users: UserService = Depends(get_user_service),
) -> OperationStatus:
    await users.update_password(
        claims.user_id,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    await _record_auth_event(
        db,
        request,
        action="auth.update_password",
        result="success",
        actor_user_id=claims.user_id,
        target_user_id=claims.user_id,
    )
    await db.commit()
    return OperationStatus(message="Password updated")


@router.post("/forgot-password", response_model=OperationStatus)
async def forgot_password(
    payload: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_session),
    users: UserService = Depends(get_user_service),
    reset_tokens: ResetTokenService = Depends(get_reset_token_service),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> OperationStatus:
    user = await users.find_by_email(str(payload.email))
    if user is None or not user.is_active:
        return OperationStatus(message=_FORGOT_PASSWORD_MESSAGE)

    record, token = await reset_tokens.issue(user)
    await db.commit()

    await email_dispatcher.send_password_reset_email(
        email=user.email,
        token=token,
        expires_at=record.expires_at,
    )
    return OperationStatus(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=OperationStatus)
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    users: UserService = Depends(get_user_service),
    reset_tokens: ResetTokenService = Depends(get_reset_token_service),
    tokens: TokenService = Depends(get_token_service),
) -> OperationStatus:
    record = await reset_tokens.consume(payload.token)
    if record is None:
        await _record_auth_event(
            db,
            request,
            action="auth.reset_password",
            result="failure",
            metadata={"reason": "invalid_or_expired_token"},
        )
        await db.commit()
        raise InvalidResetToken()

    user = record.user or await users.get(record.user_id)
    await users.set_password(user, payload.new_password)
    await tokens.revoke_user_sessions(db, user.id, reason="PASSWORD RESET")
    await _record_auth_event(
        db,
        request,
        action="auth.reset_password",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
    )
    await db.commit()
    return OperationStatus(message="Password updated")


__all__ = ["router"]
