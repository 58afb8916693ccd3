"""Password change and reset flows."""
from __future__ import annotations

import asyncio

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from backend.agency.app.errors import InvalidCredentials, InvalidPassword
from backend.agency.app.reset_tokens import ResetTokenService
from backend.agency.db.models import PasswordResetToken, RefreshSession, UserRole
from backend.agency.scripts.purge_sessions import purge_expired_records

from .utils import (
    ADMIN_EMAIL,
    DEFAULT_PASSWORD,
    bearer,
    cookie_header,
    create_user,
    extract_cookie,
    login,
)


@pytest.mark.asyncio
async def test_forgot_password_sends_single_use_token(app, db_session, email_outbox):
    user = await create_user(db_session, email="reset@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        issued = await login(client, "reset@example.com")
        refresh_cookie = extract_cookie(issued, "refresh_token")

        forgot = await client.post("/auth/forgot-password", json={"email": "Reset@Example.com"})
        assert forgot.status_code == status.HTTP_200_OK
        assert len(email_outbox) == 1
        message = email_outbox[0]
        assert message["email"] == "reset@example.com"
        assert message["token"] in message["url"]

        reset = await client.post(
            "/auth/reset-password",
            json={"token": message["token"], "newPassword": "fresh-password"},
        )
        replay = await client.post(
            "/auth/reset-password",
            json={"token": message["token"], "newPassword": "another-password"},
        )
        old = await login(client, "reset@example.com", DEFAULT_PASSWORD)
        new = await login(client, "reset@example.com", "fresh-password")
        refresh = await client.post(
            "/auth/refresh", headers=cookie_header(refresh_token=refresh_cookie)
        )

    assert reset.status_code == status.HTTP_200_OK
    assert replay.status_code == status.HTTP_400_BAD_REQUEST
    assert replay.json()["code"] == "INVALID_RESET_TOKEN"
    assert old.status_code == status.HTTP_401_UNAUTHORIZED
    assert new.status_code == status.HTTP_200_OK
    assert refresh.status_code == status.HTTP_401_UNAUTHORIZED

    rows = (
        await db_session.execute(
            select(RefreshSession)
            .where(RefreshSession.user_id == user.id)
            .order_by(RefreshSession.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert rows[0].revoked_reason == "PASSWORD RESET"


@pytest.mark.asyncio
async def test_forgot_password_is_generic_for_unknown_email(app, email_outbox):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["message"].startswith("If the account exists")
    assert email_outbox == []


@pytest.mark.asyncio
async def test_new_reset_request_replaces_previous_token(app, db_session, email_outbox):
    user = await create_user(db_session, email="twice@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        await client.post("/auth/forgot-password", json={"email": "twice@example.com"})
        await client.post("/auth/forgot-password", json={"email": "twice@example.com"})
        first = await client.post(
            "/auth/reset-password",
            json={"token": email_outbox[0]["token"], "newPassword": "fresh-password"},
        )

    assert first.status_code == status.HTTP_400_BAD_REQUEST
    remaining = (
        await db_session.execute(
            select(PasswordResetToken).where(PasswordResetToken.user_id == user.id)
        )
    ).scalars().all()
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_reset_token_expires(app, db_session, email_outbox, clock):
    await create_user(db_session, email="late@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        await client.post("/auth/forgot-password", json={"email": "late@example.com"})
        clock.advance(minutes=21)
        response = await client.post(
            "/auth/reset-password",
            json={"token": email_outbox[0]["token"], "newPassword": "fresh-password"},
        )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["code"] == "INVALID_RESET_TOKEN"


@pytest.mark.asyncio
async def test_update_password_requires_current_password(app, db_session):
    await create_user(db_session, email="changer@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        token = (await login(client, "changer@example.com")).json()["accessToken"]
        wrong = await client.post(
            "/auth/update-password",
            json={"currentPassword": "not-the-password", "newPassword": "next-password"},
            headers=bearer(token),
        )
        same = await client.post(
            "/auth/update-password",
            json={"currentPassword": DEFAULT_PASSWORD, "newPassword": DEFAULT_PASSWORD},
            headers=bearer(token),
        )
        changed = await client.post(
            "/auth/update-password",
            json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "next-password"},
            headers=bearer(token),
        )
        relogin = await login(client, "changer@example.com", "next-password")

    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert same.status_code == status.HTTP_400_BAD_REQUEST
    assert same.json()["code"] == "INVALID_PASSWORD"
    assert changed.status_code == status.HTTP_200_OK
    assert relogin.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_admin_without_password_may_set_one(db_session, user_service):
    admin = await create_user(db_session, email=ADMIN_EMAIL, password=None, role=UserRole.ADMIN)

    await user_service.update_password(admin.id, current_password=None, new_password="first-password")

    refreshed = await user_service.get(admin.id)
    assert refreshed.password_hash

    with pytest.raises(InvalidCredentials):
        await user_service.update_password(admin.id, current_password=None, new_password="other-password")
    with pytest.raises(InvalidPassword):
        await user_service.update_password(
            admin.id, current_password="first-password", new_password="first-password"
        )


@pytest.mark.asyncio
async def test_reset_token_is_claimed_once_under_concurrency(db_session, session_factory, clock):
    user = await create_user(db_session, email="race@example.com")
    _, token = await ResetTokenService(db_session, ttl_seconds=1200, clock=clock).issue(user)
    await db_session.commit()

    async def attempt() -> bool:
        session = session_factory()
        try:
            record = await ResetTokenService(session, ttl_seconds=1200, clock=clock).consume(token)
            await session.commit()
            return record is not None
        finally:
            await session.close()

    outcomes = await asyncio.gather(attempt(), attempt())

    assert sorted(outcomes) == [False, True]


@pytest.mark.asyncio
async def test_consumed_record_carries_its_user(db_session, clock):
    user = await create_user(db_session, email="owner@example.com")
    service = ResetTokenService(db_session, ttl_seconds=1200, clock=clock)
    _, token = await service.issue(user)
    await db_session.commit()

    record = await service.consume(token)

    assert record is not None
    assert record.consumed_at == clock.now()
    assert record.user.email == "owner@example.com"
    assert await service.consume(token) is None


@pytest.mark.asyncio
async def test_purge_drops_spent_and_expired_reset_tokens(db_session, clock):
    service = ResetTokenService(db_session, ttl_seconds=1200, clock=clock)
    spent_owner = await create_user(db_session, email="spent@example.com")
    expired_owner = await create_user(db_session, email="expired@example.com")
    pending_owner = await create_user(db_session, email="pending@example.com")

    _, spent = await service.issue(spent_owner)
    await service.issue(expired_owner)
    await db_session.commit()
    await service.consume(spent)
    clock.advance(minutes=21)
    await service.issue(pending_owner)
    await db_session.commit()

    assert await service.purge_expired() == 2
    await db_session.commit()

    remaining = (
        await db_session.execute(select(PasswordResetToken.user_id))
    ).scalars().all()
    assert remaining == [pending_owner.id]


@pytest.mark.asyncio
async def test_purge_script_runs_one_pass(db_session, token_service, clock):
    user = await create_user(db_session, email="script@example.com")
    await token_service.issue(db_session, user)
    await ResetTokenService(db_session, ttl_seconds=1200, clock=clock).issue(user)
    await db_session.commit()

    clock.advance(hours=1)
    removed = await purge_expired_records(db_session, clock=clock)

    assert removed == {"refreshSessions": 1, "resetTokens": 1}
