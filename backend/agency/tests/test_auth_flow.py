"""API tests covering login, refresh and logout."""
from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from backend.agency.db.models import AuditEvent, RefreshSession, User, UserRole

from .utils import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    DEFAULT_PASSWORD,
    bearer,
    cookie_header,
    create_admin,
    create_user,
    extract_cookie,
    login,
    set_cookie_headers,
)


@pytest.mark.asyncio
async def test_login_issues_pair_and_cookies(app, db_session, token_service):
    user = await create_user(db_session, email="login@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, "Login@Example.com")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["tokenType"] == "bearer"
    assert body["expiresIn"] == 900
    assert body["user"]["email"] == "login@example.com"
    assert body["user"]["loginCount"] == 1

    claims = token_service.decode_access(body["accessToken"])
    assert claims.user_id == user.id
    assert claims.role == "user"

    access_header = set_cookie_headers(response, "access_token")[0].lower()
    refresh_header = set_cookie_headers(response, "refresh_token")[0].lower()
    assert "httponly" not in access_header
    assert "httponly" in refresh_header
    for header in (access_header, refresh_header):
        assert "secure" in header
        assert "samesite=none" in header
        assert "path=/" in header
    assert "max-age=900" in access_header
    assert "max-age=1800" in refresh_header
    assert extract_cookie(response, "access_token") == body["accessToken"]


@pytest.mark.asyncio
async def test_login_with_wrong_password_is_rejected(app, db_session):
    await create_user(db_session, email="wrong@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, "wrong@example.com", "not-the-password")
        unknown = await login(client, "nobody@example.com", "whatever-else")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["code"] == "INVALID_CREDENTIALS"
    assert unknown.json() == response.json()


@pytest.mark.asyncio
async def test_login_without_email_is_rejected(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post("/auth/login", json={"password": "whatever"})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["code"] == "MISSING_CREDENTIALS"


@pytest.mark.asyncio
async def test_sixth_failed_login_is_throttled(app, db_session):
    await create_user(db_session, email="a@b.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        for _ in range(5):
            response = await login(client, "a@b.com", "bad-password")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

        blocked = await login(client, "a@b.com", DEFAULT_PASSWORD)

    assert blocked.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    body = blocked.json()
    assert body["code"] == "TOO_MANY_ATTEMPTS"
    assert body["attempts"] == 5
    assert body["maxAttempts"] == 5
    assert body["windowMinutes"] == 15
    assert body["retryAfter"] > 0
    assert int(blocked.headers["retry-after"]) == body["retryAfter"]


@pytest.mark.asyncio
async def test_successful_login_resets_throttle(app, db_session, throttle):
    await create_user(db_session, email="reset@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        for _ in range(3):
            await login(client, "reset@example.com", "bad-password")
        response = await login(client, "reset@example.com")

    assert response.status_code == status.HTTP_200_OK
    assert throttle.peek("reset@example.com") is None


@pytest.mark.asyncio
async def test_throttle_window_elapses(app, db_session, clock):
    await create_user(db_session, email="window@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        for _ in range(5):
            await login(client, "window@example.com", "bad-password")
        clock.advance(minutes=15)
        response = await login(client, "window@example.com")

    assert response.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_refresh_rotates_cookie_once(app, db_session):
    await create_user(db_session, email="refresh@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        login_response = await login(client, "refresh@example.com")
        original = extract_cookie(login_response, "refresh_token")
        assert original

        refreshed = await client.post("/auth/refresh", headers=cookie_header(refresh_token=original))
        assert refreshed.status_code == status.HTTP_200_OK
        rotated = extract_cookie(refreshed, "refresh_token")
        assert rotated and rotated != original
        assert refreshed.json()["accessToken"] == extract_cookie(refreshed, "access_token")

        replay = await client.post("/auth/refresh", headers=cookie_header(refresh_token=original))

    assert replay.status_code == status.HTTP_401_UNAUTHORIZED
    assert replay.json() == {
        "message": "Session expired, please log in again",
        "code": "SESSION_EXPIRED",
        "loggedOut": True,
        "requiresReauth": True,
    }
    for name in ("access_token", "refresh_token"):
        cleared = set_cookie_headers(replay, name)
        assert cleared and "max-age=0" in cleared[0].lower()


@pytest.mark.asyncio
async def test_refresh_without_cookie_clears_state(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post("/auth/refresh")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["code"] == "SESSION_EXPIRED"
    assert set_cookie_headers(response, "refresh_token")


@pytest.mark.asyncio
async def test_refresh_fails_after_absolute_session_lifetime(app, db_session, clock):
    await create_user(db_session, email="longlived@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        login_response = await login(client, "longlived@example.com")
        refresh_token = extract_cookie(login_response, "refresh_token")

        clock.advance(minutes=25)
        refreshed = await client.post("/auth/refresh", headers=cookie_header(refresh_token=refresh_token))
        assert refreshed.status_code == status.HTTP_200_OK
        assert refreshed.json()["expiresIn"] == 300
        refresh_token = extract_cookie(refreshed, "refresh_token")

        clock.advance(minutes=6)
        expired = await client.post("/auth/refresh", headers=cookie_header(refresh_token=refresh_token))

    assert expired.status_code == status.HTTP_401_UNAUTHORIZED
    assert expired.json()["code"] == "SESSION_EXPIRED"


@pytest.mark.asyncio
async def test_logout_revokes_refresh_family(app, db_session):
    user = await create_user(db_session, email="logout@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        login_response = await login(client, "logout@example.com")
        access_token = login_response.json()["accessToken"]
        refresh_token = extract_cookie(login_response, "refresh_token")

        logout_response = await client.post(
            "/auth/logout",
            headers={**bearer(access_token), **cookie_header(refresh_token=refresh_token)},
        )
        assert logout_response.status_code == status.HTTP_200_OK
        assert logout_response.json() == {"message": "Logged out"}
        for name in ("access_token", "refresh_token"):
            assert set_cookie_headers(logout_response, name)

        refresh_after = await client.post("/auth/refresh", headers=cookie_header(refresh_token=refresh_token))
        assert refresh_after.status_code == status.HTTP_401_UNAUTHORIZED

        # No denylist: the access credential stays valid until it expires.
        me = await client.get("/auth/me", headers=bearer(access_token))
        assert me.status_code == status.HTTP_200_OK

    refreshed_user = await db_session.get(User, user.id, populate_existing=True)
    assert refreshed_user.logout_count == 1
    assert refreshed_user.logout_reason == "user_logout"
    assert refreshed_user.last_logout is not None
    result = await db_session.execute(
        select(RefreshSession.revoked_reason).where(RefreshSession.user_id == user.id)
    )
    assert set(result.scalars().all()) == {"MANUAL REVOKE"}


@pytest.mark.asyncio
async def test_lockout_rejects_login_but_not_existing_access_credential(app, db_session, clock):
    user = await create_user(db_session, email="lockout@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        login_response = await login(client, "lockout@example.com")
        access_token = login_response.json()["accessToken"]

        user.logout_until = clock.now() + timedelta(hours=2)
        await db_session.commit()

        rejected = await login(client, "lockout@example.com")
        me = await client.get("/auth/me", headers=bearer(access_token))

    assert rejected.status_code == status.HTTP_403_FORBIDDEN
    body = rejected.json()
    assert body["code"] == "COMPTE_TEMPORAIREMENT_DECONNECTE"
    assert body["remainingHours"] == 2
    assert me.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_disabled_account_cannot_login(app, db_session):
    await create_user(db_session, email="off@example.com", active=False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, "off@example.com")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {
        "message": "Account disabled, contact the administrator",
        "code": "COMPTE_DESACTIVE",
        "requiresAdmin": True,
    }


@pytest.mark.asyncio
async def test_account_without_password_must_reset(app, db_session):
    await create_user(db_session, email="nopass@example.com", password=None)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, "nopass@example.com", "anything-at-all")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    body = response.json()
    assert body["code"] == "PASSWORD_RESET_REQUIRED"
    assert body["requiresPasswordReset"] is True


@pytest.mark.asyncio
async def test_admin_role_on_unreserved_email_cannot_login(app, db_session):
    await create_user(db_session, email="rogue@example.com", role=UserRole.ADMIN)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, "rogue@example.com")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["code"] == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_admin_login_ignores_lockout(app, db_session, clock):
    admin = await create_admin(db_session)
    admin.logout_until = clock.now() + timedelta(hours=5)
    await db_session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await login(client, ADMIN_EMAIL, ADMIN_PASSWORD)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["user"]["role"] == "admin"


@pytest.mark.asyncio
async def test_login_attempts_are_audited(app, db_session):
    user = await create_user(db_session, email="audit@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        await login(client, "audit@example.com", "bad-password")
        await login(client, "audit@example.com")

    result = await db_session.execute(
        select(AuditEvent).where(AuditEvent.action == "auth.login").order_by(AuditEvent.id)
    )
    events = result.scalars().all()
    assert [event.result for event in events] == ["failure", "success"]
    assert events[0].metadata_json["reason"] == "INVALID_CREDENTIALS"
    assert events[1].actor_user_id == user.id
