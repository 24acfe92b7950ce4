"""Tests for auth endpoints: register, verify, login, refresh, logout, forgot/reset password."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.auth import verify_access_token
from app.db.session import async_session_maker
from app.main import app
from app.models.user import User
from app.schemas.auth import PENDING_VERIFICATION
from app.services import auth_service, token_ledger
from app.services.notifications import (
    PASSWORD_RESET_SUBJECT,
    VERIFICATION_SUBJECT,
    NotificationDispatcher,
)
from app.services.token_ledger import EMAIL_VERIFICATION, PASSWORD_RESET, REFRESH, utcnow


async def _get_user(email: str) -> User:
    async with async_session_maker() as session:
        r = await session.execute(select(User).where(User.email == email))
        return r.scalar_one()


async def _expire_token(kind, plain: str) -> None:
    async with async_session_maker() as session:
        record = await token_ledger.find_token(session, kind, plain)
        record.expires_at = utcnow() - timedelta(minutes=1)
        await session.commit()


async def _register_and_verify(client: AsyncClient, outbox, email: str, password: str) -> None:
    resp = await client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 200
    token = await outbox.last_token(email)
    resp = await client.get("/api/v1/auth/verify", params={"token": token})
    assert resp.status_code == 200


async def _login(client: AsyncClient, email: str = "test@test.com", password: str = "password123"):
    return await client.post("/api/v1/auth/login", json={"email": email, "password": password})


# --- register -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_register_is_pending_verification(client: AsyncClient, outbox):
    resp = await client.post(
        "/api/v1/auth/register",
        json={"email": "NewUser@Test.com", "password": "securepass123", "username": "newbie"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["access_token"] == PENDING_VERIFICATION
    assert data["refresh_token"] is None
    assert data["user"]["email"] == "newuser@test.com"
    assert data["user"]["username"] == "newbie"
    assert "verify" in data["message"]

    user = await _get_user("newuser@test.com")
    assert user.enabled is False
    assert user.role == "USER"
    assert user.password_hash != "securepass123"

    messages = await outbox.flush()
    assert len(messages) == 1
    assert messages[0].recipient == "newuser@test.com"
    assert messages[0].subject == VERIFICATION_SUBJECT
    assert "http://frontend.test/auth/verify?token=" in messages[0].body


@pytest.mark.asyncio
async def test_register_duplicate_email(client: AsyncClient, test_user):
    resp = await client.post(
        "/api/v1/auth/register",
        json={"email": " TEST@test.com ", "password": "other"},
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_register_requires_email_and_password(client: AsyncClient):
    resp = await client.post("/api/v1/auth/register", json={"email": "a@x.com", "password": ""})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_register_succeeds_when_notification_delivery_fails(client: AsyncClient):
    async def broken_sink(recipient, subject, body):
        raise ConnectionError("smtp down")

    dispatcher = NotificationDispatcher(broken_sink, workers=1)
    previous = app.state.notifications
    app.state.notifications = dispatcher
    dispatcher.start()
    try:
        resp = await client.post("/api/v1/auth/register", json={"email": "a@x.com", "password": "pw"})
        assert resp.status_code == 200
        await dispatcher.drain()
    finally:
        await dispatcher.stop()
        app.state.notifications = previous


# --- email verification -------------------------------------------------------


@pytest.mark.asyncio
async def test_verify_email_is_idempotent(client: AsyncClient, outbox):
    await client.post("/api/v1/auth/register", json={"email": "a@x.com", "password": "pw"})
    token = await outbox.last_token("a@x.com")

    first = await client.get("/api/v1/auth/verify", params={"token": token})
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["already_verified"] is False
    assert first.json()["email"] == "a@x.com"
    assert (await _get_user("a@x.com")).enabled is True

    second = await client.get("/api/v1/auth/verify", params={"token": token})
    assert second.status_code == 200
    assert second.json()["success"] is True
    assert second.json()["already_verified"] is True


@pytest.mark.asyncio
async def test_verify_with_never_issued_token_is_invalid(client: AsyncClient, outbox):
    await client.post("/api/v1/auth/register", json={"email": "a@x.com", "password": "pw"})
    resp = await client.post("/api/v1/auth/forgot-password", json={"email": "a@x.com"})
    assert resp.status_code == 200
    reset_token = await outbox.last_token("a@x.com")
    assert reset_token

    resp = await client.get("/api/v1/auth/verify", params={"token": "never-issued"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_token"
    # A reset token is not a verification token
    resp = await client.get("/api/v1/auth/verify", params={"token": reset_token})
    assert resp.json()["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_verify_expired_token(client: AsyncClient, outbox):
    await client.post("/api/v1/auth/register", json={"email": "a@x.com", "password": "pw"})
    token = await outbox.last_token("a@x.com")
    await _expire_token(EMAIL_VERIFICATION, token)

    resp = await client.get("/api/v1/auth/verify", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["code"] == "token_expired"
    assert (await _get_user("a@x.com")).enabled is False


# --- login --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_login_after_register_and_verify(client: AsyncClient, outbox):
    await _register_and_verify(client, outbox, "a@x.com", "pw")
    resp = await _login(client, "a@x.com", "pw")
    assert resp.status_code == 200
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == settings.access_token_expire_minutes * 60
    assert data["refresh_token"]
    assert data["user"]["email"] == "a@x.com"
    assert verify_access_token(data["access_token"]) == "a@x.com"


@pytest.mark.asyncio
async def test_login_unverified_is_forbidden(client: AsyncClient, unverified_user):
    resp = await _login(client, "pending@test.com", "password123")
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_login_unverified_with_wrong_password_is_unauthorized(client: AsyncClient, unverified_user):
    resp = await _login(client, "pending@test.com", "wrong")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_login_wrong_password_and_unknown_email_look_the_same(client: AsyncClient, test_user):
    wrong_password = await _login(client, "test@test.com", "wrong")
    unknown_email = await _login(client, "nobody@test.com", "password123")
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()


@pytest.mark.asyncio
async def test_login_email_is_case_insensitive(client: AsyncClient, test_user):
    resp = await _login(client, "  Test@Test.COM", "password123")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_login_revokes_previous_refresh_tokens(client: AsyncClient, test_user):
    first = (await _login(client)).json()["refresh_token"]
    second = (await _login(client)).json()["refresh_token"]

    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": first})
    assert resp.status_code == 401
    assert resp.json()["code"] == "token_revoked"
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": second})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_login_keeps_sessions_when_policy_disabled(client: AsyncClient, test_user):
    with patch.object(settings, "revoke_sessions_on_login", False):
        first = (await _login(client)).json()["refresh_token"]
        second = (await _login(client)).json()["refresh_token"]
    for token in (first, second):
        resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
        assert resp.status_code == 200


# --- refresh ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_rotates_tokens(client: AsyncClient, test_user):
    original = (await _login(client)).json()["refresh_token"]

    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": original})
    assert resp.status_code == 200
    data = resp.json()
    assert data["refresh_token"] != original
    assert verify_access_token(data["access_token"]) == "test@test.com"

    replay = await client.post("/api/v1/auth/refresh", json={"refresh_token": original})
    assert replay.status_code == 401
    assert replay.json()["code"] == "token_revoked"

    resp = await client.post("/api/v1/auth/refresh", json={"refreshToken": data["refresh_token"]})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_refresh_unknown_or_missing_token(client: AsyncClient):
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_token"
    resp = await client.post("/api/v1/auth/refresh", json={})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_refresh_expired_token(client: AsyncClient, test_user):
    token = (await _login(client)).json()["refresh_token"]
    await _expire_token(REFRESH, token)
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
    assert resp.status_code == 401
    assert resp.json()["code"] == "token_expired"


# --- logout -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_logout_unknown_token_is_ok(client: AsyncClient):
    resp = await client.post("/api/v1/auth/logout", json={"refresh_token": "never-issued"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Logged out successfully"


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(client: AsyncClient, test_user):
    token = (await _login(client)).json()["refresh_token"]
    resp = await client.post("/api/v1/auth/logout", json={"refresh_token": token})
    assert resp.status_code == 200
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
    assert resp.status_code == 401
    # Logging out twice is fine
    resp = await client.post("/api/v1/auth/logout", json={"refresh_token": token})
    assert resp.status_code == 200


# --- password reset -----------------------------------------------------------


@pytest.mark.asyncio
async def test_forgot_password_unknown_email(client: AsyncClient):
    resp = await client.post("/api/v1/auth/forgot-password", json={"email": "nobody@test.com"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_forgot_password_sends_reset_link(client: AsyncClient, outbox, test_user):
    resp = await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    assert resp.status_code == 200
    messages = await outbox.flush()
    assert messages[-1].subject == PASSWORD_RESET_SUBJECT
    assert "http://frontend.test/auth/reset-password?token=" in messages[-1].body


@pytest.mark.asyncio
async def test_validate_reset_token_does_not_consume(client: AsyncClient, outbox, test_user):
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    token = await outbox.last_token("test@test.com")

    for _ in range(2):
        resp = await client.get("/api/v1/auth/reset-password/validate", params={"token": token})
        assert resp.status_code == 200
        assert resp.json() == {"valid": True, "message": "Token is valid"}

    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": token, "new_password": "brand-new"},
    )
    assert resp.status_code == 200
    resp = await client.get("/api/v1/auth/reset-password/validate", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["valid"] is False


@pytest.mark.asyncio
async def test_validate_unknown_reset_token(client: AsyncClient):
    resp = await client.get("/api/v1/auth/reset-password/validate", params={"token": "nope"})
    assert resp.status_code == 400
    assert resp.json()["valid"] is False


@pytest.mark.asyncio
async def test_reset_password_is_single_use(client: AsyncClient, outbox, test_user):
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    token = await outbox.last_token("test@test.com")

    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": token, "newPassword": "brand-new"},
    )
    assert resp.status_code == 200
    assert (await _login(client, password="brand-new")).status_code == 200
    assert (await _login(client, password="password123")).status_code == 401

    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": token, "new_password": "another"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "token_used"


@pytest.mark.asyncio
async def test_new_reset_request_invalidates_previous_token(client: AsyncClient, outbox, test_user):
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    old_token = await outbox.last_token("test@test.com")
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    new_token = await outbox.last_token("test@test.com")
    assert old_token != new_token

    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": old_token, "new_password": "x"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_token"
    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": new_token, "new_password": "x"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_reset_password_expired_token(client: AsyncClient, outbox, test_user):
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    token = await outbox.last_token("test@test.com")
    await _expire_token(PASSWORD_RESET, token)

    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": token, "new_password": "x"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "token_expired"
    resp = await client.get("/api/v1/auth/reset-password/validate", params={"token": token})
    assert resp.json()["valid"] is False


@pytest.mark.asyncio
async def test_reset_password_requires_new_password(client: AsyncClient, outbox, test_user):
    await client.post("/api/v1/auth/forgot-password", json={"email": "test@test.com"})
    token = await outbox.last_token("test@test.com")
    resp = await client.post(
        "/api/v1/auth/reset-password",
        json={"token": token, "new_password": ""},
    )
    assert resp.status_code == 400
    # Token remains usable
    resp = await client.get("/api/v1/auth/reset-password/validate", params={"token": token})
    assert resp.status_code == 200


# --- persistence failures -----------------------------------------------------


def _failing_commit():
    return patch.object(AsyncSession, "commit", AsyncMock(side_effect=RuntimeError("store unavailable")))


def _server_error_client() -> AsyncClient:
    return AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    )


@pytest.mark.asyncio
async def test_register_commit_failure_is_server_error_and_sends_nothing(clean_db, outbox):
    async with _server_error_client() as ac:
        with _failing_commit():
            resp = await ac.post("/api/v1/auth/register", json={"email": "a@x.com", "password": "pw"})
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error", "code": "server_error"}
    assert await outbox.flush() == []
    async with async_session_maker() as session:
        assert await auth_service.get_user_by_email(session, "a@x.com") is None


@pytest.mark.asyncio
async def test_refresh_commit_failure_keeps_presented_token(client: AsyncClient, test_user):
    token = (await _login(client)).json()["refresh_token"]
    async with _server_error_client() as ac:
        with _failing_commit():
            resp = await ac.post("/api/v1/auth/refresh", json={"refresh_token": token})
    assert resp.status_code == 500
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
    assert resp.status_code == 200
