# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Auth endpoint tests."""

import asyncio
import logging
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from cerebra_auth import __main__ as launcher
from cerebra_auth.database import init_db
from cerebra_auth.errors import ValidationError
from cerebra_auth.main import create_app
from cerebra_auth.models import OneTimeToken, TokenPurpose

PASSWORD = "correct-horse-battery"


async def test_health(client: AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_signup_verify_and_login(client: AsyncClient, resend):
    """Sign up, follow the emailed link, then log in and call /me."""
    reg = await client.post(
        "/auth/signup",
        json={"email": "Alice@Example.com", "password": PASSWORD, "name": "Alice"},
    )
    assert reg.status_code == 200
    body = reg.json()
    assert body["user"]["email"] == "alice@example.com"
    assert body["user"]["email_verified"] is False
    assert body["token"] is None

    # Unverified accounts can't sign in
    before = await client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert before.status_code == 403

    assert resend.messages[-1]["to"] == ["alice@example.com"]
    link = urlparse(resend.last_link())
    assert f"{link.scheme}://{link.netloc}" == "http://auth.test"
    assert link.path == "/auth/verify"
    assert parse_qs(link.query)["email"] == ["alice@example.com"]

    verify = await client.get(f"{link.path}?{link.query}")
    assert verify.status_code == 302
    assert verify.headers["location"] == "http://frontend.test/auth/login?verified=true"

    login = await client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert login.status_code == 200
    token = login.json()["access_token"]
    assert login.json()["token_type"] == "bearer"

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email_verified"] is True


async def test_signup_rejects_duplicate_email(app, create_user, client: AsyncClient):
    await create_user(app, "bob@example.com")
    r = await client.post("/auth/signup", json={"email": "BOB@example.com", "password": PASSWORD})
    assert r.status_code == 400
    assert r.json()["error"] == "Email already registered"


async def test_signup_rejects_malformed_email_and_short_password(client: AsyncClient):
    r = await client.post("/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
    assert r.status_code == 400
    r = await client.post("/auth/signup", json={"email": "carol@example.com", "password": "short"})
    assert r.status_code == 400
    assert "at least 8" in r.json()["error"]


async def test_login_invalid_credentials(app, create_user, client: AsyncClient):
    await create_user(app, "bob@example.com")
    r = await client.post("/auth/login", json={"email": "bob@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert "error" in r.json()
    r = await client.post("/auth/login", json={"email": "nobody@example.com", "password": "wrong-password"})
    assert r.status_code == 401


async def test_me_requires_auth(client: AsyncClient):
    r = await client.get("/auth/me")
    assert r.status_code == 401
    r = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


async def test_forgot_password_does_not_reveal_accounts(app, create_user, client: AsyncClient, resend, db):
    user = await create_user(app, "bob@example.com")

    known = await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    unknown = await client.post("/auth/forgot-password", json={"email": "ghost@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {
        "status": True,
        "message": "If an account exists, a reset link was sent.",
    }
    assert len(resend.messages) == 1
    assert resend.messages[0]["to"] == ["bob@example.com"]

    # Only the real account got a token
    rows = (await db.execute(select(OneTimeToken))).scalars().all()
    assert [row.identifier for row in rows] == [str(user.id)]


async def test_forgot_password_requires_email(client: AsyncClient):
    r = await client.post("/auth/forgot-password", json={})
    assert r.status_code == 400
    assert r.json()["error"] == "`email` is required"

    r = await client.post(
        "/auth/forgot-password",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400


async def test_password_reset_flow(app, create_user, client: AsyncClient, resend):
    await create_user(app, "bob@example.com")
    await client.post("/auth/forgot-password", json={"email": "BOB@example.com"})

    link = urlparse(resend.last_link())
    assert f"{link.scheme}://{link.netloc}{link.path}" == "http://frontend.test/auth/reset-password/confirm"
    token = resend.last_token()

    r = await client.post("/auth/reset-password", json={"token": token, "password": "a-brand-new-secret"})
    assert r.status_code == 200
    assert r.json() == {"status": True, "message": "Password has been reset successfully."}

    old = await client.post("/auth/login", json={"email": "bob@example.com", "password": PASSWORD})
    assert old.status_code == 401
    new = await client.post("/auth/login", json={"email": "bob@example.com", "password": "a-brand-new-secret"})
    assert new.status_code == 200

    again = await client.post("/auth/reset-password", json={"token": token, "password": "yet-another-secret"})
    assert again.status_code == 400
    assert again.json()["error"] == "Invalid or expired token"


async def test_reset_link_honours_relative_redirect_only(app, create_user, client: AsyncClient, resend):
    await create_user(app, "bob@example.com")

    await client.post("/auth/forgot-password", json={"email": "bob@example.com", "redirectTo": "/account/reset"})
    assert resend.last_link().startswith("http://frontend.test/account/reset?token=")

    await client.post(
        "/auth/forgot-password",
        json={"email": "bob@example.com", "redirectTo": "https://evil.example/steal"},
    )
    assert resend.last_link().startswith("http://frontend.test/auth/reset-password/confirm?token=")


async def test_reset_with_expired_token(app, create_user, client: AsyncClient, resend, clock):
    await create_user(app, "bob@example.com")
    await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    token = resend.last_token()

    clock.advance(minutes=61)
    r = await client.post("/auth/reset-password", json={"token": token, "password": "a-brand-new-secret"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid or expired token"


async def test_reset_password_validation(app, create_user, client: AsyncClient, resend):
    r = await client.post("/auth/reset-password", json={"token": "abc"})
    assert r.status_code == 400
    assert r.json()["error"] == "`password` is required"

    await create_user(app, "bob@example.com")
    await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    token = resend.last_token()

    # A rejected password leaves the token usable
    short = await client.post("/auth/reset-password", json={"token": token, "password": "short"})
    assert short.status_code == 400
    ok = await client.post("/auth/reset-password", json={"token": token, "password": "a-brand-new-secret"})
    assert ok.status_code == 200


async def test_request_verification(app, create_user, client: AsyncClient, resend):
    r = await client.post("/auth/request-verification", json={"email": "ghost@example.com"})
    assert r.status_code == 404
    assert r.json()["error"] == "User not found"

    await create_user(app, "done@example.com", verified=True)
    r = await client.post("/auth/request-verification", json={"email": "done@example.com"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "message": "Already verified"}
    assert resend.messages == []

    await create_user(app, "new@example.com", verified=False)
    r = await client.post("/auth/request-verification", json={"email": "new@example.com"})
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert resend.messages[-1]["to"] == ["new@example.com"]
    assert resend.last_link().startswith("http://auth.test/auth/verify?token=")


async def test_verify_rejects_bad_requests(app, create_user, client: AsyncClient, resend):
    r = await client.get("/auth/verify")
    assert r.status_code == 400
    assert r.json()["error"] == "Missing token or email"

    await create_user(app, "new@example.com", verified=False)
    await client.post("/auth/request-verification", json={"email": "new@example.com"})
    token = resend.last_token()

    wrong_email = await client.get("/auth/verify", params={"token": token, "email": "other@example.com"})
    assert wrong_email.status_code == 400
    bad_token = await client.get("/auth/verify", params={"token": "0" * 64, "email": "new@example.com"})
    assert bad_token.status_code == 400
    assert bad_token.json()["error"] == "Invalid or expired token"

    ok = await client.get("/auth/verify", params={"token": token, "email": "new@example.com"})
    assert ok.status_code == 302
    reused = await client.get("/auth/verify", params={"token": token, "email": "new@example.com"})
    assert reused.status_code == 400


async def test_delivery_failure_does_not_fail_issuance(app, create_user, client: AsyncClient, resend, db):
    user = await create_user(app, "bob@example.com")
    resend.status_code = 500

    r = await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    assert r.status_code == 200
    assert len(resend.requests) == 1

    row = (await db.execute(select(OneTimeToken))).scalar_one()
    assert row.identifier == str(user.id)
    assert row.purpose == TokenPurpose.PASSWORD_RESET.value


async def test_missing_provider_key_still_persists_token(make_settings, create_user, clock, resend):
    settings = make_settings(email_provider_api_key=None)
    app = create_app(settings, clock=clock, email_transport=resend.transport)
    await init_db(app.state.engine)
    try:
        await create_user(app, "bob@example.com")
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            r = await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
            assert r.status_code == 200
            assert r.json()["status"] is True

            t = await client.post("/auth/test-email", json={"to": "ops@example.com"})
            assert t.status_code == 500
            assert t.json()["error"] == "EMAIL_PROVIDER_API_KEY is not configured"

        assert resend.requests == []
        async with app.state.session_maker() as session:
            rows = (await session.execute(select(OneTimeToken))).scalars().all()
        assert len(rows) == 1
    finally:
        await app.state.engine.dispose()


async def test_test_email(client: AsyncClient, resend):
    r = await client.post("/auth/test-email", json={"to": "ops@example.com"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "id": "msg_1"}
    assert resend.messages[0]["to"] == ["ops@example.com"]

    r = await client.post("/auth/test-email", json={"to": ["a@example.com", "b@example.com"]})
    assert r.status_code == 200
    assert resend.messages[1]["to"] == ["a@example.com", "b@example.com"]

    resend.status_code = 422
    r = await client.post("/auth/test-email", json={"to": "ops@example.com"})
    assert r.status_code == 500

    r = await client.post("/auth/test-email", json={})
    assert r.status_code == 400


async def test_test_email_can_be_disabled(make_settings, resend):
    app = create_app(make_settings(test_email_enabled=False), email_transport=resend.transport)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            r = await client.post("/auth/test-email", json={"to": "ops@example.com"})
        assert r.status_code == 404
        assert resend.requests == []
    finally:
        await app.state.engine.dispose()


async def test_reissued_reset_link_supersedes_old_one(app, create_user, client: AsyncClient, resend):
    await create_user(app, "bob@example.com")
    await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    first = resend.last_token()
    await client.post("/auth/forgot-password", json={"email": "bob@example.com"})
    second = resend.last_token()

    r = await client.post("/auth/reset-password", json={"token": first, "password": "a-brand-new-secret"})
    assert r.status_code == 400
    r = await client.post("/auth/reset-password", json={"token": second, "password": "a-brand-new-secret"})
    assert r.status_code == 200


async def test_lifespan_provisions_schema_and_sweeps_expired_tokens(make_settings, clock):
    app = create_app(make_settings(token_sweep_interval_minutes=0.001), clock=clock)
    async with app.router.lifespan_context(app):
        async with app.state.session_maker() as session:
            await app.state.tokens.issue(session, "1", TokenPurpose.PASSWORD_RESET)
        clock.advance(hours=2)
        await asyncio.sleep(0.5)
        async with app.state.session_maker() as session:
            rows = (await session.execute(select(OneTimeToken))).scalars().all()
        assert rows == []


async def test_signup_race_on_same_email_is_rejected_cleanly(app, create_user, db, monkeypatch):
    """The unique index catches a duplicate that slipped past the lookup."""
    await create_user(app, "bob@example.com")
    authenticator = app.state.authenticator

    async def not_found(*args, **kwargs):
        return None

    monkeypatch.setattr(authenticator, "get_user_by_email", not_found)
    with pytest.raises(ValidationError) as exc:
        await authenticator.register(db, "bob@example.com", PASSWORD)
    assert exc.value.message == "Email already registered"
    assert exc.value.status_code == 400


async def test_verify_tokens_stay_out_of_logs(app, create_user, client: AsyncClient, resend, caplog):
    await create_user(app, "new@example.com", verified=False)
    await client.post("/auth/request-verification", json={"email": "new@example.com"})
    token = resend.last_token()

    with caplog.at_level(logging.DEBUG):
        bad = await client.get("/auth/verify", params={"token": "f" * 64, "email": "new@example.com"})
        ok = await client.get("/auth/verify", params={"token": token, "email": "new@example.com"})
    assert bad.status_code == 400
    assert ok.status_code == 302

    # The test client logs its own request URLs; only the service's records count
    records = [r for r in caplog.records if r.name.startswith(("cerebra_auth", "uvicorn"))]
    assert any("/auth/verify" in r.getMessage() for r in records)
    for record in records:
        assert token not in record.getMessage()
        assert "f" * 64 not in record.getMessage()


def test_launcher_turns_off_uvicorn_access_log(monkeypatch):
    calls = []
    monkeypatch.setattr(launcher.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    launcher.main()

    assert len(calls) == 1
    app, kwargs = calls[0]
    assert app == "cerebra_auth.main:app"
    assert kwargs["access_log"] is False
