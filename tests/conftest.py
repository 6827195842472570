# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures.

Each test gets its own file-backed SQLite database (aiosqlite), a clock it
can move forward, and a stand-in for the Resend API that records messages.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from cerebra_auth.config import Settings
from cerebra_auth.database import init_db
from cerebra_auth.main import create_app

PASSWORD = "correct-horse-battery"


class FakeClock:
    """Callable clock for the token service; starts at a fixed instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ResendStub:
    """Answers Resend API calls and keeps the JSON payloads."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "rejected"})
        self.messages.append(json.loads(request.content))
        return httpx.Response(200, json={"id": f"msg_{len(self.messages)}"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_link(self) -> str:
        match = re.search(r"https?://\S+", self.messages[-1]["text"])
        assert match, "no link in email"
        return match.group(0)

    def last_token(self) -> str:
        return parse_qs(urlparse(self.last_link()).query)["token"][0]


def _make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}",
        "jwt_secret": "test-secret",
        "email_provider_api_key": SecretStr("re_test_key"),
        "frontend_url": "http://frontend.test",
        "service_public_url": "http://auth.test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resend():
    return ResendStub()


@pytest.fixture
def make_settings(tmp_path):
    """Settings against this test's database, with overrides."""

    def factory(**overrides) -> Settings:
        return _make_settings(tmp_path, **overrides)

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
async def app(settings, clock, resend):
    application = create_app(settings, clock=clock, email_transport=resend.transport)
    await init_db(application.state.engine)
    yield application
    await application.state.engine.dispose()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db(app):
    async with app.state.session_maker() as session:
        yield session


async def _create_user(app, email: str, password: str = PASSWORD, verified: bool = True):
    """Insert an account directly, bypassing the sign-up email."""
    async with app.state.session_maker() as session:
        user = await app.state.authenticator.register(session, email, password)
        user.email_verified = verified
        await session.commit()
        return user


@pytest.fixture
def create_user():
    return _create_user
