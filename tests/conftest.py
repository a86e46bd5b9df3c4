# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Each test gets its own SQLite database (aiosqlite) and a recording mailer."""

import re

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from shortlink_server.auth import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, hash_password
from shortlink_server.config import Settings
from shortlink_server.errors import MailDeliveryError
from shortlink_server.main import create_app
from shortlink_server.models import User
from shortlink_server.services.sessions import ClientMeta, SessionRegistry


class RecordingMailer:
    """Stands in for the SMTP mailer; fails while `failures` is positive."""

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.failures = 0

    async def send(self, message):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise MailDeliveryError()
        self.sent.append(message)


def token_from_mail(message, pattern: str) -> str:
    match = re.search(pattern, message.html)
    assert match, f"no token in {message.subject!r}"
    return match.group(1)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        cookie_secure=False,
        base_url="http://test",
        frontend_url="http://frontend.test",
        google_client_id="google-client",
        google_client_secret="google-secret",
        github_client_id="github-client",
        github_client_secret="github-secret",
        mail_max_attempts=2,
        mail_retry_backoff=0,
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def provider_calls():
    return []


@pytest.fixture
def provider_handler():
    """Override in a test module to answer OAuth provider requests."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "no provider stub"})

    return handler


@pytest.fixture
async def app(settings, mailer, provider_handler, provider_calls):
    def record(request: httpx.Request) -> httpx.Response:
        provider_calls.append(request)
        return provider_handler(request)

    application = create_app(settings, mailer=mailer, oauth_transport=httpx.MockTransport(record))
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db(app):
    async with app.state.database.session_maker() as session:
        yield session


@pytest.fixture
def codec(app):
    return app.state.codec


@pytest.fixture
def make_user(db):
    async def _make_user(
        email: str = "a@x.com",
        password: str | None = "pw123456",
        name: str = "Alice",
        **fields,
    ) -> User:
        user = User(
            name=name,
            email=email,
            password_hash=hash_password(password) if password else None,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
def sign_in(db, codec, client):
    """Open a session for a user directly and put its tokens in the client's cookie jar."""

    async def _sign_in(user: User) -> int:
        registry = SessionRegistry(db, codec)
        session = await registry.open(user.id, ClientMeta(ip="127.0.0.1", user_agent="pytest"))
        await db.commit()
        tokens = registry.issue_tokens(user, session.id)
        client.cookies.set(ACCESS_TOKEN_COOKIE, tokens.access_token)
        client.cookies.set(REFRESH_TOKEN_COOKIE, tokens.refresh_token)
        return session.id

    return _sign_in
