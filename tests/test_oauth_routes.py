# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Social login routes end to end, with GitHub answered by a mock transport."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from sqlalchemy import func, select

from shortlink_server.models import OAuthAccount, OAuthProviderName, User
from shortlink_server.services.oauth import ProviderIdentity, reconcile


@pytest.fixture
def token_reply():
    """Keyword arguments for the GitHub token endpoint response."""
    return {"json": {"access_token": "gho_token"}}


@pytest.fixture
def provider_handler(token_reply):
    github_email = {"email": "a@x.com", "primary": True, "verified": True}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, **token_reply)
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "alice", "name": "Alice", "avatar_url": None})
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=[github_email])
        return httpx.Response(404)

    return handler


async def begin_github(client) -> str:
    r = await client.get("/api/v1/auth/github")
    assert r.status_code == 302
    return parse_qs(urlsplit(r.headers["location"]).query)["state"][0]


async def test_begin_redirects_to_provider_and_sets_state_cookie(client):
    r = await client.get("/api/v1/auth/github")

    assert r.status_code == 302
    location = urlsplit(r.headers["location"])
    assert (location.netloc, location.path) == ("github.com", "/login/oauth/authorize")
    params = parse_qs(location.query)
    assert params["redirect_uri"] == ["http://test/api/v1/auth/github/callback"]
    assert client.cookies.get("github_auth_state") == params["state"][0]


async def test_unknown_provider(client):
    r = await client.get("/api/v1/auth/facebook")
    assert r.status_code == 404


async def test_begin_when_signed_in_goes_back_to_frontend(client, make_user, sign_in):
    user = await make_user()
    await sign_in(user)
    r = await client.get("/api/v1/auth/github")
    assert r.status_code == 302
    assert r.headers["location"] == "http://frontend.test"


async def test_callback_creates_the_user_and_signs_in(client, db, provider_calls):
    state = await begin_github(client)

    r = await client.get("/api/v1/auth/github/callback", params={"code": "good-code", "state": state})

    assert r.status_code == 302
    assert r.headers["location"] == "http://frontend.test"
    assert len(provider_calls) == 3
    user = (await db.execute(select(User.id, User.is_email_valid).where(User.email == "a@x.com"))).one()
    assert user.is_email_valid is True
    assert await db.scalar(select(func.count()).select_from(OAuthAccount).where(OAuthAccount.user_id == user.id)) == 1

    me = await client.get("/api/v1/auth/me")
    assert me.status_code == 200
    assert me.json()["has_password"] is False


async def test_callback_with_mismatched_state(client, provider_calls):
    await begin_github(client)

    r = await client.get("/api/v1/auth/github/callback", params={"code": "good-code", "state": "forged"})

    assert r.status_code == 302
    assert r.headers["location"] == "http://frontend.test/login?error=oauth_failed"
    assert provider_calls == []
    assert (await client.get("/api/v1/auth/me")).status_code == 401


async def test_callback_without_state_cookie(client, provider_calls):
    r = await client.get("/api/v1/auth/github/callback", params={"code": "good-code", "state": "anything"})
    assert r.headers["location"].endswith("error=oauth_failed")
    assert provider_calls == []


async def test_callback_for_account_linked_elsewhere(client, db):
    await reconcile(db, ProviderIdentity(OAuthProviderName.GITHUB, "42", "owner@x.com", "Owner"))
    await db.commit()
    state = await begin_github(client)

    r = await client.get("/api/v1/auth/github/callback", params={"code": "good-code", "state": state})

    assert r.headers["location"] == "http://frontend.test/login?error=account_already_linked"
    assert await db.scalar(select(func.count()).select_from(User)) == 1
    owner = await db.scalar(select(OAuthAccount.user_id).where(OAuthAccount.provider_account_id == "42"))
    assert owner == await db.scalar(select(User.id).where(User.email == "owner@x.com"))


async def test_callback_with_unreadable_provider_reply(client, token_reply, provider_calls):
    token_reply.clear()
    token_reply["text"] = "<html>oops</html>"
    state = await begin_github(client)

    r = await client.get("/api/v1/auth/github/callback", params={"code": "good-code", "state": state})

    assert r.status_code == 302
    assert r.headers["location"] == "http://frontend.test/login?error=oauth_failed"
    assert len(provider_calls) == 1
    assert (await client.get("/api/v1/auth/me")).status_code == 401
