# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Session registry: open, revoke, refresh and prune."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from shortlink_server.errors import InvalidSession, InvalidUser, TokenInvalid
from shortlink_server.models import User, UserSession
from shortlink_server.scripts.prune_sessions import prune
from shortlink_server.services.sessions import ClientMeta, SessionRegistry


@pytest.fixture
def registry(db, codec):
    return SessionRegistry(db, codec)


async def test_open_records_client_metadata(registry, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta(ip="10.0.0.1", user_agent="curl/8"))
    found = await registry.find(session.id)
    assert found is not None
    assert found.valid is True
    assert (found.user_id, found.ip, found.user_agent) == (user.id, "10.0.0.1", "curl/8")


async def test_users_may_hold_many_sessions(registry, db, make_user):
    user = await make_user()
    for _ in range(3):
        await registry.open(user.id, ClientMeta())
    count = await db.scalar(select(func.count()).select_from(UserSession).where(UserSession.user_id == user.id))
    assert count == 3


async def test_refresh_keeps_the_session_and_issues_new_tokens(registry, codec, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta())
    tokens = registry.issue_tokens(user, session.id)

    result = await registry.refresh(tokens.refresh_token)

    assert result.session_id == session.id
    assert result.user.id == user.id
    assert codec.decode_access_token(result.access_token).session_id == session.id
    assert codec.verify(result.refresh_token, codec.REFRESH)["session_id"] == session.id


async def test_refresh_fails_once_the_session_is_revoked(registry, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta())
    tokens = registry.issue_tokens(user, session.id)

    await registry.revoke(session.id)

    assert await registry.find(session.id) is None
    with pytest.raises(InvalidSession):
        await registry.refresh(tokens.refresh_token)


async def test_refresh_fails_for_an_invalidated_session(registry, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta())
    session.valid = False
    with pytest.raises(InvalidSession):
        await registry.refresh(registry.issue_tokens(user, session.id).refresh_token)


async def test_refresh_fails_when_the_user_is_gone(registry, db, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta())
    tokens = registry.issue_tokens(user, session.id)
    await db.delete(user)
    await db.flush()
    with pytest.raises(InvalidUser):
        await registry.refresh(tokens.refresh_token)


async def test_refresh_rejects_access_tokens(registry, make_user):
    user = await make_user()
    session = await registry.open(user.id, ClientMeta())
    with pytest.raises(TokenInvalid):
        await registry.refresh(registry.issue_tokens(user, session.id).access_token)


async def test_prune_removes_invalid_and_idle_sessions(registry, db, codec, make_user):
    user = await make_user()
    active = await registry.open(user.id, ClientMeta())
    idle = await registry.open(user.id, ClientMeta())
    invalid = await registry.open(user.id, ClientMeta())
    invalid.valid = False
    await db.flush()
    long_ago = datetime.now(timezone.utc) - codec.refresh_ttl - timedelta(days=1)
    await db.execute(update(UserSession).where(UserSession.id == idle.id).values(updated_at=long_ago))

    removed = await registry.prune()

    assert removed == 2
    remaining = (await db.scalars(select(UserSession.id))).all()
    assert remaining == [active.id]
    assert await db.get(User, user.id) is not None


async def test_prune_command_commits(app, db, codec, make_user):
    user = await make_user()
    registry = SessionRegistry(db, codec)
    stale = await registry.open(user.id, ClientMeta())
    stale.valid = False
    await db.commit()

    assert await prune(app.state.database, codec) == 1
    assert await db.scalar(select(func.count()).select_from(UserSession)) == 0
