# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Server-side login sessions: open, look up, revoke and refresh."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink_server.auth import TokenCodec, TokenPair
from shortlink_server.errors import InvalidSession, InvalidUser, PersistenceError
from shortlink_server.models import User, UserSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientMeta:
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    refresh_token: str
    user: User
    session_id: int

    @property
    def tokens(self) -> TokenPair:
        return TokenPair(self.access_token, self.refresh_token)


class SessionRegistry:
    """Sessions are the unit of revocation: deleting one invalidates every token bound to it."""

    def __init__(self, db: AsyncSession, codec: TokenCodec):
        self.db = db
        self.codec = codec

    async def open(self, user_id: int, client: ClientMeta) -> UserSession:
        session = UserSession(user_id=user_id, ip=client.ip, user_agent=client.user_agent)
        self.db.add(session)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError() from e
        return session

    async def find(self, session_id: int) -> UserSession | None:
        return await self.db.get(UserSession, session_id)

    async def revoke(self, session_id: int) -> None:
        await self.db.execute(delete(UserSession).where(UserSession.id == session_id))

    def issue_tokens(self, user: User, session_id: int) -> TokenPair:
        return TokenPair(
            access_token=self.codec.sign_access_token(user, session_id),
            refresh_token=self.codec.sign_refresh_token(session_id),
        )

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Mint a new token pair for the session named by refresh_token.

        The session id is kept; only the tokens are replaced.
        """
        payload = self.codec.verify(refresh_token, TokenCodec.REFRESH)
        session = await self.find(payload["session_id"])
        if session is None or not session.valid:
            raise InvalidSession()
        user = await self.db.get(User, session.user_id)
        if user is None:
            raise InvalidUser()
        session.updated_at = datetime.now(timezone.utc)
        tokens = self.issue_tokens(user, session.id)
        return RefreshResult(tokens.access_token, tokens.refresh_token, user, session.id)

    async def prune(self, now: datetime | None = None) -> int:
        """Delete invalid sessions and sessions idle longer than a refresh token lives."""
        cutoff = (now or datetime.now(timezone.utc)) - self.codec.refresh_ttl
        stale = (
            await self.db.scalars(
                select(UserSession.id).where(
                    or_(UserSession.valid.is_(False), UserSession.updated_at < cutoff)
                )
            )
        ).all()
        if stale:
            await self.db.execute(delete(UserSession).where(UserSession.id.in_(stale)))
        logger.info("Pruned %d stale sessions", len(stale))
        return len(stale)
