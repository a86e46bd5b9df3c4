# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""FastAPI dependencies: app-scoped services and the current user."""

import logging
from dataclasses import dataclass

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink_server.auth import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    TokenCodec,
    set_auth_cookies,
)
from shortlink_server.config import Settings
from shortlink_server.database import get_db
from shortlink_server.errors import TokenInvalid, Unauthorized
from shortlink_server.models import User, UserSession
from shortlink_server.services.accounts import AccountService
from shortlink_server.services.sessions import ClientMeta

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    user: User
    session_id: int


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.codec


def get_account_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AccountService:
    state = request.app.state
    return AccountService(db, state.codec, state.settings, state.mailer, state.mail_queue)


def client_meta(request: Request) -> ClientMeta:
    """Client IP (X-Forwarded-For first when behind a proxy) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    elif request.client:
        ip = request.client.host
    else:
        ip = None
    return ClientMeta(ip=ip, user_agent=request.headers.get("user-agent"))


async def get_optional_user(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AccountService = Depends(get_account_service),
) -> CurrentUser | None:
    """Resolve the user from the access token; fall back to the refresh token.

    An access token only counts while its session exists and is valid. When it
    is missing or expired and a refresh token cookie is present, a new pair is
    minted for the same session and set on the response.
    """
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_TOKEN_COOKIE)
    if token:
        try:
            claims = service.codec.decode_access_token(token)
        except TokenInvalid:
            claims = None
        if claims is not None:
            session = await service.db.get(UserSession, claims.session_id)
            if session is not None and session.valid and session.user_id == claims.user_id:
                user = await service.db.get(User, claims.user_id)
                if user is not None:
                    return CurrentUser(user, session.id)

    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not refresh_token:
        return None
    try:
        result = await service.refresh(refresh_token)
    except Unauthorized as e:
        logger.info("Refresh rejected: %s", e.detail)
        return None
    set_auth_cookies(response, result.tokens, service.codec, service.settings)
    return CurrentUser(result.user, result.session_id)


async def get_current_user(
    current: CurrentUser | None = Depends(get_optional_user),
) -> CurrentUser:
    """Like get_optional_user but raises 401 when nobody is signed in."""
    if current is None:
        raise Unauthorized()
    return current
