# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Social login routes: redirect to the provider and handle its callback."""

import logging
from datetime import timedelta
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from shortlink_server.auth import set_auth_cookies
from shortlink_server.config import Settings
from shortlink_server.dependencies import (
    CurrentUser,
    client_meta,
    get_account_service,
    get_optional_user,
    get_settings_dep,
)
from shortlink_server.errors import AccountAlreadyLinked, AppError, NotFound
from shortlink_server.services.accounts import AccountService
from shortlink_server.services.oauth import OAuthProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["oauth"])


def get_provider(provider: str, request: Request) -> OAuthProvider:
    providers: dict[str, OAuthProvider] = request.app.state.oauth_providers
    if provider not in providers:
        raise NotFound("Login provider not available")
    return providers[provider]


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


def _set_exchange_cookie(response: Response, name: str, value: str, settings: Settings) -> None:
    response.set_cookie(
        name,
        value,
        max_age=int(timedelta(minutes=settings.oauth_exchange_expire_minutes).total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _clear_exchange_cookies(response: Response, provider: OAuthProvider, settings: Settings) -> None:
    for name in (provider.state_cookie, provider.verifier_cookie):
        response.delete_cookie(name, httponly=True, secure=settings.cookie_secure, samesite="lax")


@router.get("/{provider}")
async def begin_oauth_login(
    oauth: OAuthProvider = Depends(get_provider),
    current: CurrentUser | None = Depends(get_optional_user),
    settings: Settings = Depends(get_settings_dep),
) -> RedirectResponse:
    """Redirect to the provider's consent page; state and PKCE verifier go in cookies."""
    if current is not None:
        return _redirect(settings.frontend_url)
    auth_request = await oauth.begin_authorization()
    response = _redirect(auth_request.url)
    _set_exchange_cookie(response, oauth.state_cookie, auth_request.state, settings)
    if auth_request.code_verifier:
        _set_exchange_cookie(response, oauth.verifier_cookie, auth_request.code_verifier, settings)
    return response


@router.get("/{provider}/callback")
async def oauth_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    oauth: OAuthProvider = Depends(get_provider),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings_dep),
) -> RedirectResponse:
    """Finish the provider login, link or create the account, and sign in.

    Failures send the browser back to the login page with a generic error code;
    details only go to the log.
    """
    try:
        identity = await oauth.complete_authorization(
            code,
            state,
            request.cookies.get(oauth.state_cookie),
            request.cookies.get(oauth.verifier_cookie),
        )
        outcome = await service.login_with_identity(identity, client_meta(request))
    except AppError as e:
        await service.db.rollback()
        error = "account_already_linked" if isinstance(e, AccountAlreadyLinked) else "oauth_failed"
        logger.info("%s login failed: %s", oauth.name.value, e.detail)
        response = _redirect(f"{settings.frontend_url.rstrip('/')}/login?{urlencode({'error': error})}")
        _clear_exchange_cookies(response, oauth, settings)
        return response

    response = _redirect(settings.frontend_url)
    _clear_exchange_cookies(response, oauth, settings)
    set_auth_cookies(response, outcome.tokens, service.codec, settings)
    return response
