# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""OAuth login with Google (OIDC + PKCE) and GitHub, and linking to local accounts.

Flow per provider:
1. begin_authorization() returns the provider URL plus a CSRF state (and a PKCE
   verifier for Google). The caller keeps both in short-lived httpOnly cookies.
2. complete_authorization() checks the returned state against the stored one
   before any network call, exchanges the code and fetches the identity.
3. reconcile() maps the identity to a local user, linking or creating as needed.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink_server.config import Settings
from shortlink_server.errors import AccountAlreadyLinked, OAuthExchangeError
from shortlink_server.models import OAuthAccount, OAuthProviderName, User

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30

# Malformed provider answers: bad JSON, missing fields, wrong shapes
PROVIDER_ERRORS = (httpx.HTTPError, ValueError, KeyError, TypeError)


def json_object(resp: httpx.Response) -> dict[str, Any]:
    """Decoded JSON body; ValueError unless it is an object."""
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    code_verifier: str | None = None


@dataclass(frozen=True)
class ProviderIdentity:
    provider: OAuthProviderName
    account_id: str
    email: str
    name: str
    avatar_url: str | None = None


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """URL-safe verifier, 86 characters from 64 random bytes."""
    return base64.urlsafe_b64encode(secrets.token_bytes(64)).decode("ascii").rstrip("=")


def code_challenge(verifier: str) -> str:
    """S256: BASE64URL(SHA256(code_verifier))."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class OAuthProvider:
    """Authorization-code grant against one provider."""

    name: OAuthProviderName
    uses_pkce: bool = False
    default_scopes: tuple[str, ...] = ()

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.transport = transport

    @property
    def state_cookie(self) -> str:
        return f"{self.name.value}_auth_state"

    @property
    def verifier_cookie(self) -> str:
        return f"{self.name.value}_code_verifier"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self.transport)

    async def authorization_endpoint(self) -> str:
        raise NotImplementedError

    async def begin_authorization(self, scopes: list[str] | None = None) -> AuthorizationRequest:
        state = generate_state()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes or self.default_scopes),
            "state": state,
        }
        verifier = None
        if self.uses_pkce:
            verifier = generate_code_verifier()
            params["code_challenge"] = code_challenge(verifier)
            params["code_challenge_method"] = "S256"
        url = f"{await self.authorization_endpoint()}?{urlencode(params)}"
        return AuthorizationRequest(url=url, state=state, code_verifier=verifier)

    async def complete_authorization(
        self,
        code: str | None,
        state: str | None,
        stored_state: str | None,
        code_verifier: str | None = None,
    ) -> ProviderIdentity:
        """Validate the callback, exchange the code and return the provider identity."""
        if not code or not state or not stored_state or not secrets.compare_digest(state, stored_state):
            logger.info("Rejected %s callback: missing or mismatched state", self.name.value)
            raise OAuthExchangeError()
        if self.uses_pkce and not code_verifier:
            logger.info("Rejected %s callback: missing code verifier", self.name.value)
            raise OAuthExchangeError()
        try:
            async with self._client() as client:
                token = await self._exchange_code(client, code, code_verifier)
                return await self._fetch_identity(client, token)
        except PROVIDER_ERRORS as e:
            logger.warning("%s OAuth request failed: %r", self.name.value, e)
            raise OAuthExchangeError() from e

    async def _exchange_code(
        self, client: httpx.AsyncClient, code: str, code_verifier: str | None
    ) -> dict[str, Any]:
        raise NotImplementedError

    async def _fetch_identity(self, client: httpx.AsyncClient, token: dict[str, Any]) -> ProviderIdentity:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    name = OAuthProviderName.GOOGLE
    uses_pkce = True
    default_scopes = ("openid", "profile", "email")
    discovery_url = "https://accounts.google.com/.well-known/openid-configuration"
    required_endpoints = ("authorization_endpoint", "token_endpoint")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._discovery: dict[str, Any] | None = None

    async def discover(self) -> dict[str, Any]:
        """Fetch and cache the OpenID provider metadata.

        Only a document carrying both endpoints is cached.
        """
        if self._discovery is None:
            try:
                async with self._client() as client:
                    resp = await client.get(self.discovery_url)
                    resp.raise_for_status()
                    document = resp.json()
                endpoints = {key: document[key] for key in self.required_endpoints}
                if not all(isinstance(url, str) and url for url in endpoints.values()):
                    raise ValueError(f"unusable endpoints {endpoints!r}")
            except PROVIDER_ERRORS as e:
                logger.warning("Google discovery failed: %r", e)
                raise OAuthExchangeError() from e
            self._discovery = document
        return self._discovery

    async def authorization_endpoint(self) -> str:
        return (await self.discover())["authorization_endpoint"]

    async def _exchange_code(self, client, code, code_verifier):
        token_endpoint = (await self.discover())["token_endpoint"]
        resp = await client.post(
            token_endpoint,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code_verifier": code_verifier,
            },
            headers={"Accept": "application/json"},
        )
        if resp.status_code != 200:
            logger.warning("Google rejected authorization code: %s %s", resp.status_code, resp.text[:200])
            raise OAuthExchangeError()
        return json_object(resp)

    async def _fetch_identity(self, client, token):
        # The ID token comes straight from the token endpoint over TLS, so its
        # claims are read without re-verifying the signature.
        try:
            claims = jwt.get_unverified_claims(token.get("id_token") or "")
        except JWTError as e:
            logger.warning("Google returned an unreadable ID token: %s", e)
            raise OAuthExchangeError() from e
        aud = claims.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if self.client_id not in audiences:
            logger.warning("Google ID token audience mismatch")
            raise OAuthExchangeError()
        if not claims.get("sub") or not claims.get("email") or not claims.get("email_verified"):
            logger.warning("Google identity without a verified email")
            raise OAuthExchangeError()
        return ProviderIdentity(
            provider=self.name,
            account_id=str(claims["sub"]),
            email=claims["email"],
            name=claims.get("name") or claims["email"].split("@")[0],
            avatar_url=claims.get("picture"),
        )


class GitHubProvider(OAuthProvider):
    name = OAuthProviderName.GITHUB
    default_scopes = ("user:email",)
    authorize_url = "https://github.com/login/oauth/authorize"
    access_token_url = "https://github.com/login/oauth/access_token"
    api_url = "https://api.github.com"

    async def authorization_endpoint(self) -> str:
        return self.authorize_url

    async def _exchange_code(self, client, code, code_verifier):
        resp = await client.post(
            self.access_token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        data = json_object(resp) if resp.status_code == 200 else {}
        # GitHub answers 200 with an "error" field for bad codes
        if not data.get("access_token"):
            logger.warning(
                "GitHub rejected authorization code: %s %s",
                resp.status_code, data.get("error") or resp.text[:200],
            )
            raise OAuthExchangeError()
        return data

    async def _fetch_identity(self, client, token):
        headers = {
            "Authorization": f"Bearer {token['access_token']}",
            "Accept": "application/vnd.github+json",
        }
        user_resp = await client.get(f"{self.api_url}/user", headers=headers)
        user_resp.raise_for_status()
        user_data = json_object(user_resp)

        emails_resp = await client.get(f"{self.api_url}/user/emails", headers=headers)
        emails_resp.raise_for_status()
        email = select_primary_email(emails_resp.json())
        if not email:
            logger.warning("GitHub account %s has no primary verified email", user_data.get("id"))
            raise OAuthExchangeError()
        return ProviderIdentity(
            provider=self.name,
            account_id=str(user_data["id"]),
            email=email,
            name=user_data.get("name") or user_data.get("login") or email.split("@")[0],
            avatar_url=user_data.get("avatar_url"),
        )


def select_primary_email(entries: list[dict[str, Any]]) -> str | None:
    """The address GitHub marks both primary and verified, if any."""
    if not isinstance(entries, list):
        raise TypeError(f"expected a list of emails, got {type(entries).__name__}")
    for entry in entries:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified") and entry.get("email"):
            return entry["email"]
    return None


def build_providers(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, OAuthProvider]:
    """Configured providers keyed by name; a provider without credentials is left out."""
    base = settings.base_url.rstrip("/")
    providers: dict[str, OAuthProvider] = {}
    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = GoogleProvider(
            settings.google_client_id,
            settings.google_client_secret,
            f"{base}/api/v1/auth/google/callback",
            transport=transport,
        )
    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = GitHubProvider(
            settings.github_client_id,
            settings.github_client_secret,
            f"{base}/api/v1/auth/github/callback",
            transport=transport,
        )
    return providers


async def reconcile(db: AsyncSession, identity: ProviderIdentity) -> User:
    """Find, link or create the local user for a provider identity.

    Raises AccountAlreadyLinked when the provider account is already bound to
    a different user; the existing link is never overwritten.
    """
    result = await db.execute(
        select(User, OAuthAccount)
        .outerjoin(
            OAuthAccount,
            and_(OAuthAccount.user_id == User.id, OAuthAccount.provider == identity.provider),
        )
        .where(User.email == identity.email)
    )
    row = result.first()

    owner_id = await db.scalar(
        select(OAuthAccount.user_id).where(
            OAuthAccount.provider == identity.provider,
            OAuthAccount.provider_account_id == identity.account_id,
        )
    )

    if row is not None:
        user, link = row
        if link is not None:
            return user
        if owner_id is not None and owner_id != user.id:
            logger.warning(
                "%s account already linked to user %s; refusing to link user %s",
                identity.provider.value, owner_id, user.id,
            )
            raise AccountAlreadyLinked()
        db.add(
            OAuthAccount(
                user_id=user.id,
                provider=identity.provider,
                provider_account_id=identity.account_id,
            )
        )
        if identity.avatar_url and not user.avatar_url:
            user.avatar_url = identity.avatar_url
        await _flush_link(db, identity)
        logger.info("Linked %s account to user %s", identity.provider.value, user.id)
        return user

    if owner_id is not None:
        logger.warning(
            "%s account already linked to user %s under another email",
            identity.provider.value, owner_id,
        )
        raise AccountAlreadyLinked()
    user = User(
        name=identity.name,
        email=identity.email,
        avatar_url=identity.avatar_url,
        is_email_valid=True,
    )
    db.add(user)
    await _flush_link(db, identity)
    db.add(
        OAuthAccount(
            user_id=user.id,
            provider=identity.provider,
            provider_account_id=identity.account_id,
        )
    )
    await _flush_link(db, identity)
    logger.info("Created user %s from %s login", user.id, identity.provider.value)
    return user


async def _flush_link(db: AsyncSession, identity: ProviderIdentity) -> None:
    """Flush, turning a unique-constraint race into AccountAlreadyLinked."""
    try:
        await db.flush()
    except IntegrityError as e:
        logger.warning("Concurrent %s link rejected by the database", identity.provider.value)
        raise AccountAlreadyLinked() from e
