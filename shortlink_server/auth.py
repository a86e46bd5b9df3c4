# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: password hashing, JWT access/refresh tokens and auth cookies."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Response
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from shortlink_server.config import Settings
from shortlink_server.errors import HashingError, TokenExpired, TokenInvalid
from shortlink_server.models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"


def hash_password(password: str) -> str:
    """Hash a password for storage (argon2id)."""
    try:
        return pwd_context.hash(password)
    except (ValueError, TypeError) as e:
        raise HashingError() from e


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash. False on mismatch; raises on a malformed hash."""
    try:
        return pwd_context.verify(plain, hashed)
    except (UnknownHashError, ValueError, TypeError) as e:
        logger.warning("Stored password hash could not be verified: %s", e)
        raise HashingError() from e


@dataclass(frozen=True)
class AccessClaims:
    """Identity carried by an access token."""

    user_id: int
    name: str
    email: str
    session_id: int
    is_email_valid: bool


class TokenCodec:
    """Signs and verifies access and refresh tokens bound to a session id."""

    ACCESS = "access"
    REFRESH = "refresh"

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_expire_minutes),
        )

    def _encode(self, data: dict[str, Any], ttl: timedelta) -> str:
        to_encode = data.copy()
        to_encode["exp"] = datetime.now(timezone.utc) + ttl
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def sign_access_token(self, user: User | AccessClaims, session_id: int) -> str:
        """Create an access token for a stored user or previously decoded claims."""
        user_id = user.user_id if isinstance(user, AccessClaims) else user.id
        return self._encode(
            {
                "sub": str(user_id),
                "name": user.name,
                "email": user.email,
                "session_id": session_id,
                "is_email_valid": bool(user.is_email_valid),
                "typ": self.ACCESS,
            },
            self.access_ttl,
        )

    def sign_refresh_token(self, session_id: int) -> str:
        return self._encode({"session_id": session_id, "typ": self.REFRESH}, self.refresh_ttl)

    def verify(self, token: str, token_type: str = ACCESS) -> dict[str, Any]:
        """Decode and validate a token. Raises TokenExpired or TokenInvalid."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise TokenExpired() from e
        except JWTError as e:
            raise TokenInvalid() from e
        if payload.get("typ") != token_type or not isinstance(payload.get("session_id"), int):
            raise TokenInvalid()
        return payload

    def decode_access_token(self, token: str) -> AccessClaims:
        payload = self.verify(token, self.ACCESS)
        try:
            return AccessClaims(
                user_id=int(payload["sub"]),
                name=payload["name"],
                email=payload["email"],
                session_id=payload["session_id"],
                is_email_valid=bool(payload.get("is_email_valid")),
            )
        except (KeyError, ValueError) as e:
            raise TokenInvalid() from e


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def set_auth_cookies(response: Response, tokens: TokenPair, codec: TokenCodec, settings: Settings) -> None:
    """Store both tokens in httpOnly cookies that expire with the tokens."""
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        tokens.access_token,
        max_age=int(codec.access_ttl.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        tokens.refresh_token,
        max_age=int(codec.refresh_ttl.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(ACCESS_TOKEN_COOKIE, httponly=True, secure=settings.cookie_secure, samesite="lax")
    response.delete_cookie(REFRESH_TOKEN_COOKIE, httponly=True, secure=settings.cookie_secure, samesite="lax")
