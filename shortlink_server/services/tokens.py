# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Single-use, expiring tokens for email verification and password reset.

Issuing a token sweeps every expired row of that kind and the user's previous
rows before inserting, so each user has at most one live token per kind and
the tables never need a scheduled cleanup job.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink_server.errors import PersistenceError
from shortlink_server.models import EmailVerificationToken, PasswordResetToken, User

logger = logging.getLogger(__name__)

VERIFY_EMAIL_TOKEN_DIGITS = 8
VERIFY_EMAIL_TOKEN_TTL = timedelta(days=1)
PASSWORD_RESET_TOKEN_BYTES = 32
PASSWORD_RESET_TOKEN_TTL = timedelta(hours=1)


def generate_numeric_token(digits: int = VERIFY_EMAIL_TOKEN_DIGITS) -> str:
    """Random number with exactly `digits` digits (no leading zero)."""
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class EphemeralTokenLedger:
    """Base ledger; subclasses pick the model, window and stored representation."""

    model: type[EmailVerificationToken] | type[PasswordResetToken]
    window: timedelta
    stored_column: str

    def __init__(self, db: AsyncSession):
        self.db = db

    def generate(self) -> str:
        raise NotImplementedError

    def stored_value(self, token: str) -> str:
        """What goes in the table for a plaintext token."""
        return token

    async def issue(self, user_id: int) -> str:
        """Replace the user's token with a fresh one and return its plaintext."""
        now = datetime.now(timezone.utc)
        token = self.generate()
        try:
            await self.db.execute(
                delete(self.model)
                .where(self.model.expires_at < now)
                .execution_options(synchronize_session="fetch")
            )
            await self.clear(user_id)
            self.db.add(
                self.model(
                    user_id=user_id,
                    expires_at=now + self.window,
                    **{self.stored_column: self.stored_value(token)},
                )
            )
            await self.db.flush()
        except SQLAlchemyError as e:
            logger.exception("Failed to store %s for user %s", self.model.__tablename__, user_id)
            raise PersistenceError("Unable to create token") from e
        return token

    async def clear(self, user_id: int) -> None:
        await self.db.execute(
            delete(self.model)
            .where(self.model.user_id == user_id)
            .execution_options(synchronize_session="fetch")
        )


class EmailVerificationLedger(EphemeralTokenLedger):
    model = EmailVerificationToken
    window = VERIFY_EMAIL_TOKEN_TTL
    stored_column = "token"

    def generate(self) -> str:
        return generate_numeric_token()

    async def redeem(self, token: str, email: str) -> User | None:
        """Return the owner when the token is live and belongs to `email`."""
        result = await self.db.execute(
            select(User)
            .join(EmailVerificationToken, EmailVerificationToken.user_id == User.id)
            .where(
                EmailVerificationToken.token == token,
                User.email == email,
                EmailVerificationToken.expires_at >= datetime.now(timezone.utc),
            )
        )
        return result.scalars().first()


class PasswordResetLedger(EphemeralTokenLedger):
    model = PasswordResetToken
    window = PASSWORD_RESET_TOKEN_TTL
    stored_column = "token_hash"

    def generate(self) -> str:
        return secrets.token_hex(PASSWORD_RESET_TOKEN_BYTES)

    def stored_value(self, token: str) -> str:
        return hash_token(token)

    async def redeem(self, token: str) -> User | None:
        result = await self.db.execute(
            select(User)
            .join(PasswordResetToken, PasswordResetToken.user_id == User.id)
            .where(
                PasswordResetToken.token_hash == hash_token(token),
                PasswordResetToken.expires_at >= datetime.now(timezone.utc),
            )
        )
        return result.scalars().first()
