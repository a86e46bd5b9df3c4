# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account operations: password and OAuth login, registration, email
verification and password management. Routers translate the results into
cookies and responses."""

import logging
from dataclasses import dataclass

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from shortlink_server.auth import TokenCodec, TokenPair, hash_password, verify_password
from shortlink_server.config import Settings
from shortlink_server.errors import (
    Conflict,
    NotFound,
    TokenInvalid,
    Unauthorized,
    ValidationError,
)
from shortlink_server.models import User
from shortlink_server.services.email import (
    Mailer,
    MailMessage,
    MailQueue,
    reset_password_message,
    verification_message,
)
from shortlink_server.services.oauth import ProviderIdentity, reconcile
from shortlink_server.services.sessions import ClientMeta, RefreshResult, SessionRegistry
from shortlink_server.services.tokens import EmailVerificationLedger, PasswordResetLedger

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
SOCIAL_LOGIN_ONLY = (
    "You have created account using social login. Please login with your social account."
)

PENDING_MAIL = "pending_mail"


@dataclass(frozen=True)
class AuthOutcome:
    user: User
    session_id: int
    tokens: TokenPair


class AccountService:
    def __init__(
        self,
        db: AsyncSession,
        codec: TokenCodec,
        settings: Settings,
        mailer: Mailer,
        mail_queue: MailQueue,
    ):
        self.db = db
        self.codec = codec
        self.settings = settings
        self.mailer = mailer
        self.mail_queue = mail_queue
        self.sessions = SessionRegistry(db, codec)
        self.verification_tokens = EmailVerificationLedger(db)
        self.reset_tokens = PasswordResetLedger(db)

    def send_after_commit(self, message: MailMessage) -> None:
        """Queue background mail once the current transaction commits.

        A rollback discards it, so no link is ever sent for rows that were
        never stored.
        """
        session = self.db.sync_session
        pending = session.info.get(PENDING_MAIL)
        if pending is None:
            pending = session.info[PENDING_MAIL] = []
            event.listen(session, "after_commit", self._release_mail)
            event.listen(session, "after_rollback", self._discard_mail)
        pending.append(message)

    def _release_mail(self, session: Session) -> None:
        pending = session.info.get(PENDING_MAIL, [])
        for message in pending:
            self.mail_queue.enqueue(message)
        pending.clear()

    def _discard_mail(self, session: Session) -> None:
        pending = session.info.get(PENDING_MAIL, [])
        if pending:
            logger.info("Discarding %d queued emails after rollback", len(pending))
        pending.clear()

    async def get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def find_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def establish_session(self, user: User, client: ClientMeta) -> AuthOutcome:
        """Open a session for an authenticated user and mint its tokens."""
        session = await self.sessions.open(user.id, client)
        return AuthOutcome(user, session.id, self.sessions.issue_tokens(user, session.id))

    async def login(self, email: str, password: str, client: ClientMeta) -> AuthOutcome:
        user = await self.find_by_email(email)
        if user is None:
            raise Unauthorized(INVALID_CREDENTIALS)
        if not user.has_password:
            raise ValidationError(SOCIAL_LOGIN_ONLY)
        if not verify_password(password, user.password_hash):
            logger.info("Failed login for user %s", user.id)
            raise Unauthorized(INVALID_CREDENTIALS)
        return await self.establish_session(user, client)

    async def register(self, name: str, email: str, password: str, client: ClientMeta) -> AuthOutcome:
        """Create a password account, sign it in and queue the verification email.

        The email goes out only after the registration commits; a failed
        delivery never undoes it.
        """
        if await self.find_by_email(email) is not None:
            raise Conflict("Email already exists")
        user = User(name=name, email=email, password_hash=hash_password(password))
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict("Email already exists") from e
        outcome = await self.establish_session(user, client)
        token = await self.verification_tokens.issue(user.id)
        self.send_after_commit(verification_message(self.settings, user.email, token))
        logger.info("Registered user %s", user.id)
        return outcome

    async def login_with_identity(self, identity: ProviderIdentity, client: ClientMeta) -> AuthOutcome:
        user = await reconcile(self.db, identity)
        return await self.establish_session(user, client)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        return await self.sessions.refresh(refresh_token)

    async def logout(self, access_token: str | None, refresh_token: str | None) -> None:
        """Revoke the session named by either token. Unknown or invalid tokens are ignored."""
        session_id = None
        if access_token:
            try:
                session_id = self.codec.verify(access_token, TokenCodec.ACCESS)["session_id"]
            except TokenInvalid:
                session_id = None
        if session_id is None and refresh_token:
            try:
                session_id = self.codec.verify(refresh_token, TokenCodec.REFRESH)["session_id"]
            except TokenInvalid:
                session_id = None
        if session_id is not None:
            await self.sessions.revoke(session_id)

    async def update_profile(self, user_id: int, name: str) -> User:
        user = await self.get_user(user_id)
        user.name = name
        await self.db.flush()
        return user

    async def resend_verification(self, user_id: int) -> None:
        """Issue a new verification token and send it now; delivery errors propagate."""
        user = await self.get_user(user_id)
        if user.is_email_valid:
            raise ValidationError("Email is already verified")
        token = await self.verification_tokens.issue(user.id)
        await self.mailer.send(verification_message(self.settings, user.email, token))

    async def verify_email(self, token: str, email: str) -> User:
        user = await self.verification_tokens.redeem(token, email)
        if user is None:
            raise ValidationError("Verification link invalid or expired.")
        user.is_email_valid = True
        await self.verification_tokens.clear(user.id)
        await self.db.flush()
        logger.info("Verified email for user %s", user.id)
        return user

    async def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = await self.get_user(user_id)
        if not user.has_password:
            raise ValidationError("You don't have a password yet. Set a password instead.")
        if not verify_password(current_password, user.password_hash):
            raise ValidationError("Old Password that you entered is invalid")
        user.password_hash = hash_password(new_password)
        await self.db.flush()

    async def set_password(self, user_id: int, new_password: str) -> None:
        user = await self.get_user(user_id)
        if user.has_password:
            raise ValidationError(
                "You already have a password. Instead of setting a new password, "
                "you can change your password."
            )
        user.password_hash = hash_password(new_password)
        await self.db.flush()

    async def forgot_password(self, email: str) -> None:
        """Queue a reset link, sent after commit, when the email is registered; silent otherwise."""
        user = await self.find_by_email(email)
        if user is None:
            logger.info("Password reset requested for an unknown email")
            return
        token = await self.reset_tokens.issue(user.id)
        self.send_after_commit(reset_password_message(self.settings, user.name, user.email, token))

    async def reset_token_is_valid(self, token: str) -> bool:
        return await self.reset_tokens.redeem(token) is not None

    async def reset_password(self, token: str, new_password: str) -> User:
        user = await self.reset_tokens.redeem(token)
        if user is None:
            raise ValidationError("Invalid Reset Password Token")
        await self.reset_tokens.clear(user.id)
        user.password_hash = hash_password(new_password)
        await self.db.flush()
        logger.info("Password reset for user %s", user.id)
        return user
