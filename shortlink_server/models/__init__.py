# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from shortlink_server.models.base import Base
from shortlink_server.models.user import User
from shortlink_server.models.session import UserSession
from shortlink_server.models.oauth_account import OAuthAccount, OAuthProviderName
from shortlink_server.models.verification_token import EmailVerificationToken
from shortlink_server.models.password_reset import PasswordResetToken
from shortlink_server.models.short_link import ShortLink

__all__ = [
    "Base",
    "User",
    "UserSession",
    "OAuthAccount",
    "OAuthProviderName",
    "EmailVerificationToken",
    "PasswordResetToken",
    "ShortLink",
]
