# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Application error taxonomy. Each error carries the HTTP status it maps to."""

from fastapi import status

GENERIC_FAILURE = "Something went wrong. Please try again."


class AppError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = GENERIC_FAILURE

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Not authenticated"


class UpstreamError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY


class PersistenceError(AppError):
    pass


class HashingError(AppError):
    """Password hashing backend failed or the stored hash is malformed."""


class TokenInvalid(Unauthorized):
    default_detail = "Invalid or expired token"


class TokenExpired(TokenInvalid):
    """Signature is fine but exp has passed; callers may try a refresh."""


class InvalidSession(Unauthorized):
    default_detail = "Invalid session"


class InvalidUser(Unauthorized):
    default_detail = "Invalid user"


class AccountAlreadyLinked(Conflict):
    default_detail = "Email already exists and is linked with another account. Please try again!"


class OAuthExchangeError(UpstreamError):
    default_detail = "Couldn't login because of an invalid login attempt. Please try again!"


class MailDeliveryError(UpstreamError):
    default_detail = "Could not send email. Please try again later."
