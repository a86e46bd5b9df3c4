# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import ValidationError as PydanticValidationError

from shortlink_server.api.schemas import (
    ChangePasswordRequest,
    EditProfileRequest,
    ForgotPasswordRequest,
    MessageResponse,
    ProfileResponse,
    ResetPasswordRequest,
    SetPasswordRequest,
    ShortLinkResponse,
    TokenStatus,
    UserCreate,
    UserLogin,
    UserResponse,
    VerifyEmailQuery,
)
from shortlink_server.auth import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    clear_auth_cookies,
    set_auth_cookies,
)
from shortlink_server.dependencies import (
    CurrentUser,
    client_meta,
    get_account_service,
    get_current_user,
    get_optional_user,
)
from shortlink_server.errors import Conflict, Unauthorized, ValidationError
from shortlink_server.services.accounts import AccountService
from shortlink_server.services.links import list_links

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_SENT = "If an account exists for that email, you will receive a password reset link."


def _reject_if_signed_in(current: CurrentUser | None) -> None:
    if current is not None:
        raise Conflict("Already signed in")


@router.post("/register", response_model=UserResponse)
async def register(
    data: UserCreate,
    request: Request,
    response: Response,
    current: CurrentUser | None = Depends(get_optional_user),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    """Create an account, sign it in and send the verification email in the background."""
    _reject_if_signed_in(current)
    outcome = await service.register(data.name, data.email, data.password, client_meta(request))
    set_auth_cookies(response, outcome.tokens, service.codec, service.settings)
    return UserResponse.model_validate(outcome.user)


@router.post("/login", response_model=UserResponse)
async def login(
    data: UserLogin,
    request: Request,
    response: Response,
    current: CurrentUser | None = Depends(get_optional_user),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    """Authenticate with email and password; sets the token cookies."""
    _reject_if_signed_in(current)
    outcome = await service.login(data.email, data.password, client_meta(request))
    set_auth_cookies(response, outcome.tokens, service.codec, service.settings)
    return UserResponse.model_validate(outcome.user)


@router.post("/refresh", response_model=UserResponse)
async def refresh(
    request: Request,
    response: Response,
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    """Exchange the refresh token cookie for a new token pair."""
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not refresh_token:
        raise Unauthorized()
    result = await service.refresh(refresh_token)
    set_auth_cookies(response, result.tokens, service.codec, service.settings)
    return UserResponse.model_validate(result.user)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    """Revoke the current session if any. Cookies are always cleared."""
    await service.logout(
        request.cookies.get(ACCESS_TOKEN_COOKIE),
        request.cookies.get(REFRESH_TOKEN_COOKIE),
    )
    clear_auth_cookies(response, service.settings)
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
async def get_me(current: CurrentUser = Depends(get_current_user)) -> UserResponse:
    """Get current user."""
    return UserResponse.model_validate(current.user)


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    current: CurrentUser = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> ProfileResponse:
    """Current user with their short links."""
    links = await list_links(service.db, current.user.id)
    user = UserResponse.model_validate(current.user)
    return ProfileResponse(
        **user.model_dump(),
        links=[ShortLinkResponse.model_validate(link) for link in links],
    )


@router.post("/edit-profile", response_model=UserResponse)
async def edit_profile(
    data: EditProfileRequest,
    current: CurrentUser = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    user = await service.update_profile(current.user.id, data.name)
    return UserResponse.model_validate(user)


@router.post("/resend-verification-link", response_model=MessageResponse)
async def resend_verification_link(
    current: CurrentUser = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    """Send a fresh verification email. Fails with 502 if the email cannot be sent."""
    await service.resend_verification(current.user.id)
    return MessageResponse(message="Verification email sent.")


@router.get("/verify-email-token", response_model=UserResponse)
async def verify_email_token(
    token: str = Query(""),
    email: str = Query(""),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    """Confirm an email address with the token from the verification link."""
    try:
        query = VerifyEmailQuery(token=token, email=email)
    except PydanticValidationError as e:
        raise ValidationError("Verification link invalid or expired.") from e
    user = await service.verify_email(query.token, query.email)
    return UserResponse.model_validate(user)


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    data: ChangePasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    await service.change_password(current.user.id, data.current_password, data.new_password)
    return MessageResponse(message="Password changed.")


@router.post("/set-password", response_model=MessageResponse)
async def set_password(
    data: SetPasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    """Add a password to an account created through social login."""
    await service.set_password(current.user.id, data.new_password)
    return MessageResponse(message="Password set.")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    """Request a password reset link. Same answer whether or not the email is registered."""
    await service.forgot_password(data.email)
    return MessageResponse(message=FORGOT_PASSWORD_SENT)


@router.get("/reset-password/{token}", response_model=TokenStatus)
async def reset_password_status(
    token: str,
    service: AccountService = Depends(get_account_service),
) -> TokenStatus:
    return TokenStatus(valid=await service.reset_token_is_valid(token))


@router.post("/reset-password/{token}", response_model=MessageResponse)
async def reset_password(
    token: str,
    data: ResetPasswordRequest,
    service: AccountService = Depends(get_account_service),
) -> MessageResponse:
    """Set a new password with the token from the reset link."""
    await service.reset_password(token, data.new_password)
    return MessageResponse(message="Password reset successfully.")
