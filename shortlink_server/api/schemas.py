# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

Name = Annotated[str, Field(min_length=3, max_length=100)]
Password = Annotated[str, Field(min_length=6, max_length=100)]


# Auth
class UserCreate(BaseModel):
    name: Name
    email: EmailStr
    password: Password


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=100)


class NewPassword(BaseModel):
    new_password: Password
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class ChangePasswordRequest(NewPassword):
    current_password: str = Field(min_length=1)


class SetPasswordRequest(NewPassword):
    pass


class ResetPasswordRequest(NewPassword):
    pass


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class VerifyEmailQuery(BaseModel):
    token: str = Field(pattern=r"^\d{8}$")
    email: EmailStr


class EditProfileRequest(BaseModel):
    name: Name


class MessageResponse(BaseModel):
    message: str


class TokenStatus(BaseModel):
    valid: bool


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    is_email_valid: bool
    has_password: bool
    avatar_url: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Links
class ShortLinkResponse(BaseModel):
    id: int
    short_code: str
    url: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfileResponse(UserResponse):
    links: list[ShortLinkResponse] = []
