# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""External identity linked to a user."""

import enum

from sqlalchemy import Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shortlink_server.models.base import Base
from shortlink_server.models.timestamp import TimestampMixin


class OAuthProviderName(str, enum.Enum):
    GOOGLE = "google"
    GITHUB = "github"


class OAuthAccount(Base, TimestampMixin):
    """A (provider, provider_account_id) pair belongs to at most one user."""

    __tablename__ = "oauth_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_oauth_provider_account"),
        UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[OAuthProviderName] = mapped_column(
        Enum(OAuthProviderName, name="oauth_provider", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    provider_account_id: Mapped[str] = mapped_column(String(255), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="oauth_accounts")
