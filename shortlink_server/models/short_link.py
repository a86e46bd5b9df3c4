# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Short link model."""

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from shortlink_server.models.base import Base
from shortlink_server.models.timestamp import UpdatedAtMixin


class ShortLink(Base, UpdatedAtMixin):
    """Short code -> target URL, owned by a user."""

    __tablename__ = "shortLinks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2555), nullable=False)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
