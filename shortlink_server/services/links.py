# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Read access to a user's short links for the profile view."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink_server.models import ShortLink


async def list_links(db: AsyncSession, user_id: int) -> list[ShortLink]:
    result = await db.execute(
        select(ShortLink).where(ShortLink.user_id == user_id).order_by(ShortLink.id.desc())
    )
    return list(result.scalars().all())
