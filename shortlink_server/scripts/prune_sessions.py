#!/usr/bin/env python3
# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Delete stale login sessions. Run: python -m shortlink_server.scripts.prune_sessions"""

import asyncio
import logging

from shortlink_server.auth import TokenCodec
from shortlink_server.config import get_settings
from shortlink_server.database import Database
from shortlink_server.services.sessions import SessionRegistry


async def prune(database: Database, codec: TokenCodec) -> int:
    async with database.session_maker() as session:
        removed = await SessionRegistry(session, codec).prune()
        await session.commit()
    return removed


async def main():
    settings = get_settings()
    database = Database(settings.database_url)
    try:
        removed = await prune(database, TokenCodec.from_settings(settings))
    finally:
        await database.dispose()
    print(f"Removed {removed} stale sessions.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
