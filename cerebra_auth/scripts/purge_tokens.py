#!/usr/bin/env python3
# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Delete expired reset and verification tokens. Run: python -m cerebra_auth.scripts.purge_tokens"""

import asyncio

from cerebra_auth.auth import Authenticator
from cerebra_auth.config import Settings
from cerebra_auth.database import create_engine, create_session_maker, init_db
from cerebra_auth.services.tokens import TokenService


async def main():
    settings = Settings()
    engine = create_engine(settings)
    await init_db(engine)
    tokens = TokenService(settings, Authenticator(settings))
    try:
        async with create_session_maker(engine)() as session:
            removed = await tokens.purge_expired(session)
        print(f"Removed {removed} expired token(s).")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
