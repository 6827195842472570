# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Run the service. Run: python -m cerebra_auth"""

import logging

import uvicorn

from cerebra_auth.config import Settings


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "cerebra_auth.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        # Access lines include query strings, which carry raw verify tokens
        access_log=False,
    )


if __name__ == "__main__":
    main()
