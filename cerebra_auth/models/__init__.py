# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from cerebra_auth.models.base import Base
from cerebra_auth.models.user import User
from cerebra_auth.models.token import OneTimeToken, TokenPurpose

__all__ = [
    "Base",
    "User",
    "OneTimeToken",
    "TokenPurpose",
]
