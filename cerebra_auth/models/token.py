# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""One-time token model for password reset and email verification."""

import enum
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from cerebra_auth.models.base import Base
from cerebra_auth.models.timestamp import TimestampMixin


class TokenPurpose(str, enum.Enum):
    """What a token authorizes. Governs TTL, side effect and identifier kind."""

    PASSWORD_RESET = "password-reset"  # identifier is the user id
    EMAIL_VERIFICATION = "email-verification"  # identifier is the email address


class OneTimeToken(Base, TimestampMixin):
    """Fingerprint of a single-use token. The raw token is never stored.

    The primary key allows one live token per (identifier, purpose); issuing
    again overwrites the row.
    """

    __tablename__ = "one_time_tokens"

    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)
    purpose: Mapped[str] = mapped_column(String(32), primary_key=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
