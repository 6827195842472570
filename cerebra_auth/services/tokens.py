# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Single-use tokens for password reset and email verification.

Lifecycle: ``issue`` stores a fingerprint with an expiry (upsert, one live
token per identifier and purpose), ``verify`` resolves a presented token to
its identifier, ``consume`` deletes the row with one conditional statement
and applies the side effect in the same transaction. Coordination between
concurrent requests relies only on those statements; no locks are taken.
"""

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from cerebra_auth.auth import Authenticator
from cerebra_auth.config import Settings
from cerebra_auth.errors import InvalidOrExpiredToken, ValidationError
from cerebra_auth.models import OneTimeToken, TokenPurpose

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random token for a link; hex so it survives URLs unescaped."""
    return secrets.token_hex(nbytes)


def fingerprint(raw_token: str) -> str:
    """SHA-256 hex digest used as the stored lookup key."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Token upsert not supported on {dialect_name}")


class TokenService:
    """Issue, verify and consume one-time tokens."""

    def __init__(self, settings: Settings, authenticator: Authenticator, clock: Clock = utc_now) -> None:
        self.settings = settings
        self.authenticator = authenticator
        self.clock = clock

    def ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose is TokenPurpose.PASSWORD_RESET:
            return self.settings.password_reset_ttl
        return self.settings.email_verification_ttl

    async def issue(self, db: AsyncSession, identifier: str, purpose: TokenPurpose) -> str:
        """Store a fresh token for ``identifier`` and return the raw value.

        Any live token for the same identifier and purpose is overwritten.
        Commits, so the token survives a later delivery failure.
        """
        raw = generate_token()
        now = self.clock()
        insert = _insert_for(db.bind.dialect.name)
        stmt = insert(OneTimeToken).values(
            identifier=identifier,
            purpose=purpose.value,
            token_hash=fingerprint(raw),
            expires_at=now + self.ttl(purpose),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identifier", "purpose"],
            set_={
                "token_hash": stmt.excluded.token_hash,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db.execute(stmt)
        await db.commit()
        logger.info("Issued %s token for %s", purpose.value, identifier)
        return raw

    async def verify(
        self,
        db: AsyncSession,
        raw_token: str,
        purpose: TokenPurpose,
        scope: str | None = None,
    ) -> str:
        """Return the identifier owning ``raw_token``.

        Raises InvalidOrExpiredToken when no row matches or it has expired;
        the two cases are indistinguishable. Does not delete the token.
        """
        query = select(OneTimeToken.identifier).where(
            OneTimeToken.token_hash == fingerprint(raw_token),
            OneTimeToken.purpose == purpose.value,
            OneTimeToken.expires_at > self.clock(),
        )
        if scope is not None:
            query = query.where(OneTimeToken.identifier == scope)
        result = await db.execute(query.limit(1))
        identifier = result.scalar_one_or_none()
        if identifier is None:
            logger.info("Rejected %s token", purpose.value)
            raise InvalidOrExpiredToken()
        return identifier

    async def consume(
        self,
        db: AsyncSession,
        identifier: str,
        purpose: TokenPurpose,
        raw_token: str,
        new_password: str | None = None,
    ) -> None:
        """Delete the token and apply its side effect, exactly once.

        The delete is conditional on fingerprint and expiry, so of two racing
        callers only one gets a row back. Side effect and delete share one
        transaction: on any failure both roll back.
        """
        if purpose is TokenPurpose.PASSWORD_RESET:
            if not new_password:
                raise ValidationError("Password is required")
            self.authenticator.check_password_policy(new_password)

        try:
            result = await db.execute(
                delete(OneTimeToken)
                .where(
                    OneTimeToken.identifier == identifier,
                    OneTimeToken.purpose == purpose.value,
                    OneTimeToken.token_hash == fingerprint(raw_token),
                    OneTimeToken.expires_at > self.clock(),
                )
                .returning(OneTimeToken.identifier)
                .execution_options(synchronize_session=False)
            )
            if result.first() is None:
                raise InvalidOrExpiredToken()

            if purpose is TokenPurpose.PASSWORD_RESET:
                await self.authenticator.set_password(db, int(identifier), new_password)
            else:
                await self.authenticator.mark_email_verified(db, identifier)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info("Consumed %s token for %s", purpose.value, identifier)

    async def purge_expired(self, db: AsyncSession) -> int:
        """Delete expired rows. Expiry is enforced on use either way."""
        result = await db.execute(
            delete(OneTimeToken)
            .where(OneTimeToken.expires_at <= self.clock())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0
