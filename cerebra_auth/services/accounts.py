# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account flows: sign-up, password reset and email verification.

Each flow runs issue → persist → notify or verify → consume in order.
Emails go out as background tasks after the token is committed, so a slow
or failing provider never changes the response.
"""

import logging

from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession

from cerebra_auth.auth import Authenticator, normalize_email
from cerebra_auth.errors import UserNotFound
from cerebra_auth.models import TokenPurpose, User
from cerebra_auth.services.email import Notifier
from cerebra_auth.services.tokens import TokenService

logger = logging.getLogger(__name__)


class AccountFlows:
    def __init__(self, authenticator: Authenticator, tokens: TokenService, notifier: Notifier) -> None:
        self.authenticator = authenticator
        self.tokens = tokens
        self.notifier = notifier

    async def signup(
        self,
        db: AsyncSession,
        background: BackgroundTasks,
        email: str,
        password: str,
        name: str | None = None,
    ) -> User:
        """Create the account and send a verification link."""
        user = await self.authenticator.register(db, email, password, name)
        await db.commit()
        raw = await self.tokens.issue(db, user.email, TokenPurpose.EMAIL_VERIFICATION)
        background.add_task(self.notifier.send_verification, user.email, raw)
        return user

    async def request_password_reset(
        self,
        db: AsyncSession,
        background: BackgroundTasks,
        email: str,
        redirect_to: str | None = None,
    ) -> None:
        """Issue a reset token if the account exists.

        Returns the same way whether or not it does.
        """
        user = await self.authenticator.get_user_by_email(db, email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        raw = await self.tokens.issue(db, str(user.id), TokenPurpose.PASSWORD_RESET)
        background.add_task(self.notifier.send_password_reset, user.email, raw, redirect_to)

    async def reset_password(self, db: AsyncSession, raw_token: str, new_password: str) -> None:
        """Verify the reset token, then set the new password and burn the token together."""
        self.authenticator.check_password_policy(new_password)
        user_id = await self.tokens.verify(db, raw_token, TokenPurpose.PASSWORD_RESET)
        await self.tokens.consume(
            db, user_id, TokenPurpose.PASSWORD_RESET, raw_token, new_password=new_password
        )
        logger.info("Password reset complete for user %s", user_id)

    async def request_verification(self, db: AsyncSession, background: BackgroundTasks, email: str) -> bool:
        """Send a fresh verification link.

        Returns False when the email is already verified. Raises UserNotFound
        for unknown emails.
        """
        user = await self.authenticator.get_user_by_email(db, email)
        if user is None:
            raise UserNotFound()
        if user.email_verified:
            return False
        raw = await self.tokens.issue(db, user.email, TokenPurpose.EMAIL_VERIFICATION)
        background.add_task(self.notifier.send_verification, user.email, raw)
        return True

    async def confirm_email(self, db: AsyncSession, raw_token: str, email: str) -> None:
        email = normalize_email(email)
        identifier = await self.tokens.verify(db, raw_token, TokenPurpose.EMAIL_VERIFICATION, scope=email)
        await self.tokens.consume(db, identifier, TokenPurpose.EMAIL_VERIFICATION, raw_token)
        logger.info("Email verified for %s", identifier)
