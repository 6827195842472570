# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: password hashing, JWT sessions and credential updates."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cerebra_auth.config import Settings
from cerebra_auth.errors import ForbiddenError, UnauthorizedError, UserNotFound, ValidationError
from cerebra_auth.models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain, hashed)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Authenticator:
    """Owns credentials and sessions.

    Nothing else in the service hashes passwords or signs tokens. Password
    reset goes through :meth:`set_password`, which updates the credential
    without the current password; callers must have verified a reset token
    first.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def check_password_policy(self, password: str) -> None:
        """Raise ValidationError if the password can't be used as a credential."""
        if len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.settings.min_password_length} characters"
            )
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    def create_access_token(self, data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.settings.jwt_expire_minutes)
        )
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def decode_token(self, token: str) -> dict[str, Any] | None:
        """Decode and validate a JWT token."""
        try:
            return jwt.decode(
                token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algorithm]
            )
        except JWTError:
            return None

    async def get_user_by_email(self, db: AsyncSession, email: str) -> User | None:
        result = await db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def register(
        self, db: AsyncSession, email: str, password: str, name: str | None = None
    ) -> User:
        """Create an account. The email starts unverified."""
        self.check_password_policy(password)
        if await self.get_user_by_email(db, email):
            raise ValidationError("Email already registered")
        user = User(
            email=normalize_email(email),
            name=name,
            password_hash=hash_password(password),
            email_verified=False,
        )
        db.add(user)
        try:
            await db.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent sign-up for the same address
            raise ValidationError("Email already registered") from e
        await db.refresh(user)
        logger.info("Registered user %s", user.id)
        return user

    async def authenticate(self, db: AsyncSession, email: str, password: str) -> User:
        """Return the user for valid credentials, else raise."""
        user = await self.get_user_by_email(db, email)
        if not user or not verify_password(password, user.password_hash):
            raise UnauthorizedError("Invalid email or password")
        if self.settings.require_email_verification and not user.email_verified:
            raise ForbiddenError("Email not verified")
        return user

    async def set_password(self, db: AsyncSession, user_id: int, new_password: str) -> None:
        """Replace the credential for ``user_id`` without the current password.

        Runs inside the caller's transaction; the caller commits.
        """
        self.check_password_policy(new_password)
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(password_hash=hash_password(new_password), updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ValidationError("No password account found")

    async def mark_email_verified(self, db: AsyncSession, email: str) -> None:
        """Set the verified flag. Runs inside the caller's transaction."""
        result = await db.execute(
            update(User)
            .where(User.email == normalize_email(email))
            .values(email_verified=True, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise UserNotFound()


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    authenticator: Authenticator = Depends(get_authenticator),
) -> int:
    """Extract and validate user ID from the Bearer JWT. Raises 401 if invalid."""
    if not credentials:
        raise UnauthorizedError("Missing or invalid Authorization header")
    payload = authenticator.decode_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    return int(user_id)
