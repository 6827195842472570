# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cerebra_auth.api.schemas import (
    ForgotPasswordRequest,
    MeResponse,
    RequestVerificationRequest,
    ResetPasswordRequest,
    SendTestEmailRequest,
    SignupResponse,
    Token,
    UserCreate,
    UserLogin,
    UserResponse,
)
from cerebra_auth.auth import Authenticator, get_authenticator, get_current_user_id
from cerebra_auth.config import Settings
from cerebra_auth.database import get_db
from cerebra_auth.errors import NotFoundError, UnauthorizedError, ValidationError
from cerebra_auth.models import User
from cerebra_auth.services.accounts import AccountFlows
from cerebra_auth.services.email import EmailSender

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists, a reset link was sent."


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_flows(request: Request) -> AccountFlows:
    return request.app.state.flows


def get_email_sender(request: Request) -> EmailSender:
    return request.app.state.email_sender


@router.post("/signup", response_model=SignupResponse)
async def signup(
    data: UserCreate,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    flows: AccountFlows = Depends(get_flows),
) -> SignupResponse:
    """Create an account. A verification link is emailed; no session until verified."""
    user = await flows.signup(db, background, data.email, data.password, data.name)
    return SignupResponse(user=UserResponse.model_validate(user))


@router.post("/login", response_model=Token)
async def login(
    data: UserLogin,
    db: AsyncSession = Depends(get_db),
    authenticator: Authenticator = Depends(get_authenticator),
) -> Token:
    """Authenticate and return JWT."""
    user = await authenticator.authenticate(db, data.email, data.password)
    token = authenticator.create_access_token({"sub": str(user.id)})
    return Token(access_token=token, user=UserResponse.model_validate(user))


@router.get("/me", response_model=MeResponse)
async def get_me(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MeResponse:
    """Get current user profile."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise UnauthorizedError("Invalid session")
    return MeResponse(user=UserResponse.model_validate(user))


@router.post("/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    flows: AccountFlows = Depends(get_flows),
) -> dict:
    """Request a password reset link. The response never says whether the account exists."""
    await flows.request_password_reset(db, background, data.email, data.redirect_to)
    return {"status": True, "message": FORGOT_PASSWORD_MESSAGE}


@router.post("/reset-password")
async def reset_password(
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    flows: AccountFlows = Depends(get_flows),
) -> dict:
    """Set a new password with the token from the reset email."""
    await flows.reset_password(db, data.token, data.password)
    return {"status": True, "message": "Password has been reset successfully."}


@router.post("/request-verification")
async def request_verification(
    data: RequestVerificationRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    flows: AccountFlows = Depends(get_flows),
) -> dict:
    """Email a new verification link."""
    if not await flows.request_verification(db, background, data.email):
        return {"ok": True, "message": "Already verified"}
    return {"ok": True}


@router.get("/verify")
async def verify_email(
    token: str | None = None,
    email: str | None = None,
    db: AsyncSession = Depends(get_db),
    flows: AccountFlows = Depends(get_flows),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Confirm an email from the link in the verification email, then go to login."""
    if not token or not email:
        raise ValidationError("Missing token or email")
    await flows.confirm_email(db, token, email)
    response = RedirectResponse(
        url=f"{settings.frontend_url.rstrip('/')}/auth/login?verified=true",
        status_code=302,
    )
    # Keep the token out of Referer headers on the next page
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


@router.post("/test-email")
async def send_test_email(
    data: SendTestEmailRequest,
    settings: Settings = Depends(get_settings),
    sender: EmailSender = Depends(get_email_sender),
) -> dict:
    """Send a test message through the email provider. Delivery errors surface as 500."""
    if not settings.test_email_enabled:
        raise NotFoundError()
    if not data.to:
        raise ValidationError("`to` is required")
    message_id = await sender.send(
        data.to,
        "Resend test (dev)",
        "<p>Hello from <b>CerebraUI auth + Resend (dev)</b></p>",
        "Hello from CerebraUI auth + Resend (dev)",
    )
    return {"ok": True, "id": message_id}
