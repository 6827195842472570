# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending via the Resend API, and the auth emails built on it."""

import html
import logging
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

import httpx

from cerebra_auth.config import Settings
from cerebra_auth.errors import DeliveryFailure

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_RESET_PATH = "/auth/reset-password/confirm"


class EmailSender:
    """Thin Resend client. Every failure comes out as DeliveryFailure."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    async def send(self, to: str | list[str], subject: str, html_body: str, text_body: str) -> str | None:
        """Send one message and return the provider's message id."""
        if not self.settings.email_configured:
            raise DeliveryFailure("EMAIL_PROVIDER_API_KEY is not configured")
        recipients = to if isinstance(to, list) else [to]
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.settings.email_timeout_seconds
            ) as client:
                r = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self.settings.email_provider_api_key.get_secret_value()}",
                    },
                    json={
                        "from": self.settings.mail_from,
                        "to": recipients,
                        "subject": subject,
                        "html": html_body,
                        "text": text_body,
                    },
                )
                r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Resend rejected email: %s %s", e.response.status_code, e.response.text[:200])
            raise DeliveryFailure(f"Email provider returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("Resend request failed: %s", e)
            raise DeliveryFailure() from e
        try:
            return r.json().get("id")
        except ValueError:
            return None


def build_reset_link(settings: Settings, token: str, redirect_to: str | None = None) -> str:
    """Frontend page that takes the reset token. Only relative redirects are honoured."""
    path = DEFAULT_RESET_PATH
    if redirect_to and redirect_to.startswith("/") and not redirect_to.startswith("//"):
        path = redirect_to
    parts = urlsplit(urljoin(settings.frontend_url, path))
    token_param = urlencode({"token": token})
    query = f"{parts.query}&{token_param}" if parts.query else token_param
    return urlunsplit(parts._replace(query=query))


def build_verification_link(settings: Settings, token: str, email: str) -> str:
    """Service endpoint that confirms the email and redirects to the frontend."""
    base = settings.service_public_url.rstrip("/")
    return f"{base}/auth/verify?{urlencode({'token': token, 'email': email})}"


def _button_html(title: str, intro: str, link: str, label: str, footer: str) -> str:
    link = html.escape(link, quote=True)
    return f"""<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2>{title}</h2>
  {intro}
  <p style="margin: 30px 0;">
    <a href="{link}" style="background-color: #A855F7; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; display: inline-block;">{label}</a>
  </p>
  <p>Or copy and paste this link into your browser:</p>
  <p style="word-break: break-all; color: #666;">{link}</p>
  <p style="color: #999; font-size: 14px; margin-top: 30px;">{footer}</p>
</div>"""


def _describe_ttl(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


class Notifier:
    """Builds auth emails and hands them to the sender.

    Delivery failures are logged and swallowed: by the time we get here the
    token is already stored and the user can ask for another one.
    """

    def __init__(self, settings: Settings, sender: EmailSender) -> None:
        self.settings = settings
        self.sender = sender

    async def send_password_reset(self, email: str, token: str, redirect_to: str | None = None) -> bool:
        link = build_reset_link(self.settings, token, redirect_to)
        expiry = _describe_ttl(self.settings.password_reset_ttl_minutes)
        html_body = _button_html(
            "Reset Your Password",
            "<p>You requested to reset your password for your CerebraUI account.</p>\n"
            "  <p>Click the button below to reset your password:</p>",
            link,
            "Reset Password",
            f"This link expires in {expiry}. If you didn't request this, please ignore this email.",
        )
        text_body = f"Reset your password: {link}\n\nThis link expires in {expiry}."
        return await self._dispatch(email, "Reset your CerebraUI password", html_body, text_body)

    async def send_verification(self, email: str, token: str) -> bool:
        link = build_verification_link(self.settings, token, email)
        expiry = _describe_ttl(self.settings.email_verification_ttl_hours * 60)
        html_body = _button_html(
            "Verify Your Email",
            "<p>Thanks for joining CerebraUI!</p>\n"
            "  <p>Click the button below to verify your email address:</p>",
            link,
            "Verify Email",
            f"This link expires in {expiry}.",
        )
        text_body = f"Verify your email: {link}\n\nThis link expires in {expiry}."
        return await self._dispatch(email, "Verify your email", html_body, text_body)

    async def _dispatch(self, email: str, subject: str, html_body: str, text_body: str) -> bool:
        try:
            await self.sender.send(email, subject, html_body, text_body)
        except DeliveryFailure as e:
            logger.warning("Email not delivered to %s (%s): %s", email, subject, e.message)
            return False
        logger.info("Email sent to %s (%s)", email, subject)
        return True
