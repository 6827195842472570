# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Service error classes.

Every failure inside a request is raised as one of these and mapped to a
status code and an ``{"error": ..., "code": ...}`` body by the handlers
registered in ``cerebra_auth.main``.
"""


class AuthServiceError(Exception):
    """Base class for errors that map to an HTTP response.

    Attributes:
        code: Machine-readable error code (e.g. "INVALID_TOKEN").
        message: Human-readable message returned to the client.
        status_code: HTTP status code to return.
    """

    def __init__(self, code: str, message: str, status_code: int = 500) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AuthServiceError):
    """A required field is missing or malformed (400)."""

    def __init__(self, message: str) -> None:
        super().__init__(code="VALIDATION_ERROR", message=message, status_code=400)


class InvalidOrExpiredToken(AuthServiceError):
    """Token lookup missed or the token has expired (400).

    The message is the same for both causes.
    """

    def __init__(self) -> None:
        super().__init__(code="INVALID_TOKEN", message="Invalid or expired token", status_code=400)


class UserNotFound(AuthServiceError):
    """No account matches the given reference (404)."""

    def __init__(self, message: str = "User not found") -> None:
        super().__init__(code="USER_NOT_FOUND", message=message, status_code=404)


class UnauthorizedError(AuthServiceError):
    """Missing or invalid credentials (401)."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(code="UNAUTHORIZED", message=message, status_code=401)


class ForbiddenError(AuthServiceError):
    """Credentials are valid but the account may not sign in yet (403)."""

    def __init__(self, message: str) -> None:
        super().__init__(code="FORBIDDEN", message=message, status_code=403)


class NotFoundError(AuthServiceError):
    """Route or feature is not available (404)."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(code="NOT_FOUND", message=message, status_code=404)


class DeliveryFailure(AuthServiceError):
    """The email provider rejected or could not be reached (500)."""

    def __init__(self, message: str = "Failed to send email") -> None:
        super().__init__(code="DELIVERY_FAILED", message=message, status_code=500)


class InternalError(AuthServiceError):
    """Unexpected failure (500)."""

    def __init__(self, message: str = "Internal error") -> None:
        super().__init__(code="INTERNAL_ERROR", message=message, status_code=500)
