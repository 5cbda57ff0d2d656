"""
auth/errors.py -- Stable, structured failure kinds for the auth engine.

Every error carries a machine-readable code and the HTTP status the API layer
renders it with. Messages are deliberately generic: they are safe to show to
the caller and never mention whether an email exists.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.detail = detail


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account is temporarily locked."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    message = "Account is not active."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 401
    message = "Invalid refresh token."


class InvalidOrExpiredResetToken(AuthError):
    code = "invalid_or_expired_reset_token"
    status_code = 400
    message = "Invalid or expired reset token."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 422
    message = (
        "Password must be at least 8 characters long and contain an uppercase letter, "
        "a lowercase letter, a number, and a special character."
    )

    def __init__(self, failures: list[str]) -> None:
        super().__init__(detail="; ".join(failures))
        self.failures = failures


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many failed attempts. Try again later."

    def __init__(self, retry_after: int = 60) -> None:
        super().__init__()
        self.retry_after = retry_after


class ServiceUnavailable(AuthError):
    code = "service_unavailable"
    status_code = 503
    message = "Service temporarily unavailable."


class AccountExists(AuthError):
    code = "account_exists"
    status_code = 409
    message = "An account with that email already exists."


class InvalidVerificationToken(AuthError):
    code = "invalid_verification_token"
    status_code = 400
    message = "Invalid or expired verification token."
