"""
auth/mailer.py -- Outbound account emails as opaque effects.

The engine depends only on the EmailSender protocol. Template rendering and
delivery belong to whatever implementation is wired in at startup.
LoggingEmailSender is the default: it records that a message would have been
sent and, in DEBUG mode only, logs the link so local development works
without an SMTP server. Raw tokens are never logged outside DEBUG.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol
from urllib.parse import urlencode

from core.config import Settings, get_settings

logger = logging.getLogger("authgate.email")


class EmailSender(Protocol):
    def send_password_reset(self, email: str, name: str, raw_token: str) -> None: ...

    def send_password_change_confirmation(self, email: str, name: str, ip: Optional[str]) -> None: ...

    def send_email_verification(self, email: str, name: str, raw_token: str) -> None: ...


class LoggingEmailSender:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}{path}?{urlencode({'token': token})}"

    def send_password_reset(self, email: str, name: str, raw_token: str) -> None:
        logger.info("Password reset email queued for %s", email)
        if self.settings.debug:
            logger.debug("Reset link for %s: %s", name, self._link("/reset-password", raw_token))

    def send_password_change_confirmation(self, email: str, name: str, ip: Optional[str]) -> None:
        logger.info("Password change confirmation queued for %s (request ip %s)", email, ip or "unknown")

    def send_email_verification(self, email: str, name: str, raw_token: str) -> None:
        logger.info("Verification email queued for %s", email)
        if self.settings.debug:
            logger.debug("Verification link for %s: %s", name, self._link("/verify-email", raw_token))
