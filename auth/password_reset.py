"""
auth/password_reset.py -- Single-use, hashed, time-limited password reset tokens.

Token lifecycle:
  request_reset()  creates at most one live token per account. The raw value
                   (64 hex chars, 256 bits) exists only in the outgoing email;
                   the store keeps HMAC-SHA256(SECRET_KEY, raw) for lookup and
                   a bcrypt hash (cost RESET_TOKEN_BCRYPT_ROUNDS) for the
                   final check.
  reset_password() consumes the token with a conditional UPDATE, so of two
                   concurrent resets with the same token exactly one wins.
  Tokens expire RESET_TOKEN_EXPIRE_SECONDS after creation whether or not they
  were used; cleanup_expired_tokens() is garbage collection only, expiry is
  re-checked on every use.

request_reset() never tells the caller whether the email exists. Outbound
emails are fire-and-forget: a sender failure is logged, never surfaced.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from auth.activity import ActivitySink, emit
from auth.credentials import normalize_email
from auth.errors import InvalidOrExpiredResetToken
from auth.mailer import EmailSender
from auth.models import ActivityType, ResetToken, Severity
from auth.policy import validate_password_strength
from auth.store import AuthStore
from auth.tokens import generate_secret_token, hash_password, hash_reset_token, lookup_digest, verify_password
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.sessions import SessionRegistry

logger = logging.getLogger("authgate.reset")


class PasswordResetManager:
    def __init__(
        self,
        store: AuthStore,
        email_sender: EmailSender,
        sessions: Optional[SessionRegistry] = None,
        activity: Optional[ActivitySink] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.email_sender = email_sender
        self.sessions = sessions
        self.activity = activity
        self.settings = settings or get_settings()
        self.clock = clock

    def request_reset(self, email: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> None:
        """Issue a reset token and email it, unless the account is unknown or already holds a live token."""
        email = normalize_email(email)
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            logger.info("Password reset requested for unknown email from %s", ip)
            return

        now = self.clock()
        if self.store.has_valid_reset_token(account.id, now):
            logger.info("Reset token already outstanding for account %s", account.id)
            return

        raw_token = generate_secret_token()
        token = ResetToken(
            account_id=account.id,
            token_lookup=lookup_digest(raw_token),
            token_hash=hash_reset_token(raw_token),
            expires_at=now + timedelta(seconds=self.settings.reset_token_expire_seconds),
            ip=ip,
            user_agent=user_agent,
        )
        if self.store.create_reset_token(token, now) is None:
            logger.info("Concurrent reset request for account %s; keeping the existing token", account.id)
            return

        try:
            self.email_sender.send_password_reset(account.email, account.display_name, raw_token)
        except Exception:
            logger.exception("Failed to send password reset email for account %s", account.id)

        emit(
            self.activity,
            ActivityType.PASSWORD_RESET_REQUEST,
            "Password reset requested",
            severity=Severity.medium,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )

    def _resolve(self, raw_token: str) -> tuple[Optional[ResetToken], bool]:
        """Return (token, usable). token is the matching row, if any."""
        if not raw_token:
            return None, False
        token = self.store.get_reset_token_by_lookup(lookup_digest(raw_token))
        if token is None or not verify_password(raw_token, token.token_hash):
            return None, False
        usable = token.used_at is None and token.expires_at > self.clock()
        return token, usable

    def validate_reset_token(self, raw_token: str) -> bool:
        """Read-only check that a token is known, unused and unexpired."""
        _, usable = self._resolve(raw_token)
        return usable

    def reset_password(
        self,
        raw_token: str,
        new_password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Set a new password using a reset token.

        Raises InvalidOrExpiredResetToken for unknown, used or expired tokens
        and WeakPassword when the new password fails the policy. On success
        every other reset token of the account is invalidated and, when
        REVOKE_SESSIONS_ON_PASSWORD_RESET is on, every session is revoked.
        """
        token, usable = self._resolve(raw_token)
        if token is None:
            raise InvalidOrExpiredResetToken()
        if not usable:
            self.store.increment_reset_attempts(token.id)
            raise InvalidOrExpiredResetToken()

        validate_password_strength(new_password)

        now = self.clock()
        if not self.store.complete_password_reset(token.id, token.account_id, hash_password(new_password), now):
            raise InvalidOrExpiredResetToken()
        logger.info("Password reset completed for account %s from %s", token.account_id, ip)

        if self.sessions is not None and self.settings.revoke_sessions_on_password_reset:
            self.sessions.revoke_all(token.account_id)

        account = self.store.get_account(token.account_id)
        if account is not None:
            try:
                self.email_sender.send_password_change_confirmation(account.email, account.display_name, ip)
            except Exception:
                logger.exception("Failed to send password change confirmation for account %s", account.id)

        emit(
            self.activity,
            ActivityType.PASSWORD_RESET_COMPLETE,
            "Password reset completed",
            severity=Severity.high,
            account_id=token.account_id,
            ip=ip,
            user_agent=user_agent,
        )

    def cleanup_expired_tokens(self) -> int:
        count = self.store.delete_expired_reset_tokens(self.clock())
        if count:
            logger.info("Purged %d expired reset token(s)", count)
        return count
