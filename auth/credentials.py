"""
auth/credentials.py -- Email/password verification with lockout.

Order of checks in validate():
  1. unknown email   -> burn a bcrypt compare, count the failure, InvalidCredentials
  2. lock_until > now -> AccountLocked (the failure counter is NOT incremented)
  3. status != active -> AccountInactive
  4. wrong password  -> count the failure (locking the account once the
                        Security Monitor says so), LOGIN_FAILED, InvalidCredentials
  5. success         -> failed_attempt_count = 0, lock_until cleared,
                        last_login_at stamped

Failures against unknown emails are counted on purpose: an attacker spraying
addresses sees the same responses, timings and eventual ip block whether or
not the address is registered.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from auth.activity import ActivitySink, emit
from auth.errors import AccountInactive, AccountLocked, InvalidCredentials
from auth.models import Account, AccountStatus, ActivityType, Severity
from auth.security import SecurityMonitor
from auth.store import AuthStore
from auth.tokens import burn_password_check, verify_password
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("authgate.auth")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialValidator:
    def __init__(
        self,
        store: AuthStore,
        monitor: SecurityMonitor,
        activity: Optional[ActivitySink] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.activity = activity
        self.settings = settings or get_settings()
        self.clock = clock

    def validate(self, email: str, password: str, ip: str, user_agent: str = "") -> Account:
        """Return the authenticated Account or raise a credential error."""
        email = normalize_email(email)
        account = self.store.get_account_by_email(email) if email else None

        if account is None:
            burn_password_check(password)
            self.monitor.record_failed_attempt(email, ip, user_agent)
            emit(
                self.activity,
                ActivityType.LOGIN_FAILED,
                "Login failed: unknown email",
                severity=Severity.medium,
                ip=ip,
                user_agent=user_agent,
                email=email,
            )
            raise InvalidCredentials()

        now = self.clock()
        if account.lock_until is not None and account.lock_until > now:
            remaining = int((account.lock_until - now).total_seconds()) + 1
            logger.info("Rejected login for locked account %s from %s", account.id, ip)
            raise AccountLocked(detail=f"Try again in {remaining} seconds.")

        if account.status != AccountStatus.active:
            raise AccountInactive()

        if not verify_password(password, account.password_hash):
            self._record_mismatch(account, ip, user_agent, now)
            raise InvalidCredentials()

        self.store.record_successful_login(account.id, now)
        account.previous_login_at = account.last_login_at
        account.last_login_at = now
        account.failed_attempt_count = 0
        account.lock_until = None
        return account

    def _record_mismatch(self, account: Account, ip: str, user_agent: str, now) -> None:
        self.monitor.record_failed_attempt(account.email, ip, user_agent)
        lock_until = None
        if self.monitor.should_lock_account(account.email, ip):
            lock_until = now + timedelta(seconds=self.settings.lockout_seconds)
        self.store.record_failed_login(account.id, lock_until)

        emit(
            self.activity,
            ActivityType.LOGIN_FAILED,
            "Login failed: wrong password",
            severity=Severity.medium,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        if lock_until is not None:
            logger.warning("Account %s locked until %s after repeated failures from %s", account.id, lock_until, ip)
            emit(
                self.activity,
                ActivityType.ACCOUNT_LOCKED,
                "Account locked after repeated failed logins",
                severity=Severity.high,
                account_id=account.id,
                ip=ip,
                user_agent=user_agent,
                lock_seconds=self.settings.lockout_seconds,
            )
