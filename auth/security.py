"""
auth/security.py -- Failure counting, lockout/block decisions, suspicious-login heuristics.

Two independent scopes are counted on every failed login:

  login:<email>:<ip>  -- per (email, ip). At MAX_LOGIN_ATTEMPTS failures in the
                         rolling ATTEMPT_WINDOW the credential validator locks
                         the account for LOCKOUT_SECONDS.
  ip:<ip>             -- per source address, whatever accounts were targeted.
                         At IP_BLOCK_THRESHOLD failures the address is blocked
                         for IP_BLOCK_SECONDS.

The increment and the threshold check for a scope are one atomic counter-store
call (see cache/counters.py).

Failure policy: the monitor is best-effort. A counter backend error is logged
and swallowed; reads fail open (no lock, no block). Nothing in here ever
raises into the login path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from auth.activity import ActivitySink, emit
from auth.models import Account, ActivityType, Session, Severity
from cache.counters import CounterStore, CounterStoreError
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("authgate.security")


def _login_key(email: str, ip: str) -> str:
    return f"login:{email.strip().lower()}:{ip}"


def _ip_key(ip: str) -> str:
    return f"ip:{ip}"


class SecurityMonitor:
    def __init__(
        self,
        counters: CounterStore,
        activity: Optional[ActivitySink] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.counters = counters
        self.activity = activity
        self.settings = settings or get_settings()
        self.clock = clock

    def _now(self) -> float:
        return self.clock().timestamp()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_failed_attempt(self, email: str, ip: str, user_agent: str = "") -> None:
        """Count one failed login against both the (email, ip) and the ip scope."""
        s = self.settings
        now = self._now()
        try:
            attempt = self.counters.hit(_login_key(email, ip), window=s.attempt_window_seconds, now=now)
            ip_hit = self.counters.hit(
                _ip_key(ip),
                window=s.attempt_window_seconds,
                threshold=s.ip_block_threshold,
                block_seconds=s.ip_block_seconds,
                now=now,
            )
        except CounterStoreError:
            logger.exception("Could not record failed login for %s from %s", email, ip)
            return

        logger.warning("Failed login attempt for %s from IP %s (attempt %d)", email, ip, attempt.count)
        if ip_hit.newly_blocked:
            logger.warning("IP %s blocked due to excessive failed login attempts", ip)
            emit(
                self.activity,
                ActivityType.IP_BLOCKED,
                f"IP blocked after {ip_hit.count} failed login attempts",
                severity=Severity.high,
                ip=ip,
                user_agent=user_agent,
                blocked_seconds=s.ip_block_seconds,
            )

    def reset_login_attempts(self, email: str, ip: str) -> None:
        try:
            self.counters.reset(_login_key(email, ip))
        except CounterStoreError:
            logger.exception("Could not reset login attempts for %s from %s", email, ip)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def get_login_attempts(self, email: str, ip: str) -> int:
        try:
            return self.counters.get(_login_key(email, ip), now=self._now())
        except CounterStoreError:
            logger.exception("Could not read login attempts for %s from %s", email, ip)
            return 0

    def should_lock_account(self, email: str, ip: str) -> bool:
        return self.get_login_attempts(email, ip) >= self.settings.max_login_attempts

    def ip_blocked_until(self, ip: str) -> Optional[float]:
        try:
            return self.counters.blocked_until(_ip_key(ip), now=self._now())
        except CounterStoreError:
            logger.exception("Could not read block state for %s", ip)
            return None

    def is_ip_blocked(self, ip: str) -> bool:
        return self.ip_blocked_until(ip) is not None

    def ip_block_remaining(self, ip: str) -> int:
        """Seconds until the ip block lifts (0 if not blocked)."""
        until = self.ip_blocked_until(ip)
        if until is None:
            return 0
        return max(int(until - self._now()) + 1, 1)

    def check_suspicious_activity(
        self,
        account: Account,
        ip: str,
        user_agent: str = "",
        sessions: Iterable[Session] = (),
    ) -> bool:
        """Return True if this login looks unusual. Only flags; never blocks.

        Must run before the (email, ip) counter is reset for this login,
        otherwise the prior-failures signal is always zero.
        """
        reasons = self._suspicious_reasons(account, ip, list(sessions))
        if reasons:
            logger.warning(
                "Suspicious activity detected for %s from IP %s: %s", account.email, ip, ", ".join(reasons)
            )
        return bool(reasons)

    def _suspicious_reasons(self, account: Account, ip: str, sessions: list[Session]) -> list[str]:
        s = self.settings
        now = self.clock()
        reasons: list[str] = []

        if self.get_login_attempts(account.email, ip) > 0:
            reasons.append("prior failed attempts")

        if not s.business_hours_start <= now.hour < s.business_hours_end:
            reasons.append("outside usual hours")

        if sessions and not any(existing.ip == ip for existing in sessions):
            reasons.append("new ip")

        last_login = account.previous_login_at
        if last_login is not None and (now - last_login).total_seconds() < s.rapid_login_seconds:
            reasons.append("rapid successive login")

        return reasons
