"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, monitor and services do the work.

Timestamps are aware UTC datetimes here. The store converts to and from the
ISO-8601 strings it persists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    pending_verification = "pending_verification"
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class ActivityType(str, Enum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    TOKEN_REFRESH = "token_refresh"
    SESSION_REVOKED = "session_revoked"
    SUSPICIOUS_LOGIN = "suspicious_login"
    ACCOUNT_LOCKED = "account_locked"
    IP_BLOCKED = "ip_blocked"
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DELETED = "account_deleted"
    EMAIL_VERIFIED = "email_verified"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


@dataclass
class Account:
    """A tenant user's authentication identity.

    email is stored lower-cased; the store enforces uniqueness.

    lock_until is set by the credential validator once the Security Monitor
    reports too many failures for an (email, ip) pair. While it lies in the
    future every credential check fails with AccountLocked, even with the
    right password.

    previous_login_at is not persisted. A successful credential check fills
    it with the last_login_at value that was overwritten, so the suspicious
    activity heuristic can still see when the account last logged in.
    """

    email: str
    password_hash: str
    role: str = "user"
    status: AccountStatus = AccountStatus.pending_verification
    id: int | None = None
    tenant_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    failed_attempt_count: int = 0
    lock_until: datetime | None = None
    last_login_at: datetime | None = None
    mfa_enabled: bool = False
    mfa_secret: str | None = None  # placeholder only; no TOTP verification
    created_at: datetime | None = None
    previous_login_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.first_name or self.email.split("@", 1)[0]


@dataclass
class Session:
    """One authenticated client context bound to a device and ip.

    current marks the session created by the most recent login; only that
    session may be refreshed. generation advances on every refresh and must
    match the generation embedded in the presented refresh token, so a
    superseded refresh token cannot be replayed. version is the optimistic
    concurrency column bumped on every write.
    """

    account_id: int
    device: str
    ip: str
    user_agent: str
    id: str = ""
    created_at: datetime | None = None
    last_active_at: datetime | None = None
    current: bool = True
    generation: int = 0
    version: int = 0
    flagged: bool = False


@dataclass
class ResetToken:
    """A single-use, time-limited password reset secret.

    The raw token is never stored. token_lookup is a keyed SHA-256 digest
    used to find the row; token_hash is the bcrypt hash the raw value must
    verify against before the row is trusted.
    """

    account_id: int
    token_lookup: str
    token_hash: str
    expires_at: datetime
    id: int | None = None
    used_at: datetime | None = None
    ip: str | None = None
    user_agent: str | None = None
    attempts: int = 0
    created_at: datetime | None = None


@dataclass
class ActivityEvent:
    """One append-only audit record."""

    type: ActivityType
    description: str
    severity: Severity = Severity.low
    account_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


@dataclass
class LoginResult:
    """What login and refresh hand back to the transport layer."""

    tokens: TokenPair
    account: Account
    session: Session
