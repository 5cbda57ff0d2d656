"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  reset_tokens.token_lookup is UNIQUE so a presented reset token resolves in
  O(1). A partial UNIQUE index on (account_id) over unused rows is the
  backstop against two concurrent forgot-password requests both inserting a
  token for the same account.

Concurrency:
  Multi-statement writes (new current session, password reset completion,
  account deletion) run inside a single engine.begin() transaction. Session
  rows carry a version column that every write bumps, and refresh advances a
  session only when the generation it read is still the stored one.

Timeouts:
  Connections are opened with a bounded timeout (STORAGE_TIMEOUT_SECONDS).
  OperationalError / pool TimeoutError surface as ServiceUnavailable; every
  other database error propagates unchanged.

Timestamps are fixed-width ISO-8601 UTC strings (see core/clock.py), so the
expiry filters below are plain string comparisons.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import ServiceUnavailable
from auth.models import Account, AccountStatus, ActivityEvent, ActivityType, ResetToken, Session, Severity
from core.clock import from_iso, to_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("authgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("password_hash", Text, nullable=False),
    Column("status", String(30), nullable=False, server_default=AccountStatus.pending_verification.value),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("tenant_id", String(64)),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("failed_attempt_count", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login_at", String(32)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),
    Column("verification_token_hash", String(64), unique=True),
    Column("verification_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("device", String(30), nullable=False),
    Column("ip", String(45), nullable=False),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("last_active_at", String(32), nullable=False),
    Column("current", Integer, nullable=False, server_default="1"),
    Column("generation", Integer, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("flagged", Integer, nullable=False, server_default="0"),
)

_reset_tokens = Table(
    "reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("token_lookup", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("token_hash", Text, nullable=False),  # bcrypt
    Column("expires_at", String(32), nullable=False, index=True),
    Column("used_at", String(32)),
    Column("ip", String(45)),
    Column("user_agent", Text),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

Index("ix_sessions_last_active", _sessions.c.last_active_at)
Index("ix_reset_tokens_account_expires", _reset_tokens.c.account_id, _reset_tokens.c.expires_at)
Index(
    "ux_reset_tokens_open",
    _reset_tokens.c.account_id,
    unique=True,
    sqlite_where=_reset_tokens.c.used_at.is_(None),
    postgresql_where=_reset_tokens.c.used_at.is_(None),
)

_activity = Table(
    "activity_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, index=True),  # no FK: the audit trail outlives the account
    Column("type", String(40), nullable=False),
    Column("severity", String(10), nullable=False),
    Column("description", Text, nullable=False),
    Column("ip", String(45)),
    Column("user_agent", Text),
    Column("details", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so they must be applied as each pooled
    connection is created. foreign_keys=ON makes ON DELETE CASCADE effective.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for accounts, sessions, reset tokens and the activity log.

    Usage:
        store = AuthStore()
        account_id = store.create_account(Account(email="a@x.com", password_hash=hash_password("...")))
        account = store.get_account_by_email("A@x.com")
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.database_url
        timeout = timeout if timeout is not None else settings.storage_timeout_seconds
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout}
        else:
            engine_kwargs["connect_args"] = {"connect_timeout": int(max(timeout, 1))}
            engine_kwargs["pool_timeout"] = timeout
            engine_kwargs["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self):
        try:
            with self.engine.connect() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            logger.error("Storage unavailable: %s", exc.__class__.__name__)
            raise ServiceUnavailable() from exc

    @contextmanager
    def _begin(self):
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            logger.error("Storage unavailable: %s", exc.__class__.__name__)
            raise ServiceUnavailable() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except ServiceUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        Callers translate that into AccountExists.
        """
        with self._connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email.strip().lower(),
                    password_hash=account.password_hash,
                    status=AccountStatus(account.status).value,
                    role=account.role,
                    tenant_id=account.tenant_id,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    mfa_enabled=1 if account.mfa_enabled else 0,
                    mfa_secret=account.mfa_secret,
                    created_at=to_iso(account.created_at or utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_account(self, account_id: int) -> Account | None:
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Look up an account by email. The lookup is case-insensitive."""
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def record_failed_login(self, account_id: int, lock_until: Optional[datetime] = None) -> None:
        """Atomically bump failed_attempt_count and optionally set lock_until."""
        values: dict = {"failed_attempt_count": _accounts.c.failed_attempt_count + 1}
        if lock_until is not None:
            values["lock_until"] = to_iso(lock_until)
        with self._connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
            conn.commit()

    def record_successful_login(self, account_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_attempt_count=0, lock_until=None, last_login_at=to_iso(when))
            )
            conn.commit()

    def unlock_account(self, account_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(failed_attempt_count=0, lock_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    def set_status(self, account_id: int, status: AccountStatus) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(status=AccountStatus(status).value)
            )
            conn.commit()
        return result.rowcount > 0

    def set_verification_token(self, account_id: int, token_lookup: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(verification_token_hash=token_lookup, verification_expires_at=to_iso(expires_at))
            )
            conn.commit()

    def activate_by_verification(self, token_lookup: str, now: datetime) -> Account | None:
        """Activate the pending account owning an unexpired verification token.

        Returns the activated account, or None if no pending account matches.
        The token columns are cleared in the same statement so a token
        activates at most once.
        """
        with self._begin() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.verification_token_hash == token_lookup)
                    & (_accounts.c.verification_expires_at > to_iso(now))
                    & (_accounts.c.status == AccountStatus.pending_verification.value)
                )
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == row.id)
                .values(
                    status=AccountStatus.active.value,
                    verification_token_hash=None,
                    verification_expires_at=None,
                )
            )
        return self.get_account(row.id)

    def delete_account(self, account_id: int) -> bool:
        """Delete an account together with its sessions and reset tokens.

        The child deletes are explicit so the cascade holds even on databases
        where the FK cascade is not enforced. Activity rows are kept.
        """
        with self._begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.account_id == account_id))
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_current_session(self, session: Session, now: datetime) -> Session:
        """Insert a session flagged current and demote every other session of the account.

        Both statements run in one transaction so no reader ever sees two
        current sessions for the same account.
        """
        session_id = session.id or uuid.uuid4().hex
        stamp = to_iso(now)
        with self._begin() as conn:
            conn.execute(
                _sessions.update()
                .where((_sessions.c.account_id == session.account_id) & (_sessions.c.current == 1))
                .values(current=0, version=_sessions.c.version + 1)
            )
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    account_id=session.account_id,
                    device=session.device,
                    ip=session.ip,
                    user_agent=session.user_agent,
                    created_at=stamp,
                    last_active_at=stamp,
                    current=1,
                    generation=0,
                    version=0,
                    flagged=1 if session.flagged else 0,
                )
            )
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row)

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, account_id: int, active_after: Optional[datetime] = None) -> list[Session]:
        """Sessions of an account, oldest first. With active_after, only those used since then."""
        query = _sessions.select().where(_sessions.c.account_id == account_id)
        if active_after is not None:
            query = query.where(_sessions.c.last_active_at > to_iso(active_after))
        with self._connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.created_at)).fetchall()
        return [_row_to_session(r) for r in rows]

    def advance_session(self, session_id: str, expected_generation: int, now: datetime) -> Session | None:
        """Bump generation and last_active_at if the session is current at expected_generation.

        Compare-and-set: returns None when the session is gone, demoted, or
        already advanced by a concurrent refresh.
        """
        with self._connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.generation == expected_generation)
                    & (_sessions.c.current == 1)
                )
                .values(
                    generation=_sessions.c.generation + 1,
                    version=_sessions.c.version + 1,
                    last_active_at=to_iso(now),
                )
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_session(session_id)

    def delete_session(self, account_id: int, session_id: str) -> bool:
        """Delete one session. account_id is checked so callers can only revoke their own."""
        with self._connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.id == session_id) & (_sessions.c.account_id == account_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_sessions(self, account_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            conn.commit()
        return result.rowcount

    def delete_expired_sessions(self, idle_before: datetime) -> int:
        """Delete every session whose last activity is at or before idle_before."""
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.last_active_at <= to_iso(idle_before)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: ResetToken, now: datetime) -> int | None:
        """Insert a reset token unless the account already holds a valid one.

        Expired unused tokens of the account are purged first so the partial
        unique index only ever guards live tokens. Returns the new row ID, or
        None when a valid token already exists (including the case where a
        concurrent request inserted one between our check and our insert).
        """
        stamp = to_iso(now)
        try:
            with self._begin() as conn:
                conn.execute(
                    _reset_tokens.delete().where(
                        (_reset_tokens.c.account_id == token.account_id)
                        & (_reset_tokens.c.used_at.is_(None))
                        & (_reset_tokens.c.expires_at <= stamp)
                    )
                )
                existing = conn.execute(
                    select(_reset_tokens.c.id).where(
                        (_reset_tokens.c.account_id == token.account_id)
                        & (_reset_tokens.c.used_at.is_(None))
                        & (_reset_tokens.c.expires_at > stamp)
                    )
                ).first()
                if existing is not None:
                    return None
                result = conn.execute(
                    _reset_tokens.insert().values(
                        account_id=token.account_id,
                        token_lookup=token.token_lookup,
                        token_hash=token.token_hash,
                        expires_at=to_iso(token.expires_at),
                        ip=token.ip,
                        user_agent=token.user_agent,
                        attempts=0,
                        created_at=stamp,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError:
            logger.info("Concurrent reset token insert for account %s ignored", token.account_id)
            return None

    def has_valid_reset_token(self, account_id: int, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                select(_reset_tokens.c.id).where(
                    (_reset_tokens.c.account_id == account_id)
                    & (_reset_tokens.c.used_at.is_(None))
                    & (_reset_tokens.c.expires_at > to_iso(now))
                )
            ).first()
        return row is not None

    def get_reset_token_by_lookup(self, token_lookup: str) -> ResetToken | None:
        """Find a reset token by its lookup digest. O(1) via the UNIQUE index."""
        with self._connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_lookup == token_lookup)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def list_reset_tokens(self, account_id: int) -> list[ResetToken]:
        """Return every reset token of an account, newest first (admin/audit use)."""
        with self._connect() as conn:
            rows = conn.execute(
                _reset_tokens.select()
                .where(_reset_tokens.c.account_id == account_id)
                .order_by(_reset_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_reset_token(r) for r in rows]

    def increment_reset_attempts(self, token_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                _reset_tokens.update()
                .where(_reset_tokens.c.id == token_id)
                .values(attempts=_reset_tokens.c.attempts + 1)
            )
            conn.commit()

    def complete_password_reset(self, token_id: int, account_id: int, password_hash: str, now: datetime) -> bool:
        """Consume the token and store the new password hash in one transaction.

        The token is consumed with a conditional UPDATE (unused and unexpired),
        so of two concurrent resets with the same token exactly one wins.
        Every other unused token of the account is invalidated, and the
        account's lockout state is cleared.
        """
        stamp = to_iso(now)
        with self._begin() as conn:
            consumed = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.id == token_id)
                    & (_reset_tokens.c.used_at.is_(None))
                    & (_reset_tokens.c.expires_at > stamp)
                )
                .values(used_at=stamp)
            )
            if consumed.rowcount == 0:
                return False
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(password_hash=password_hash, failed_attempt_count=0, lock_until=None)
            )
            conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.account_id == account_id) & (_reset_tokens.c.used_at.is_(None)))
                .values(used_at=stamp)
            )
        return True

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def append_activity(self, event_: ActivityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                _activity.insert().values(
                    account_id=event_.account_id,
                    type=ActivityType(event_.type).value,
                    severity=Severity(event_.severity).value,
                    description=event_.description,
                    ip=event_.ip,
                    user_agent=event_.user_agent,
                    details=json.dumps(event_.metadata) if event_.metadata else None,
                    created_at=to_iso(event_.created_at or utcnow()),
                )
            )
            conn.commit()

    def list_activity(self, account_id: int, limit: int = 50) -> list[ActivityEvent]:
        """Return the most recent activity for an account, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _activity.select()
                .where(_activity.c.account_id == account_id)
                .order_by(_activity.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_activity(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        status=AccountStatus(row.status),
        role=row.role,
        tenant_id=row.tenant_id,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        failed_attempt_count=row.failed_attempt_count,
        lock_until=from_iso(row.lock_until),
        last_login_at=from_iso(row.last_login_at),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.account_id,
        device=row.device,
        ip=row.ip,
        user_agent=row.user_agent or "",
        created_at=from_iso(row.created_at),
        last_active_at=from_iso(row.last_active_at),
        current=bool(row.current),
        generation=row.generation,
        version=row.version,
        flagged=bool(row.flagged),
    )


def _row_to_reset_token(row) -> ResetToken:
    return ResetToken(
        id=row.id,
        account_id=row.account_id,
        token_lookup=row.token_lookup,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        ip=row.ip,
        user_agent=row.user_agent,
        attempts=row.attempts,
        created_at=from_iso(row.created_at),
    )


def _row_to_activity(row) -> ActivityEvent:
    return ActivityEvent(
        type=ActivityType(row.type),
        severity=Severity(row.severity),
        description=row.description,
        account_id=row.account_id,
        ip=row.ip,
        user_agent=row.user_agent,
        metadata=json.loads(row.details) if row.details else {},
        created_at=from_iso(row.created_at),
    )
