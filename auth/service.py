"""
auth/service.py -- AuthService, the transport-agnostic entry point of the engine.

Wires the components together and exposes the operations the API layer calls:

  login -> ip-block check -> CredentialValidator -> suspicious check ->
           counter reset -> SessionRegistry.create_session -> TokenIssuer
  refresh -> TokenIssuer.refresh (generation compare-and-set)
  logout / logout_all / revoke_session -> SessionRegistry
  forgot_password / reset_password / validate_reset_token -> PasswordResetManager
  register / verify_email / resend_verification -> AuthStore + EmailSender

Every operation either returns a value or raises an AuthError subclass. The
only exceptions are forgot_password() and resend_verification(), which
always return the same message.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.activity import ActivitySink, StoreActivitySink, emit
from auth.credentials import CredentialValidator, normalize_email
from auth.errors import AccountExists, InvalidVerificationToken, RateLimited, ServiceUnavailable
from auth.mailer import EmailSender, LoggingEmailSender
from auth.models import Account, AccountStatus, ActivityType, LoginResult, Session, Severity
from auth.password_reset import PasswordResetManager
from auth.policy import validate_password_strength
from auth.security import SecurityMonitor
from auth.sessions import SessionRegistry
from auth.store import AuthStore
from auth.tokens import TokenIssuer, generate_secret_token, hash_password, lookup_digest
from cache.counters import CounterStore, CounterStoreError
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("authgate.auth")

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."
RESEND_VERIFICATION_MESSAGE = "If that account is awaiting verification, a new verification link has been sent."


class AuthService:
    """Facade over the auth components.

    Usage:
        service = AuthService(AuthStore(), MemoryCounterStore())
        result = service.login("a@x.com", "Password1!", ip="203.0.113.9", user_agent="curl/8")
        payload = service.validate_token(result.tokens.access_token)
    """

    def __init__(
        self,
        store: AuthStore,
        counters: CounterStore,
        email_sender: Optional[EmailSender] = None,
        activity: Optional[ActivitySink] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.counters = counters
        self.settings = settings or get_settings()
        self.clock = clock
        self.activity = activity if activity is not None else StoreActivitySink(store)
        self.email_sender = email_sender or LoggingEmailSender(self.settings)

        self.monitor = SecurityMonitor(counters, self.activity, self.settings, clock)
        self.sessions = SessionRegistry(store, clock, self.settings.refresh_token_expire_seconds)
        self.issuer = TokenIssuer(store, self.settings, clock)
        self.validator = CredentialValidator(store, self.monitor, self.activity, self.settings, clock)
        self.resets = PasswordResetManager(
            store, self.email_sender, self.sessions, self.activity, self.settings, clock
        )

    # ------------------------------------------------------------------
    # Login / token lifecycle
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ip: str,
        user_agent: str = "",
        device: Optional[str] = None,
    ) -> LoginResult:
        retry_after = self.monitor.ip_block_remaining(ip)
        if retry_after:
            logger.warning("Login from blocked IP %s rejected", ip)
            raise RateLimited(retry_after=retry_after)

        account = self.validator.validate(email, password, ip, user_agent)

        existing = self.sessions.list(account.id)
        suspicious = self.monitor.check_suspicious_activity(account, ip, user_agent, existing)
        self.monitor.reset_login_attempts(account.email, ip)

        session = self.sessions.create_session(account, device, ip, user_agent, flagged=suspicious)
        tokens = self.issuer.issue_token_pair(account, session.id, session.generation)

        emit(
            self.activity,
            ActivityType.LOGIN,
            "Login succeeded",
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
            session_id=session.id,
            device=session.device,
        )
        if suspicious:
            emit(
                self.activity,
                ActivityType.SUSPICIOUS_LOGIN,
                "Login flagged for review",
                severity=Severity.high,
                account_id=account.id,
                ip=ip,
                user_agent=user_agent,
                session_id=session.id,
            )
        logger.info("Account %s logged in from %s", account.id, ip)
        return LoginResult(tokens=tokens, account=account, session=session)

    def refresh(self, refresh_token: str, ip: str = "", user_agent: str = "") -> LoginResult:
        tokens, account, session = self.issuer.refresh(refresh_token, ip, user_agent)
        emit(
            self.activity,
            ActivityType.TOKEN_REFRESH,
            "Tokens refreshed",
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
            session_id=session.id,
        )
        return LoginResult(tokens=tokens, account=account, session=session)

    def logout(self, session_id: str, account_id: Optional[int] = None, ip: Optional[str] = None) -> bool:
        """End one session. With account_id given, only that account's session is touched."""
        session = self.sessions.get(session_id)
        if session is None or (account_id is not None and session.account_id != account_id):
            return False
        revoked = self.sessions.revoke(session.account_id, session_id)
        if revoked:
            emit(
                self.activity,
                ActivityType.LOGOUT,
                "Logged out",
                account_id=session.account_id,
                ip=ip,
                session_id=session_id,
            )
        return revoked

    def logout_all(self, account_id: int, ip: Optional[str] = None) -> int:
        count = self.sessions.revoke_all(account_id)
        emit(
            self.activity,
            ActivityType.LOGOUT_ALL,
            f"Logged out of {count} session(s)",
            account_id=account_id,
            ip=ip,
        )
        return count

    def validate_token(self, token: str) -> dict | None:
        """Return the access token payload, or None when the token is not usable.

        Besides signature and expiry, the session named in the token must
        still exist and the account must still be active, so logout and
        account suspension take effect before the token expires.
        """
        resolved = self.authenticate(token)
        return resolved[1] if resolved is not None else None

    def authenticate(self, token: str) -> tuple[Account, dict] | None:
        """Resolve an access token to (account, payload); None when invalid."""
        payload = self.issuer.decode_access_token(token)
        if payload is None:
            return None
        session = self.store.get_session(payload["sid"])
        if session is None or session.account_id != payload["account_id"]:
            return None
        account = self.store.get_account(session.account_id)
        if account is None or account.status != AccountStatus.active:
            return None
        return account, payload

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> str:
        """Always returns FORGOT_PASSWORD_MESSAGE, whatever happened internally."""
        try:
            self.resets.request_reset(email, ip, user_agent)
        except ServiceUnavailable:
            logger.exception("Password reset request could not be processed")
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(
        self,
        token: str,
        new_password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.resets.reset_password(token, new_password, ip, user_agent)

    def validate_reset_token(self, token: str) -> bool:
        return self.resets.validate_reset_token(token)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        tenant_id: Optional[str] = None,
        status: AccountStatus = AccountStatus.active,
    ) -> Account:
        """Create an account directly (admin path, no verification email)."""
        email = normalize_email(email)
        validate_password_strength(password)
        if self.store.get_account_by_email(email) is not None:
            raise AccountExists()
        account = Account(
            email=email,
            password_hash=hash_password(password),
            role=role,
            status=status,
            tenant_id=tenant_id,
            first_name=first_name,
            last_name=last_name,
            created_at=self.clock(),
        )
        try:
            account.id = self.store.create_account(account)
        except IntegrityError as exc:
            raise AccountExists() from exc
        emit(
            self.activity,
            ActivityType.ACCOUNT_CREATED,
            "Account created",
            account_id=account.id,
            role=role,
        )
        logger.info("Account %s created (%s)", account.id, account.status.value)
        return account

    def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        tenant_id: Optional[str] = None,
    ) -> Account:
        """Create a pending account and email it a verification token."""
        account = self.create_account(
            email,
            password,
            first_name=first_name,
            last_name=last_name,
            role=role,
            tenant_id=tenant_id,
            status=AccountStatus.pending_verification,
        )
        self._send_verification(account)
        return account

    def resend_verification(self, email: str, ip: Optional[str] = None) -> str:
        """Issue a fresh verification token to a pending account.

        Always returns RESEND_VERIFICATION_MESSAGE. Unknown and already
        verified accounts get nothing. The new token replaces the old one, so
        only the most recent email works.
        """
        try:
            account = self.store.get_account_by_email(normalize_email(email))
            if account is not None and account.status == AccountStatus.pending_verification:
                self._send_verification(account)
                logger.info("Verification email re-sent for account %s (ip %s)", account.id, ip)
        except ServiceUnavailable:
            logger.exception("Verification resend could not be processed")
        return RESEND_VERIFICATION_MESSAGE

    def _send_verification(self, account: Account) -> None:
        raw_token = generate_secret_token()
        expires_at = self.clock() + timedelta(seconds=self.settings.verification_token_expire_seconds)
        self.store.set_verification_token(account.id, lookup_digest(raw_token), expires_at)
        try:
            self.email_sender.send_email_verification(account.email, account.display_name, raw_token)
        except Exception:
            logger.exception("Failed to send verification email for account %s", account.id)

    def verify_email(self, token: str) -> Account:
        if not token:
            raise InvalidVerificationToken()
        account = self.store.activate_by_verification(lookup_digest(token), self.clock())
        if account is None:
            raise InvalidVerificationToken()
        emit(self.activity, ActivityType.EMAIL_VERIFIED, "Email verified", account_id=account.id)
        return account

    # ------------------------------------------------------------------
    # Account and session management
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account | None:
        return self.store.get_account(account_id)

    def list_sessions(self, account_id: int) -> list[Session]:
        return self.sessions.list(account_id)

    def revoke_session(self, account_id: int, session_id: str, ip: Optional[str] = None) -> bool:
        revoked = self.sessions.revoke(account_id, session_id)
        if revoked:
            emit(
                self.activity,
                ActivityType.SESSION_REVOKED,
                "Session revoked",
                account_id=account_id,
                ip=ip,
                session_id=session_id,
            )
        return revoked

    def delete_account(self, account_id: int, actor_id: Optional[int] = None) -> bool:
        deleted = self.store.delete_account(account_id)
        if deleted:
            emit(
                self.activity,
                ActivityType.ACCOUNT_DELETED,
                "Account deleted",
                severity=Severity.high,
                account_id=account_id,
                actor_id=actor_id,
            )
            logger.info("Account %s deleted by %s", account_id, actor_id)
        return deleted

    def unlock(self, email: str, ip: Optional[str] = None) -> bool:
        """Clear an account's lock. With ip given, also drop that (email, ip) failure counter."""
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            return False
        if ip:
            self.monitor.reset_login_attempts(account.email, ip)
        return self.store.unlock_account(account.id)

    def purge_expired(self) -> int:
        """Garbage-collect expired reset tokens, idle sessions and counters.

        Returns the number of reset tokens removed.
        """
        removed = self.resets.cleanup_expired_tokens()
        self.sessions.purge_expired()
        try:
            self.counters.cleanup(self.clock().timestamp())
        except CounterStoreError:
            logger.exception("Counter cleanup failed")
        return removed
