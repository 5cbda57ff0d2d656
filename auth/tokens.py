"""
auth/tokens.py -- JWT pairs, password hashing, and one-time secret utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry account_id, email, role, tenant_id and the session id. Refresh
       tokens are signed with REFRESH_SECRET_KEY and additionally carry the
       session generation and type="refresh". Different keys mean a leaked
       access token cannot be replayed as a refresh token [K2]. Verification
       returns None on any failure -- callers turn that into an error kind.

  Passwords: bcrypt directly (cost BCRYPT_ROUNDS, default 12). The
       _DUMMY_HASH constant enables timing equalization in the credential
       validator so response time does not reveal whether an email exists [C1].

  One-time secrets (reset / verification tokens): secrets.token_hex(32) gives
       256 bits of entropy. The store keeps HMAC-SHA256(SECRET_KEY, raw) as a
       deterministic lookup key plus, for reset tokens, a bcrypt hash (cost
       RESET_TOKEN_BCRYPT_ROUNDS) the raw value must verify against. The raw
       value is never persisted.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidRefreshToken
from auth.models import Account, AccountStatus, Session, TokenPair
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("authgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the password policy rejects
    longer inputs before they get here.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash (constant-time compare)."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt compare against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# One-time secrets
# ---------------------------------------------------------------------------


def generate_secret_token() -> str:
    """Return a fresh 256-bit random token as 64 hex characters."""
    return secrets.token_hex(32)


def lookup_digest(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can index it and resolve a presented token in
    O(1). Keyed, so a dumped table cannot be matched against guessed tokens
    without also knowing SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def hash_reset_token(raw_token: str) -> str:
    return hash_password(raw_token, rounds=_settings.reset_token_bcrypt_rounds)


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and rotates signed access/refresh token pairs bound to a session.

    issue_token_pair() is a pure function of its inputs. refresh() needs the
    store to confirm the session still exists, is current, and sits at the
    generation embedded in the token; the generation compare-and-set in the
    store is what makes every refresh token single-use.
    """

    def __init__(
        self,
        store: Optional[AuthStore] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or _settings
        self.clock = clock

    def _claims(self, account: Account, session_id: str, token_type: str, ttl: int) -> dict:
        now = self.clock()
        return {
            "sub": str(account.id),
            "account_id": account.id,
            "email": account.email,
            "role": account.role,
            "tenant_id": account.tenant_id,
            "sid": session_id,
            "type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
        }

    def issue_token_pair(self, account: Account, session_id: str, generation: int = 0) -> TokenPair:
        access_claims = self._claims(account, session_id, _ACCESS, self.settings.access_token_expire_seconds)
        refresh_claims = self._claims(account, session_id, _REFRESH, self.settings.refresh_token_expire_seconds)
        refresh_claims["gen"] = generation
        return TokenPair(
            access_token=jwt.encode(access_claims, self.settings.secret_key, algorithm=_ALGORITHM),
            refresh_token=jwt.encode(refresh_claims, self.settings.refresh_secret_key, algorithm=_ALGORITHM),
            expires_in=self.settings.access_token_expire_seconds,
            session_id=session_id,
        )

    def decode_access_token(self, token: str) -> dict | None:
        """Decode and verify an access token. Returns the payload dict or None on any failure."""
        return self._decode(token, self.settings.secret_key, _ACCESS)

    def decode_refresh_token(self, token: str) -> dict | None:
        return self._decode(token, self.settings.refresh_secret_key, _REFRESH)

    @staticmethod
    def _decode(token: str, key: str, token_type: str) -> dict | None:
        try:
            payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != token_type:
            return None
        if "account_id" not in payload or "sid" not in payload:
            return None
        if token_type == _REFRESH and not isinstance(payload.get("gen"), int):
            return None
        return payload

    def refresh(self, refresh_token: str, ip: str, user_agent: str) -> tuple[TokenPair, Account, Session]:
        """Verify a refresh token against its session and rotate both tokens.

        Raises InvalidRefreshToken when the signature or expiry is bad, the
        session is missing or no longer current, the token's generation has
        already been used, or the account is no longer active.
        """
        if self.store is None:
            raise RuntimeError("TokenIssuer.refresh() requires a store")
        payload = self.decode_refresh_token(refresh_token)
        if payload is None:
            raise InvalidRefreshToken()

        session = self.store.get_session(payload["sid"])
        if session is None or session.account_id != payload["account_id"] or not session.current:
            raise InvalidRefreshToken()

        account = self.store.get_account(session.account_id)
        if account is None or account.status != AccountStatus.active:
            raise InvalidRefreshToken()

        advanced = self.store.advance_session(session.id, payload["gen"], self.clock())
        if advanced is None:
            logger.warning("Stale refresh token presented for session %s from %s", session.id, ip)
            raise InvalidRefreshToken()

        return self.issue_token_pair(account, advanced.id, advanced.generation), account, advanced
