"""
auth/sessions.py -- Per-account registry of active sessions.

A new login inserts a session flagged current and demotes every other session
of the account in the same transaction. On top of that, writes for one
account are serialized in-process through a striped lock so two concurrent
logins never interleave their demote/insert pairs. "current" only decides
which session may be refreshed; it is not a ranking.

A session lives as long as its refresh token: once it has been idle for
REFRESH_TOKEN_EXPIRE_SECONDS it is no longer listed, and purge_expired()
deletes it.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from auth.models import Account, Session
from auth.store import AuthStore
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("authgate.sessions")

_LOCK_STRIPES = 64


def extract_device(user_agent: str) -> str:
    """Coarse device label from a User-Agent header."""
    ua = user_agent or ""
    for marker in ("Mobile", "Tablet", "Windows", "Mac", "Linux"):
        if marker in ua:
            return marker
    return "Unknown"


class SessionRegistry:
    def __init__(self, store: AuthStore, clock: Clock = utcnow, ttl_seconds: Optional[int] = None) -> None:
        self.store = store
        self.clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().refresh_token_expire_seconds
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def _lock_for(self, account_id: int) -> threading.Lock:
        return self._locks[hash(account_id) % _LOCK_STRIPES]

    def create_session(
        self,
        account: Account,
        device: Optional[str],
        ip: str,
        user_agent: str,
        flagged: bool = False,
    ) -> Session:
        session = Session(
            account_id=account.id,
            device=device or extract_device(user_agent),
            ip=ip,
            user_agent=user_agent,
            flagged=flagged,
        )
        with self._lock_for(account.id):
            created = self.store.insert_current_session(session, self.clock())
        logger.info("Session %s created for account %s (%s)", created.id, account.id, created.device)
        return created

    def get(self, session_id: str) -> Session | None:
        return self.store.get_session(session_id)

    def _idle_cutoff(self) -> datetime:
        return self.clock() - timedelta(seconds=self.ttl_seconds)

    def list(self, account_id: int) -> list[Session]:
        return self.store.list_sessions(account_id, active_after=self._idle_cutoff())

    def revoke(self, account_id: int, session_id: str) -> bool:
        with self._lock_for(account_id):
            revoked = self.store.delete_session(account_id, session_id)
        if revoked:
            logger.info("Session %s revoked for account %s", session_id, account_id)
        return revoked

    def revoke_all(self, account_id: int) -> int:
        with self._lock_for(account_id):
            count = self.store.delete_sessions(account_id)
        logger.info("Revoked %d session(s) for account %s", count, account_id)
        return count

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._idle_cutoff())
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed
