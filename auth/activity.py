"""
auth/activity.py -- Append-only audit sink for security events.

The engine only ever calls ActivitySink.record(). Recording is fire-and-forget:
a sink that cannot write logs the failure and returns, so a broken audit
trail never turns a successful login into an error.

StoreActivitySink writes to the activity_log table via AuthStore.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ServiceUnavailable
from auth.models import ActivityEvent, ActivityType, Severity

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("authgate.activity")


class ActivitySink(Protocol):
    def record(self, event: ActivityEvent) -> None: ...


class StoreActivitySink:
    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def record(self, event: ActivityEvent) -> None:
        try:
            self.store.append_activity(event)
        except (ServiceUnavailable, SQLAlchemyError):
            logger.exception("Dropping %s audit event for account %s", event.type.value, event.account_id)


def emit(
    sink: Optional[ActivitySink],
    type_: ActivityType,
    description: str,
    *,
    severity: Severity = Severity.low,
    account_id: Optional[int] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    **metadata,
) -> None:
    """Build an ActivityEvent and hand it to the sink (no-op without a sink)."""
    if sink is None:
        return
    sink.record(
        ActivityEvent(
            type=type_,
            description=description,
            severity=severity,
            account_id=account_id,
            ip=ip,
            user_agent=user_agent,
            metadata=metadata,
        )
    )
