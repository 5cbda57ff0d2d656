"""
cache/counters.py -- Failure counters for lockout and ip-block decisions.

Two interchangeable backends behind the CounterStore protocol:

  MemoryCounterStore  -- in-process dict guarded by a single lock. Correct for
                         one service instance; state resets on restart.
  RedisCounterStore   -- shared across instances. Increment, window roll-over
                         and block decision run in one Lua script, so
                         concurrent attackers hitting the same key cannot lose
                         updates.

Window semantics (rolling): a counter expires `window` seconds after its most
recent hit unless it is blocked. A hit on an expired counter starts a new
window at 1. A block outlives the window until blocked_until passes.

Usage:
    counters = build_counter_store(get_settings())
    hit = counters.hit("ip:203.0.113.9", window=900, threshold=10, block_seconds=3600)
    if hit.newly_blocked: ...
    counters.get("login:a@x.com:203.0.113.9")
    counters.reset("login:a@x.com:203.0.113.9")
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("authgate.counters")


class CounterStoreError(Exception):
    """The counter backend could not be reached or answered garbage."""


@dataclass
class SecurityCounter:
    """Failure counter for one scope key ("login:<email>:<ip>" or "ip:<ip>").

    count only grows while the window is open. window_start is the first
    failure of the window; last_attempt and expires_at drive the rolling
    expiry. A blocked counter survives cleanup until blocked_until passes.
    Times are epoch seconds.
    """

    key: str
    count: int = 0
    window_start: float = 0.0
    last_attempt: float = 0.0
    expires_at: float = 0.0
    blocked: bool = False
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class CounterHit:
    count: int
    blocked_until: Optional[float] = None
    newly_blocked: bool = False


class CounterStore(Protocol):
    def hit(
        self, key: str, window: int, threshold: int = 0, block_seconds: int = 0, now: Optional[float] = None
    ) -> CounterHit: ...

    def get(self, key: str, now: Optional[float] = None) -> int: ...

    def blocked_until(self, key: str, now: Optional[float] = None) -> Optional[float]: ...

    def block(self, key: str, seconds: int, now: Optional[float] = None) -> None: ...

    def reset(self, key: str) -> None: ...

    def cleanup(self, now: Optional[float] = None) -> int: ...


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemoryCounterStore:
    """Single-process counter store.

    One lock guards the whole table: increment and threshold check for a key
    happen under it, which is all the atomicity the lockout contract needs.
    Expired, unblocked entries are dropped lazily on every hit.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, SecurityCounter] = {}

    def _live(self, key: str, now: float) -> Optional[SecurityCounter]:
        counter = self._counters.get(key)
        if counter is None:
            return None
        if counter.blocked and counter.blocked_until is not None and counter.blocked_until <= now:
            counter.blocked = False
            counter.blocked_until = None
        if not counter.blocked and counter.expires_at <= now:
            del self._counters[key]
            return None
        return counter

    def hit(
        self, key: str, window: int, threshold: int = 0, block_seconds: int = 0, now: Optional[float] = None
    ) -> CounterHit:
        now = time.time() if now is None else now
        with self._lock:
            self._purge(now)
            counter = self._live(key, now)
            if counter is None:
                counter = SecurityCounter(key=key, window_start=now)
                self._counters[key] = counter
            counter.count += 1
            counter.last_attempt = now
            counter.expires_at = now + window
            newly_blocked = False
            if threshold and counter.count >= threshold and not counter.blocked:
                counter.blocked = True
                counter.blocked_until = now + block_seconds
                newly_blocked = True
            return CounterHit(
                count=counter.count,
                blocked_until=counter.blocked_until if counter.blocked else None,
                newly_blocked=newly_blocked,
            )

    def get(self, key: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            counter = self._live(key, now)
            return counter.count if counter is not None else 0

    def blocked_until(self, key: str, now: Optional[float] = None) -> Optional[float]:
        now = time.time() if now is None else now
        with self._lock:
            counter = self._live(key, now)
            if counter is None or not counter.blocked:
                return None
            return counter.blocked_until

    def block(self, key: str, seconds: int, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            counter = self._live(key, now)
            if counter is None:
                counter = SecurityCounter(key=key, window_start=now, last_attempt=now, expires_at=now)
                self._counters[key] = counter
            counter.blocked = True
            counter.blocked_until = now + seconds

    def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def cleanup(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            return self._purge(now)

    def _purge(self, now: float) -> int:
        stale = [k for k in list(self._counters) if self._live(k, now) is None]
        return len(stale)

    def snapshot(self) -> dict[str, SecurityCounter]:
        """Return a copy of the live table (diagnostics and tests)."""
        with self._lock:
            return dict(self._counters)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCounterStore:
    """Counter store shared by every service instance through Redis.

    Each key is a hash {count, window_start, last_attempt, blocked_until}
    with a TTL covering the longer of the rolling window and the block.
    """

    _HIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local threshold = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'window_start', 'last_attempt', 'blocked_until')
local count = tonumber(data[1]) or 0
local start = tonumber(data[2]) or now
local last = tonumber(data[3]) or now
local blocked_until = tonumber(data[4])

if blocked_until ~= nil and blocked_until <= now then
  blocked_until = nil
  redis.call('HDEL', key, 'blocked_until')
end

if count > 0 and blocked_until == nil and last + window <= now then
  count = 0
  start = now
end

count = count + 1
local newly = 0
if threshold > 0 and count >= threshold and blocked_until == nil then
  blocked_until = now + block
  newly = 1
  redis.call('HSET', key, 'blocked_until', tostring(blocked_until))
end

redis.call('HSET', key, 'count', count, 'window_start', tostring(start), 'last_attempt', tostring(now))
local ttl = window
if blocked_until ~= nil then
  ttl = math.max(window, blocked_until - now)
end
redis.call('EXPIRE', key, math.max(math.ceil(ttl), 1))
return {count, newly, tostring(blocked_until or 0)}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        prefix: str = "authgate:counter:",
        client: Optional[Redis] = None,
    ) -> None:
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._hit = self.client.register_script(self._HIT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def hit(
        self, key: str, window: int, threshold: int = 0, block_seconds: int = 0, now: Optional[float] = None
    ) -> CounterHit:
        now = time.time() if now is None else now
        try:
            count, newly, blocked_until = self._hit(
                keys=[self._key(key)], args=[now, window, threshold, block_seconds]
            )
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        until = float(blocked_until)
        return CounterHit(count=int(count), blocked_until=until or None, newly_blocked=bool(int(newly)))

    def get(self, key: str, now: Optional[float] = None) -> int:
        try:
            value = self.client.hget(self._key(key), "count")
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return int(value) if value else 0

    def blocked_until(self, key: str, now: Optional[float] = None) -> Optional[float]:
        now = time.time() if now is None else now
        try:
            value = self.client.hget(self._key(key), "blocked_until")
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        if not value:
            return None
        until = float(value)
        return until if until > now else None

    def block(self, key: str, seconds: int, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        name = self._key(key)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(name, mapping={"blocked_until": str(now + seconds), "last_attempt": str(now)})
            pipe.expire(name, max(int(seconds), 1))
            pipe.execute()
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    def reset(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    def cleanup(self, now: Optional[float] = None) -> int:
        # Redis expires keys on its own.
        return 0

    def close(self) -> None:
        self.client.close()


def build_counter_store(settings) -> CounterStore:
    """Pick the counter backend from settings (REDIS_URL empty -> in-process)."""
    if settings.redis_url:
        logger.info("Using Redis counter store")
        return RedisCounterStore(settings.redis_url, socket_timeout=settings.storage_timeout_seconds)
    logger.warning("REDIS_URL not set -- lockout counters are per-process and reset on restart")
    return MemoryCounterStore()
