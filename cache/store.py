"""
cache/store.py -- Ephemeral key-value store for token revocation and login rate limits.

Two jobs, one store:
  blacklist:<token>          -> "revoked", TTL = the token's remaining validity.
                                Disappears on its own when the token would
                                have expired anyway; no cleanup needed.
  login_attempts:<identifier> -> failed-login counter. The window expiry is set
                                only on the 0 -> 1 transition, so repeated
                                failures do not keep extending the lockout.

Backends:
  MemoryRevocationCache -- process-local dict guarded by a lock. Expiry is
      evaluated against the injected clock, which is what lets tests "wait"
      fifteen minutes. Fine for development and single-process deployments;
      NOT shared between workers.
  RedisRevocationCache  -- redis-py. INCR and the first-hit EXPIRE run inside
      one Lua script so the counter and its window are set atomically.

Usage:
    cache = create_revocation_cache(settings)
    cache.blacklist(token, timedelta(minutes=10))
    cache.is_blacklisted(token)            # True
    cache.increment_attempts("alice")      # 1
    cache.reset_attempts("alice")

Layer rule: imports core/, auth.errors (for InfrastructureError) and
auth.validation (identifier normalisation) only.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from redis import Redis, RedisError

from auth.errors import infrastructure_guard
from auth.validation import normalize_identifier
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("authcore.cache")

_DEFAULT_WINDOW = timedelta(minutes=15)
_BLACKLIST_PREFIX = "blacklist:"
_ATTEMPTS_PREFIX = "login_attempts:"


def _attempts_key(identifier: str) -> str:
    # Same normalisation as the case-insensitive user lookup: "Alice" and
    # "alice " must share one counter or the limit is trivially bypassed.
    return _ATTEMPTS_PREFIX + normalize_identifier(identifier)


def _ttl_seconds(ttl: timedelta) -> int:
    """Whole seconds for Redis EX, rounded up and clamped to at least 1."""
    return max(1, math.ceil(ttl.total_seconds()))


class RevocationCache(ABC):
    """Interface the session manager depends on."""

    def __init__(self, window: timedelta = _DEFAULT_WINDOW) -> None:
        self.window = window

    @abstractmethod
    def blacklist(self, token: str, ttl: timedelta) -> None:
        """Store a revocation marker for token that lives for ttl."""

    @abstractmethod
    def is_blacklisted(self, token: str) -> bool: ...

    @abstractmethod
    def increment_attempts(self, identifier: str) -> int:
        """Atomically add one failed attempt and return the new count."""

    @abstractmethod
    def reset_attempts(self, identifier: str) -> None: ...

    @abstractmethod
    def get_attempts(self, identifier: str) -> int:
        """Current count, 0 when absent or expired. Never raises for a missing key."""

    def purge_expired(self) -> int:
        """Drop expired entries. Backends with native TTLs have nothing to do."""
        return 0

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemoryRevocationCache(RevocationCache):
    """Dict-backed cache with per-key expiry checked lazily on read."""

    def __init__(self, window: timedelta = _DEFAULT_WINDOW, clock: Clock = utc_now) -> None:
        super().__init__(window)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[object, Optional[datetime]]] = {}

    def _live_value(self, key: str, now: datetime) -> object | None:
        # Caller holds the lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._entries[key]
            return None
        return value

    def blacklist(self, token: str, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            return
        with self._lock:
            self._entries[_BLACKLIST_PREFIX + token] = ("revoked", self._clock() + ttl)

    def is_blacklisted(self, token: str) -> bool:
        with self._lock:
            return self._live_value(_BLACKLIST_PREFIX + token, self._clock()) is not None

    def increment_attempts(self, identifier: str) -> int:
        key = _attempts_key(identifier)
        with self._lock:
            now = self._clock()
            current = self._live_value(key, now)
            if current is None:
                self._entries[key] = (1, now + self.window)
                return 1
            _, expires_at = self._entries[key]
            count = int(current) + 1
            self._entries[key] = (count, expires_at)
            return count

    def reset_attempts(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(_attempts_key(identifier), None)

    def get_attempts(self, identifier: str) -> int:
        with self._lock:
            value = self._live_value(_attempts_key(identifier), self._clock())
        return int(value) if value is not None else 0

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._entries.items() if exp is not None and now >= exp]
            for key in expired:
                del self._entries[key]
        return len(expired)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisRevocationCache(RevocationCache):
    """Thin Redis wrapper for the blacklist and login counters.

    Every RedisError (connection refused, timeout, READONLY replica) is
    re-raised as InfrastructureError so a cache outage surfaces as 5xx.
    """

    # Atomic increment: the window is armed only when the counter is created.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, client: Redis, window: timedelta = _DEFAULT_WINDOW) -> None:
        super().__init__(window)
        self.client = client
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, *, window: timedelta = _DEFAULT_WINDOW, socket_timeout: float = 5.0):
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, window=window)

    def _guard(self):
        return infrastructure_guard("revocation cache", RedisError)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        with self._guard():
            self.client.ping()

    def blacklist(self, token: str, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            return
        with self._guard():
            self.client.set(_BLACKLIST_PREFIX + token, "revoked", ex=_ttl_seconds(ttl))

    def is_blacklisted(self, token: str) -> bool:
        with self._guard():
            return bool(self.client.exists(_BLACKLIST_PREFIX + token))

    def increment_attempts(self, identifier: str) -> int:
        with self._guard():
            return int(self._increment(keys=[_attempts_key(identifier)], args=[_ttl_seconds(self.window)]))

    def reset_attempts(self, identifier: str) -> None:
        with self._guard():
            self.client.delete(_attempts_key(identifier))

    def get_attempts(self, identifier: str) -> int:
        with self._guard():
            value = self.client.get(_attempts_key(identifier))
        return int(value) if value is not None else 0

    def close(self) -> None:
        self.client.close()


def create_revocation_cache(settings: Settings, clock: Clock = utc_now) -> RevocationCache:
    """Pick the backend from settings.redis_url (empty -> in-process memory)."""
    if settings.redis_url:
        cache = RedisRevocationCache.from_url(
            settings.redis_url,
            window=settings.login_window,
            socket_timeout=settings.redis_socket_timeout,
        )
        cache.verify_connection()
        logger.info("Revocation cache: redis")
        return cache
    logger.warning("REDIS_URL not set -- using in-process revocation cache (not shared between workers)")
    return MemoryRevocationCache(window=settings.login_window, clock=clock)
