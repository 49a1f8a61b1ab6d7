"""
Per-tenant fixed-window rate limiting.

Windows are keyed by (tenant_id, endpoint_class). The limit itself is not
stored in the window: it is read from the entitlement catalog on every
check, so an upgrade takes effect on the very next request.

Counter storage is pluggable:
- InMemoryWindowStore: per-key locks, single-process deployments and tests
- RedisWindowStore: one atomic Lua script per check, shared across instances

PRINCIPLES:
- Atomic per key, no global lock on the hot path
- A denied attempt still counts against the window
- Tenant isolation: keys always include tenant_id
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

import redis

from tenant_entitlements.entitlements.catalog import (
    EntitlementCatalog,
    LimitValue,
    UNLIMITED,
    get_entitlement_catalog,
    is_unlimited,
)
from tenant_entitlements.models.base import utc_now
from tenant_entitlements.models.subscription import SubscriptionTier

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""
    allowed: bool
    limit: LimitValue
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    retry_after: Optional[float] = None
    count: int = 0


class WindowCounterStore(ABC):
    """Atomic fixed-window counter."""

    @abstractmethod
    def increment(self, key: str, now: datetime, window: timedelta) -> Tuple[int, datetime]:
        """
        Count one request in the window covering now.

        Starts a fresh window (start=now, count=1) when none exists or the
        previous one has elapsed.

        Returns:
            (count including this request, window start)
        """

    @abstractmethod
    def purge_expired(self, now: datetime, window: timedelta) -> int:
        """Drop elapsed windows. Returns the number removed."""


@dataclass
class _Window:
    start: datetime
    count: int


class InMemoryWindowStore(WindowCounterStore):
    """
    Process-local window store.

    Each key has its own lock; the registry lock is held only long enough
    to create or drop a key's lock, never while counting. A key's lock is
    dropped together with its window, so a caller that waited on a dropped
    lock starts over with the current one.
    """

    def __init__(self):
        self._windows: Dict[str, _Window] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def increment(self, key: str, now: datetime, window: timedelta) -> Tuple[int, datetime]:
        while True:
            lock = self._lock_for(key)
            with lock:
                if self._locks.get(key) is not lock:
                    continue
                current = self._windows.get(key)
                if current is None or now >= current.start + window:
                    current = _Window(start=now, count=0)
                    self._windows[key] = current
                current.count += 1
                return current.count, current.start

    def purge_expired(self, now: datetime, window: timedelta) -> int:
        removed = 0
        for key in list(self._windows):
            lock = self._lock_for(key)
            with lock:
                current = self._windows.get(key)
                if current is not None and now < current.start + window:
                    continue
                if current is not None:
                    del self._windows[key]
                    removed += 1
                with self._registry_lock:
                    if self._locks.get(key) is lock:
                        del self._locks[key]
        if removed:
            logger.debug("Purged expired rate windows", extra={"removed": removed})
        return removed

    def __len__(self) -> int:
        return len(self._windows)


# KEYS[1] = window hash, ARGV[1] = now (ms), ARGV[2] = window length (ms)
_INCREMENT_SCRIPT = """
local start = redis.call('HGET', KEYS[1], 'start')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
if (not start) or now >= tonumber(start) + window then
    redis.call('HSET', KEYS[1], 'start', now, 'count', 1)
    redis.call('PEXPIRE', KEYS[1], window)
    return {now, 1}
end
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {tonumber(start), count}
"""


class RedisWindowStore(WindowCounterStore):
    """
    Shared window store backed by Redis.

    Each check is a single Lua script so concurrent instances cannot lose
    increments. Elapsed windows are removed by the key TTL.
    """

    def __init__(self, client: "redis.Redis", key_prefix: str = "ratelimit"):
        self._client = client
        self._key_prefix = key_prefix
        self._script = client.register_script(_INCREMENT_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = "ratelimit") -> "RedisWindowStore":
        client = redis.from_url(redis_url, decode_responses=True)
        logger.info("Using Redis rate window store", extra={"key_prefix": key_prefix})
        return cls(client, key_prefix=key_prefix)

    def increment(self, key: str, now: datetime, window: timedelta) -> Tuple[int, datetime]:
        now_ms = int(now.timestamp() * 1000)
        window_ms = int(window.total_seconds() * 1000)
        start_ms, count = self._script(
            keys=[f"{self._key_prefix}:{key}"],
            args=[now_ms, window_ms],
        )
        start = datetime.fromtimestamp(int(start_ms) / 1000, tz=timezone.utc)
        return int(count), start

    def purge_expired(self, now: datetime, window: timedelta) -> int:
        return 0


class RateLimiter:
    """
    Fixed-window limiter driven by catalog rate limits.

    Usage:
        limiter = RateLimiter(store=InMemoryWindowStore())
        result = limiter.check_and_increment(tenant_id, "write", SubscriptionTier.STARTER)
        if not result.allowed:
            ...  # Retry-After: result.retry_after
    """

    def __init__(
        self,
        store: Optional[WindowCounterStore] = None,
        catalog: Optional[EntitlementCatalog] = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store or InMemoryWindowStore()
        self._catalog = catalog
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    @property
    def catalog(self) -> EntitlementCatalog:
        return self._catalog or get_entitlement_catalog()

    @property
    def window(self) -> timedelta:
        return self._window

    @staticmethod
    def window_key(tenant_id: str, endpoint_class: str) -> str:
        return f"{tenant_id}:{endpoint_class}"

    def check_and_increment(
        self,
        tenant_id: str,
        endpoint_class: str,
        tier: SubscriptionTier,
    ) -> RateLimitResult:
        """
        Count a request and report whether it fits under the tier's limit.

        The limit is looked up in the catalog on every call.
        """
        limit = self.catalog.rate_limit_for(tier, endpoint_class)
        if is_unlimited(limit):
            return RateLimitResult(allowed=True, limit=UNLIMITED)

        now = self._clock()
        count, start = self._store.increment(
            self.window_key(tenant_id, endpoint_class), now, self._window
        )
        reset_at = start + self._window
        allowed = count <= limit
        remaining = max(0, limit - count)

        if allowed:
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=remaining,
                reset_at=reset_at,
                count=count,
            )

        retry_after = max(0.0, (reset_at - now).total_seconds())
        logger.info(
            "Rate limit exceeded",
            extra={
                "tenant_id": tenant_id,
                "endpoint_class": endpoint_class,
                "tier": tier.value,
                "limit": limit,
                "count": count,
                "retry_after": retry_after,
            },
        )
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after=retry_after,
            count=count,
        )

    def purge_expired(self) -> int:
        return self._store.purge_expired(self._clock(), self._window)
