"""
Tiered rate limiting for expensive operations.

Design decisions:
- Fixed-window counter: bounded memory (one counter per key) and simple to
  reason about. Windows are short and limits coarse, so the boundary burst
  of a fixed window is acceptable
- Tiers are a closed enum: an unknown tier is a configuration error
- Store abstraction: the limiter only calls `try_consume(key, config)`, so
  the in-memory and Redis backends are interchangeable
- Per-key locking in memory: check-and-increment is atomic per key, and
  different keys never wait on each other
- Redis: check + increment + TTL run inside one Lua script, a single
  logical operation on the server

Limitations:
- In-memory store is per process: N workers means N independent budgets
- Redis outage falls back to the in-memory store when one is configured
  (degraded, per-process protection rather than none)
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Protocol

import redis
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import ConfigurationError, StoreUnavailableError
from .settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Tier(str, Enum):
    GENERAL = "general"
    GENERATE = "generate"


@dataclass(frozen=True)
class TierConfig:
    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if not isinstance(self.limit, int) or self.limit < 0:
            raise ConfigurationError(f"Invalid tier limit: {self.limit!r}")
        if not isinstance(self.window_seconds, int) or self.window_seconds <= 0:
            raise ConfigurationError(f"Invalid tier window: {self.window_seconds!r}")


@dataclass(frozen=True)
class RateLimitVerdict:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    limit: int
    reset_at: float = 0.0


@dataclass
class RateLimitState:
    window_start: float
    count: int
    config: TierConfig

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.config.window_seconds


def default_tiers() -> dict[Tier, TierConfig]:
    return {
        Tier.GENERAL: TierConfig(settings.general_max_requests, settings.general_window_seconds),
        Tier.GENERATE: TierConfig(settings.generate_max_requests, settings.generate_window_seconds),
    }


def _checked_clock(clock: Clock) -> Clock:
    try:
        now = clock()
    except Exception as e:
        raise ConfigurationError("Rate limiter clock is unavailable") from e
    if isinstance(now, bool) or not isinstance(now, (int, float)):
        raise ConfigurationError(f"Rate limiter clock returned {type(now).__name__}")
    return clock


def _retry_after(window_end: float, now: float) -> int:
    return max(1, math.ceil(window_end - now))


class RateLimitStore(Protocol):
    """Backend holding per-key counters."""

    def try_consume(self, key: str, config: TierConfig) -> RateLimitVerdict:
        """Atomically check the budget for `key` and consume one unit if allowed."""
        ...

    def peek(self, key: str, config: TierConfig) -> RateLimitVerdict:
        """Current status without consuming."""
        ...


# ============================================================================
# IN-MEMORY STORE
# ============================================================================


class InMemoryRateLimitStore:
    """
    Dict of counters guarded by one lock per key.

    The registry lock is only held to look up or create a key's lock and
    during purges, never while a counter is being checked.
    A full table is purged, and the next purge waits until the table has
    doubled past the keys that survived.
    """

    def __init__(self, clock: Clock = time.time, max_entries: int = 10_000) -> None:
        self._clock = _checked_clock(clock)
        self._max_entries = max_entries
        self._purge_at = max_entries
        self._states: dict[str, RateLimitState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._states)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                if len(self._locks) >= self._purge_at:
                    self._purge_locked(self._clock())
                    # Live keys survive a purge; wait for the table to double
                    self._purge_at = max(self._max_entries, 2 * len(self._locks))
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _locked(self, key: str, fn: Callable[[], RateLimitVerdict]) -> RateLimitVerdict:
        while True:
            lock = self._lock_for(key)
            with lock:
                # A purge may have retired this lock while we were waiting on it
                if self._locks.get(key) is not lock:
                    continue
                return fn()

    def try_consume(self, key: str, config: TierConfig) -> RateLimitVerdict:
        def consume() -> RateLimitVerdict:
            now = self._clock()
            state = self._states.get(key)
            if state is None or state.expired(now):
                state = RateLimitState(window_start=now, count=0, config=config)
                self._states[key] = state
            state.config = config

            window_end = state.window_start + config.window_seconds
            if state.count >= config.limit:
                return RateLimitVerdict(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=_retry_after(window_end, now),
                    limit=config.limit,
                    reset_at=window_end,
                )

            state.count += 1
            return RateLimitVerdict(
                allowed=True,
                remaining=config.limit - state.count,
                retry_after_seconds=0,
                limit=config.limit,
                reset_at=window_end,
            )

        return self._locked(key, consume)

    def peek(self, key: str, config: TierConfig) -> RateLimitVerdict:
        def read() -> RateLimitVerdict:
            now = self._clock()
            state = self._states.get(key)
            if state is None or state.expired(now):
                return RateLimitVerdict(
                    allowed=config.limit > 0,
                    remaining=config.limit,
                    retry_after_seconds=0,
                    limit=config.limit,
                    reset_at=now + config.window_seconds,
                )
            window_end = state.window_start + config.window_seconds
            allowed = state.count < config.limit
            return RateLimitVerdict(
                allowed=allowed,
                remaining=max(0, config.limit - state.count),
                retry_after_seconds=0 if allowed else _retry_after(window_end, now),
                limit=config.limit,
                reset_at=window_end,
            )

        return self._locked(key, read)

    def purge_expired(self) -> int:
        """Drop counters whose window has ended. Returns the number removed."""
        with self._registry_lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        removed = 0
        for key, lock in list(self._locks.items()):
            if not lock.acquire(blocking=False):
                continue
            try:
                state = self._states.get(key)
                if state is None or state.expired(now):
                    self._states.pop(key, None)
                    del self._locks[key]
                    removed += 1
            finally:
                lock.release()
        if removed:
            logger.info("Purged expired rate-limit entries", extra={"removed": removed})
        return removed


# ============================================================================
# REDIS STORE
# ============================================================================

# KEYS[1] counter key; ARGV[1] limit; ARGV[2] window in ms
# Returns {allowed, count, ttl_ms}
_CONSUME_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl = redis.call('PTTL', KEYS[1])
if current >= limit then
  if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], window_ms)
    ttl = window_ms
  end
  return {0, current, ttl}
end
current = redis.call('INCR', KEYS[1])
if current == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
  ttl = window_ms
end
return {1, current, ttl}
"""

_redis_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
    retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
    reraise=True,
)


class RedisRateLimitStore:
    """
    Counters in Redis: `key -> count` with a TTL equal to the window.

    The window starts at the first allowed request; the key's TTL is the
    time left in the window.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = settings.redis_key_prefix,
        clock: Clock = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = _checked_clock(clock)
        self._consume = client.register_script(_CONSUME_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisRateLimitStore:
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
        return cls(client, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    @_redis_retry
    def _eval_consume(self, key: str, config: TierConfig) -> list[int]:
        return self._consume(
            keys=[self._key(key)], args=[config.limit, config.window_seconds * 1000]
        )

    @_redis_retry
    def _read(self, key: str) -> tuple[str | None, int]:
        pipe = self._client.pipeline()
        pipe.get(self._key(key))
        pipe.pttl(self._key(key))
        raw, ttl = pipe.execute()
        return raw, int(ttl)

    def try_consume(self, key: str, config: TierConfig) -> RateLimitVerdict:
        try:
            allowed, count, ttl_ms = (int(v) for v in self._eval_consume(key, config))
        except redis.RedisError as e:
            raise StoreUnavailableError("Rate-limit store unavailable") from e

        now = self._clock()
        reset_at = now + ttl_ms / 1000
        if not allowed:
            return RateLimitVerdict(
                allowed=False,
                remaining=0,
                retry_after_seconds=_retry_after(reset_at, now),
                limit=config.limit,
                reset_at=reset_at,
            )
        return RateLimitVerdict(
            allowed=True,
            remaining=max(0, config.limit - count),
            retry_after_seconds=0,
            limit=config.limit,
            reset_at=reset_at,
        )

    def peek(self, key: str, config: TierConfig) -> RateLimitVerdict:
        try:
            raw, ttl_ms = self._read(key)
        except redis.RedisError as e:
            raise StoreUnavailableError("Rate-limit store unavailable") from e

        now = self._clock()
        count = int(raw or 0)
        if ttl_ms < 0:
            ttl_ms = config.window_seconds * 1000
        reset_at = now + ttl_ms / 1000
        allowed = count < config.limit
        return RateLimitVerdict(
            allowed=allowed,
            remaining=max(0, config.limit - count),
            retry_after_seconds=0 if allowed else _retry_after(reset_at, now),
            limit=config.limit,
            reset_at=reset_at,
        )


# ============================================================================
# LIMITER
# ============================================================================


class RateLimiter:
    """Resolves tiers and delegates counting to a RateLimitStore."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        tiers: Mapping[Tier, TierConfig] | None = None,
        fallback: RateLimitStore | None = None,
    ) -> None:
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.fallback = fallback
        self.tiers = dict(default_tiers() if tiers is None else tiers)

        missing = [t.value for t in Tier if t not in self.tiers]
        if missing:
            raise ConfigurationError(f"No rate-limit config for tiers: {missing}")
        for tier, config in self.tiers.items():
            if not isinstance(config, TierConfig):
                raise ConfigurationError(f"Tier {tier!r} config is not a TierConfig")

    def _resolve(self, tier: Tier | str) -> tuple[Tier, TierConfig]:
        try:
            resolved = Tier(tier)
        except ValueError:
            raise ConfigurationError(f"Unknown rate-limit tier: {tier!r}") from None
        return resolved, self.tiers[resolved]

    @staticmethod
    def _store_key(key: str, tier: Tier) -> str:
        return f"{tier.value}:{key}"

    def check(self, key: str, tier: Tier | str) -> RateLimitVerdict:
        """
        Consume one unit of `key`'s budget on `tier`.

        Args:
            key: Identity key (see user_rate_limit_key / client_identifier)
            tier: Tier or its string value

        Returns:
            RateLimitVerdict
        """
        resolved, config = self._resolve(tier)
        store_key = self._store_key(key, resolved)
        try:
            return self.store.try_consume(store_key, config)
        except StoreUnavailableError:
            if self.fallback is None:
                raise
            logger.warning(
                "Rate-limit store unavailable, using fallback",
                extra={"error_code": "RATE_STORE_UNAVAILABLE"},
            )
            return self.fallback.try_consume(store_key, config)

    def peek(self, key: str, tier: Tier | str) -> RateLimitVerdict:
        resolved, config = self._resolve(tier)
        store_key = self._store_key(key, resolved)
        try:
            return self.store.peek(store_key, config)
        except StoreUnavailableError:
            if self.fallback is None:
                raise
            return self.fallback.peek(store_key, config)


def build_rate_limiter(redis_url: str | None = None) -> RateLimiter:
    """Redis-backed limiter when a URL is configured, in-memory otherwise."""
    url = settings.redis_url if redis_url is None else redis_url
    if not url:
        return RateLimiter()
    logger.info("Using Redis rate-limit store")
    return RateLimiter(
        store=RedisRateLimitStore.from_url(url),
        fallback=InMemoryRateLimitStore(),
    )


def headers_for(verdict: RateLimitVerdict) -> dict[str, str]:
    """Conventional rate-limit response headers. No state is touched."""
    headers = {
        "X-RateLimit-Limit": str(verdict.limit),
        "X-RateLimit-Remaining": str(verdict.remaining),
        "X-RateLimit-Reset": str(int(verdict.reset_at)),
    }
    if verdict.retry_after_seconds > 0:
        headers["Retry-After"] = str(verdict.retry_after_seconds)
    return headers


def user_rate_limit_key(user_id: str, endpoint: str) -> str:
    return f"rate:user:{user_id}:{endpoint}"


def client_identifier(headers: Mapping[str, str]) -> str:
    """
    Identify an unauthenticated caller from proxy headers.

    x-forwarded-for is client-controlled on the left, so only its rightmost
    entry (added by the trusted proxy) is used.
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    for name in ("x-real-ip", "cf-connecting-ip"):
        value = (lowered.get(name) or "").strip()
        if value:
            return f"ip:{value}"

    forwarded = lowered.get("x-forwarded-for") or ""
    ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
    if ips:
        return f"ip:{ips[-1]}"

    user_agent = lowered.get("user-agent") or "unknown"
    return "ua:" + hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:12]
