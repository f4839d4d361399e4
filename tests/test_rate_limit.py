"""
Tests for tiered rate limiting.

Tests cover:
- Fixed-window counting, blocking and reset
- Tier resolution and configuration errors
- Concurrency: exactly `limit` allowed under contention
- Purging expired entries
- Redis store (mocked client) and fallback
- Header and identifier helpers
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
import redis

from postguard.exceptions import ConfigurationError, StoreUnavailableError
from postguard.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitVerdict,
    RedisRateLimitStore,
    Tier,
    TierConfig,
    _CONSUME_SCRIPT,
    build_rate_limiter,
    client_identifier,
    headers_for,
    user_rate_limit_key,
)


def _limiter(clock, general=10, generate=5, window=60):
    return RateLimiter(
        store=InMemoryRateLimitStore(clock=clock),
        tiers={
            Tier.GENERAL: TierConfig(general, window),
            Tier.GENERATE: TierConfig(generate, window),
        },
    )


# ============================================================================
# FIXED WINDOW
# ============================================================================


def test_five_per_minute_sequence(clock):
    """Calls 1-5 allowed with remaining 4..0, the 6th denied."""
    limiter = _limiter(clock)

    remaining = []
    for _ in range(5):
        verdict = limiter.check("user-1", Tier.GENERATE)
        assert verdict.allowed is True
        assert verdict.retry_after_seconds == 0
        remaining.append(verdict.remaining)
    assert remaining == [4, 3, 2, 1, 0]

    denied = limiter.check("user-1", Tier.GENERATE)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after_seconds > 0
    assert denied.limit == 5


def test_retry_after_counts_down(clock):
    """retry_after is the ceiling of the time left in the window."""
    limiter = _limiter(clock, generate=1)
    limiter.check("u", Tier.GENERATE)

    clock.advance(20.5)
    assert limiter.check("u", Tier.GENERATE).retry_after_seconds == 40

    clock.advance(39.0)
    assert limiter.check("u", Tier.GENERATE).retry_after_seconds == 1


def test_window_reset(clock):
    """After the window ends the budget is fresh."""
    limiter = _limiter(clock)
    for _ in range(6):
        limiter.check("user-1", Tier.GENERATE)

    clock.advance(60)
    verdict = limiter.check("user-1", Tier.GENERATE)

    assert verdict.allowed is True
    assert verdict.remaining == 4


def test_denied_calls_do_not_extend_window(clock):
    """Denied requests do not consume or move the window."""
    limiter = _limiter(clock, generate=1)
    limiter.check("u", Tier.GENERATE)
    for _ in range(10):
        clock.advance(5)
        limiter.check("u", Tier.GENERATE)

    clock.advance(10)
    assert limiter.check("u", Tier.GENERATE).allowed is True


def test_reset_at_is_window_end(clock):
    limiter = _limiter(clock)
    start = clock.now
    verdict = limiter.check("u", Tier.GENERAL)
    assert verdict.reset_at == start + 60


def test_keys_are_independent(clock):
    """One identity exhausting its budget does not affect another."""
    limiter = _limiter(clock, generate=1)
    limiter.check("alice", Tier.GENERATE)

    assert limiter.check("alice", Tier.GENERATE).allowed is False
    assert limiter.check("bob", Tier.GENERATE).allowed is True


def test_tiers_are_independent(clock):
    """The same identity has a separate budget per tier."""
    limiter = _limiter(clock, generate=1)
    limiter.check("alice", Tier.GENERATE)

    verdict = limiter.check("alice", Tier.GENERAL)
    assert verdict.allowed is True
    assert verdict.remaining == 9


def test_zero_limit_always_denies(clock):
    limiter = _limiter(clock, generate=0)
    verdict = limiter.check("u", Tier.GENERATE)
    assert verdict.allowed is False
    assert verdict.retry_after_seconds >= 1


def test_tier_string_value_accepted(clock):
    limiter = _limiter(clock)
    assert limiter.check("u", "generate").limit == 5


def test_peek_does_not_consume(clock):
    """peek reports status without spending budget."""
    limiter = _limiter(clock)
    limiter.check("u", Tier.GENERATE)

    for _ in range(3):
        assert limiter.peek("u", Tier.GENERATE).remaining == 4
    assert limiter.peek("new", Tier.GENERATE).remaining == 5


def test_default_tiers_from_settings():
    """Without a tier table the defaults are 10/60 and 5/60."""
    limiter = RateLimiter()
    assert limiter.tiers[Tier.GENERAL] == TierConfig(10, 60)
    assert limiter.tiers[Tier.GENERATE] == TierConfig(5, 60)


# ============================================================================
# CONFIGURATION ERRORS
# ============================================================================


def test_unknown_tier_raises(clock):
    limiter = _limiter(clock)
    with pytest.raises(ConfigurationError, match="Unknown rate-limit tier"):
        limiter.check("u", "premium")


def test_missing_tier_config_raises():
    with pytest.raises(ConfigurationError, match="generate"):
        RateLimiter(tiers={Tier.GENERAL: TierConfig(10, 60)})


def test_non_config_tier_value_raises():
    with pytest.raises(ConfigurationError):
        RateLimiter(tiers={Tier.GENERAL: (10, 60), Tier.GENERATE: TierConfig(5, 60)})


@pytest.mark.parametrize("limit, window", [(-1, 60), (5, 0), (5, -10), (5, 1.5)])
def test_invalid_tier_config(limit, window):
    with pytest.raises(ConfigurationError):
        TierConfig(limit, window)


def test_non_numeric_clock_rejected():
    with pytest.raises(ConfigurationError):
        InMemoryRateLimitStore(clock=lambda: "now")


def test_failing_clock_rejected():
    def broken():
        raise OSError("no clock")

    with pytest.raises(ConfigurationError):
        InMemoryRateLimitStore(clock=broken)


# ============================================================================
# CONCURRENCY
# ============================================================================


def test_concurrent_checks_allow_exactly_limit():
    """N threads released together on one key: exactly L allowed."""
    threads_count, limit = 50, 7
    limiter = RateLimiter(
        tiers={Tier.GENERAL: TierConfig(limit, 60), Tier.GENERATE: TierConfig(limit, 60)}
    )
    barrier = threading.Barrier(threads_count)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        verdict = limiter.check("shared", Tier.GENERATE)
        with lock:
            results.append(verdict)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    allowed = [v for v in results if v.allowed]
    assert len(results) == threads_count
    assert len(allowed) == limit
    assert sorted(v.remaining for v in allowed) == list(range(limit))


def test_concurrent_checks_with_purges():
    """Purging while checking never loses or double-counts a request."""
    limit = 20
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(
        store=store,
        tiers={Tier.GENERAL: TierConfig(limit, 60), Tier.GENERATE: TierConfig(limit, 60)},
    )
    stop = threading.Event()
    allowed = []
    lock = threading.Lock()

    def purger():
        while not stop.is_set():
            store.purge_expired()

    def worker():
        for _ in range(10):
            if limiter.check("shared", Tier.GENERAL).allowed:
                with lock:
                    allowed.append(1)

    p = threading.Thread(target=purger)
    p.start()
    workers = [threading.Thread(target=worker) for _ in range(8)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()
    stop.set()
    p.join()

    assert len(allowed) == limit


# ============================================================================
# PURGING
# ============================================================================


def test_purge_expired(clock):
    store = InMemoryRateLimitStore(clock=clock)
    config = TierConfig(5, 60)
    store.try_consume("a", config)
    clock.advance(30)
    store.try_consume("b", config)

    clock.advance(31)
    assert store.purge_expired() == 1
    assert len(store) == 1


def test_max_entries_triggers_purge(clock):
    """A full store drops expired entries before adding a new key."""
    store = InMemoryRateLimitStore(clock=clock, max_entries=2)
    config = TierConfig(5, 60)
    store.try_consume("a", config)
    store.try_consume("b", config)

    clock.advance(61)
    store.try_consume("c", config)
    assert len(store) == 1


def test_full_store_of_live_keys_does_not_purge_on_every_new_key(clock):
    """After a purge that frees nothing, the next waits for the table to double."""
    store = InMemoryRateLimitStore(clock=clock, max_entries=2)
    config = TierConfig(5, 60)

    with patch.object(store, "_purge_locked", wraps=store._purge_locked) as purge:
        for key in "abcdefgh":
            store.try_consume(key, config)

    # Purges at 2 and 4 live keys; 8 is only reached by the last insert
    assert purge.call_count == 2
    assert len(store) == 8


# ============================================================================
# REDIS STORE
# ============================================================================


def _redis_store(script_result=None, side_effect=None, clock=None):
    client = MagicMock()
    script = MagicMock(return_value=script_result, side_effect=side_effect)
    client.register_script.return_value = script
    store = RedisRateLimitStore(client, prefix="test", clock=clock or (lambda: 1000.0))
    return store, client, script


def test_redis_allowed():
    store, _, script = _redis_store(script_result=[1, 2, 45_000])
    verdict = store.try_consume("generate:u", TierConfig(5, 60))

    assert verdict.allowed is True
    assert verdict.remaining == 3
    assert verdict.reset_at == 1045.0
    script.assert_called_once_with(keys=["test:generate:u"], args=[5, 60_000])


def test_redis_denied():
    store, _, _ = _redis_store(script_result=[0, 5, 12_300])
    verdict = store.try_consume("generate:u", TierConfig(5, 60))

    assert verdict.allowed is False
    assert verdict.remaining == 0
    assert verdict.retry_after_seconds == 13


def test_redis_deny_branch_repairs_missing_ttl():
    """A full counter without a TTL gets one, so it cannot stay full forever."""
    deny_branch = _CONSUME_SCRIPT.split("if current >= limit then", 1)[1]
    deny_branch = deny_branch.split("return {0", 1)[0]

    assert "if ttl < 0 then" in deny_branch
    assert "redis.call('PEXPIRE', KEYS[1], window_ms)" in deny_branch


def test_redis_retries_transient_errors():
    """Connection errors are retried before giving up."""
    store, _, script = _redis_store(
        side_effect=[redis.ConnectionError("down"), [1, 1, 60_000]]
    )
    verdict = store.try_consume("k", TierConfig(5, 60))

    assert verdict.allowed is True
    assert script.call_count == 2


def test_redis_outage_raises_store_unavailable():
    store, _, script = _redis_store(side_effect=redis.ConnectionError("down"))

    with pytest.raises(StoreUnavailableError):
        store.try_consume("k", TierConfig(5, 60))
    assert script.call_count == 3


def test_redis_peek():
    store, client, _ = _redis_store()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = ["5", 30_000]

    verdict = store.peek("k", TierConfig(5, 60))
    assert verdict.allowed is False
    assert verdict.retry_after_seconds == 30


def test_limiter_falls_back_when_store_down(clock):
    """A failing primary store degrades to the fallback store."""
    store, _, _ = _redis_store(side_effect=redis.ConnectionError("down"))
    limiter = RateLimiter(
        store=store,
        fallback=InMemoryRateLimitStore(clock=clock),
        tiers={Tier.GENERAL: TierConfig(10, 60), Tier.GENERATE: TierConfig(1, 60)},
    )

    assert limiter.check("u", Tier.GENERATE).allowed is True
    assert limiter.check("u", Tier.GENERATE).allowed is False


def test_limiter_without_fallback_propagates(clock):
    store, _, _ = _redis_store(side_effect=redis.ConnectionError("down"))
    limiter = RateLimiter(store=store)

    with pytest.raises(StoreUnavailableError):
        limiter.check("u", Tier.GENERATE)


def test_build_rate_limiter_in_memory_without_url():
    limiter = build_rate_limiter(redis_url="")
    assert isinstance(limiter.store, InMemoryRateLimitStore)


# ============================================================================
# HELPERS
# ============================================================================


def test_headers_for_allowed():
    verdict = RateLimitVerdict(
        allowed=True, remaining=3, retry_after_seconds=0, limit=5, reset_at=1060.7
    )
    assert headers_for(verdict) == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "3",
        "X-RateLimit-Reset": "1060",
    }


def test_headers_for_denied_includes_retry_after():
    verdict = RateLimitVerdict(
        allowed=False, remaining=0, retry_after_seconds=42, limit=5, reset_at=1060.0
    )
    assert headers_for(verdict)["Retry-After"] == "42"


def test_user_rate_limit_key():
    assert user_rate_limit_key("abc", "generate") == "rate:user:abc:generate"


def test_client_identifier_prefers_real_ip():
    headers = {"X-Real-IP": "10.0.0.1", "X-Forwarded-For": "1.1.1.1, 2.2.2.2"}
    assert client_identifier(headers) == "ip:10.0.0.1"


def test_client_identifier_uses_rightmost_forwarded():
    """The client-controlled left side of x-forwarded-for is ignored."""
    headers = {"x-forwarded-for": "6.6.6.6, 203.0.113.9"}
    assert client_identifier(headers) == "ip:203.0.113.9"


def test_client_identifier_falls_back_to_user_agent():
    a = client_identifier({"user-agent": "curl/8"})
    b = client_identifier({"user-agent": "curl/8"})

    assert a == b
    assert a.startswith("ua:")
    assert len(a) == len("ua:") + 12
    assert client_identifier({}) == client_identifier({"user-agent": "unknown"})
