import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.branchchat.domain.errors import NotFound
from src.branchchat.security.rate_limit import (
    DEFAULT_POLICIES,
    FIXED_WINDOW,
    TOKEN_BUCKET,
    RateLimitPolicy,
    RateLimiter,
    load_policy_table,
)

HOUR_MS = 60 * 60 * 1000


def _limiter(clock, **policies):
    return RateLimiter(policies=policies, clock=clock)


def test_fixed_window_caps_and_reports_retry(clock):
    clock.now = 10 * HOUR_MS + 1000
    limiter = _limiter(clock, logins=RateLimitPolicy(FIXED_WINDOW, 5, HOUR_MS))
    for _ in range(5):
        assert limiter.check("user-1", "logins").ok
    denied = limiter.check("user-1", "logins")
    assert not denied.ok
    assert 0 < denied.retry_after_ms <= HOUR_MS
    assert denied.retry_after_ms == HOUR_MS - 1000


def test_fixed_window_resets_at_window_boundary(clock):
    clock.now = 10 * HOUR_MS
    limiter = _limiter(clock, logins=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS))
    assert limiter.check("u", "logins").ok
    assert not limiter.check("u", "logins").ok
    clock.advance(HOUR_MS)
    assert limiter.check("u", "logins").ok


def test_token_bucket_refills_continuously(clock):
    period = 1000
    limiter = _limiter(clock, burst=RateLimitPolicy(TOKEN_BUCKET, 5, period, capacity=10))
    for _ in range(10):
        assert limiter.check("u", "burst").ok
    denied = limiter.check("u", "burst")
    assert not denied.ok
    assert denied.retry_after_ms == period // 5

    clock.advance(period // 5)
    assert limiter.check("u", "burst").ok
    assert not limiter.check("u", "burst").ok


def test_subjects_are_isolated(clock):
    limiter = _limiter(clock, once=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS))
    assert limiter.check("a", "once").ok
    assert limiter.check("b", "once").ok
    assert not limiter.check("a", "once").ok


def test_peek_does_not_consume(clock):
    limiter = _limiter(clock, once=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS))
    peek = limiter.check("a", "once", consume=False)
    assert peek.ok and peek.remaining == 1
    assert limiter.check("a", "once").ok


def test_check_all_is_all_or_nothing(clock):
    limiter = _limiter(
        clock,
        tight=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS),
        loose=RateLimitPolicy(FIXED_WINDOW, 5, HOUR_MS),
    )
    first = limiter.check_all([("tight", "u"), ("loose", "u")])
    assert all(r.ok for r in first)

    second = limiter.check_all([("tight", "u"), ("loose", "u")])
    assert [r.ok for r in second] == [False, True]
    # The denied unit consumed nothing on the loose limit
    assert limiter.check("u", "loose", consume=False).remaining == 4


def test_unknown_limit_is_not_found(clock):
    limiter = _limiter(clock)
    with pytest.raises(NotFound) as exc:
        limiter.check("u", "nope")
    assert exc.value.code == "LIMIT_NOT_FOUND"


def test_disabled_flag_always_admits(monkeypatch, clock):
    monkeypatch.setenv("BRANCHCHAT_RATE_LIMIT_DISABLED", "1")
    limiter = _limiter(clock, once=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS))
    assert all(limiter.check("u", "once").ok for _ in range(5))


def test_reset_clears_counters(clock):
    limiter = _limiter(clock, once=RateLimitPolicy(FIXED_WINDOW, 1, HOUR_MS))
    limiter.check("u", "once")
    limiter.reset()
    assert limiter.check("u", "once").ok


def test_policy_validation():
    with pytest.raises(ValueError):
        RateLimitPolicy("leaky", 1, 1000)
    with pytest.raises(ValueError):
        RateLimitPolicy(FIXED_WINDOW, 0, 1000)


def test_policy_file_overrides_defaults(tmp_path, monkeypatch):
    path = tmp_path / "limits.json"
    path.write_text(
        json.dumps({"anonymousDaily": {"algorithm": "token bucket", "rate": 3, "period_ms": 1000, "capacity": 4}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("BRANCHCHAT_RATE_LIMIT_POLICY_FILE", str(path))
    table = load_policy_table()
    assert table["anonymousDaily"] == RateLimitPolicy(TOKEN_BUCKET, 3, 1000, 4)
    assert table["freeUserDaily"] == DEFAULT_POLICIES["freeUserDaily"]


def test_default_table_shape():
    assert DEFAULT_POLICIES["anonymousDaily"].algorithm == FIXED_WINDOW
    assert DEFAULT_POLICIES["freeUserDaily"].total == 120
    assert DEFAULT_POLICIES["premiumModelsMonthly"].rate == 50


def test_concurrent_checks_do_not_lose_updates(clock):
    limiter = _limiter(
        clock,
        wide=RateLimitPolicy(FIXED_WINDOW, 10_000, HOUR_MS),
        capped=RateLimitPolicy(TOKEN_BUCKET, 1, HOUR_MS, 100),
    )
    workers, per_worker = 8, 50
    start = threading.Barrier(workers)

    def hammer():
        start.wait()
        return [(limiter.check("u", "wide").ok, limiter.check("u", "capped").ok) for _ in range(per_worker)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = [pair for chunk in pool.map(lambda _: hammer(), range(workers)) for pair in chunk]

    assert all(wide for wide, _ in results)
    assert limiter.check("u", "wide", consume=False).remaining == 10_000 - workers * per_worker
    # Exactly the bucket capacity was admitted, never more
    assert sum(1 for _, capped in results if capped) == 100
