from __future__ import annotations

"""Keyed rate-limit state with fixed-window and token-bucket algorithms.

State lives in an explicit store keyed by ``(limit_name, subject_key)``. Every
read-modify-write happens while holding the per-key lock, so two rapid checks
for the same subject both consume instead of racing on a stale count.
"""

import json
import logging
import math
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..domain.errors import NotFound


_logger = logging.getLogger("branchchat.rate_limit")

SECOND_MS = 1000
HOUR_MS = 60 * 60 * SECOND_MS
DAY_MS = 24 * HOUR_MS

FIXED_WINDOW = "fixed_window"
TOKEN_BUCKET = "token_bucket"
ALGORITHMS = (FIXED_WINDOW, TOKEN_BUCKET)


@dataclass(frozen=True)
class RateLimitPolicy:
    algorithm: str
    rate: int
    period_ms: int
    capacity: Optional[int] = None

    def __post_init__(self) -> None:
        if self.algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown rate limit algorithm: {self.algorithm}")
        if self.rate <= 0 or self.period_ms <= 0:
            raise ValueError("rate and period_ms must be positive")
        if self.capacity is not None and self.capacity <= 0:
            raise ValueError("capacity must be positive")

    @property
    def total(self) -> int:
        if self.algorithm == TOKEN_BUCKET:
            return self.capacity or self.rate
        return self.rate


def _fixed(rate: int, period_ms: int) -> RateLimitPolicy:
    return RateLimitPolicy(FIXED_WINDOW, rate, period_ms)


def _bucket(rate: int, period_ms: int, capacity: Optional[int] = None) -> RateLimitPolicy:
    return RateLimitPolicy(TOKEN_BUCKET, rate, period_ms, capacity)


DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    # User tiers
    "anonymousDaily": _fixed(10, DAY_MS),
    "freeUserDaily": _bucket(100, DAY_MS, 120),
    # Model cost tiers
    "freeModelsDaily": _bucket(50, DAY_MS, 60),
    "freeModelsMonthly": _fixed(500, 30 * DAY_MS),
    "lowCostModelsDaily": _bucket(25, DAY_MS, 35),
    "lowCostModelsMonthly": _fixed(300, 30 * DAY_MS),
    "mediumCostModelsDaily": _bucket(15, DAY_MS, 20),
    "mediumCostModelsMonthly": _fixed(150, 30 * DAY_MS),
    "highCostModelsDaily": _bucket(10, DAY_MS, 12),
    "highCostModelsMonthly": _fixed(100, 30 * DAY_MS),
    "premiumModelsDaily": _bucket(5, DAY_MS, 7),
    "premiumModelsMonthly": _fixed(50, 30 * DAY_MS),
    # Special limits
    "failedLogins": _fixed(5, HOUR_MS),
    "conversationCreation": _bucket(50, HOUR_MS, 60),
}


@dataclass
class TokenBucketState:
    tokens: float
    last_refill: int


@dataclass
class FixedWindowState:
    window_start: int
    count: int


LimitState = Union[TokenBucketState, FixedWindowState]


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after_ms: int = 0
    remaining: int = 0


def evaluate_fixed_window(
    policy: RateLimitPolicy,
    state: Optional[FixedWindowState],
    now: int,
    consume: bool = True,
) -> Tuple[RateLimitResult, Optional[FixedWindowState]]:
    """Hard cap of ``rate`` events per window aligned to ``period_ms`` since epoch."""
    window_start = now - (now % policy.period_ms)
    count = state.count if state is not None and state.window_start == window_start else 0
    if count + 1 > policy.rate:
        retry_after = max(1, window_start + policy.period_ms - now)
        return RateLimitResult(ok=False, retry_after_ms=retry_after, remaining=0), None
    if not consume:
        return RateLimitResult(ok=True, remaining=policy.rate - count), None
    new_state = FixedWindowState(window_start=window_start, count=count + 1)
    return RateLimitResult(ok=True, remaining=policy.rate - count - 1), new_state


def evaluate_token_bucket(
    policy: RateLimitPolicy,
    state: Optional[TokenBucketState],
    now: int,
    consume: bool = True,
) -> Tuple[RateLimitResult, Optional[TokenBucketState]]:
    """Continuous refill at ``rate`` tokens per ``period_ms`` up to ``capacity``."""
    capacity = policy.total
    if state is None:
        tokens = float(capacity)
    else:
        elapsed = max(0, now - state.last_refill)
        tokens = min(float(capacity), state.tokens + elapsed * policy.rate / policy.period_ms)
    if tokens < 1:
        deficit = 1 - tokens
        retry_after = max(1, math.ceil(deficit * policy.period_ms / policy.rate))
        return RateLimitResult(ok=False, retry_after_ms=retry_after, remaining=0), None
    if not consume:
        return RateLimitResult(ok=True, remaining=int(tokens)), None
    new_state = TokenBucketState(tokens=tokens - 1, last_refill=now)
    return RateLimitResult(ok=True, remaining=int(tokens - 1)), new_state


def evaluate(
    policy: RateLimitPolicy,
    state: Optional[LimitState],
    now: int,
    consume: bool = True,
) -> Tuple[RateLimitResult, Optional[LimitState]]:
    if policy.algorithm == FIXED_WINDOW:
        fw_state = state if isinstance(state, FixedWindowState) else None
        return evaluate_fixed_window(policy, fw_state, now, consume)
    tb_state = state if isinstance(state, TokenBucketState) else None
    return evaluate_token_bucket(policy, tb_state, now, consume)


StateKey = Tuple[str, str]


class RateLimitStateStore:
    """Map of ``(limit_name, subject_key)`` to counters behind per-key locks."""

    def __init__(self) -> None:
        self._states: Dict[StateKey, LimitState] = {}
        self._locks: Dict[StateKey, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, key: StateKey) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, keys: Sequence[StateKey]) -> Iterator[None]:
        # Sorted acquisition keeps multi-key checks deadlock free
        ordered = sorted(set(keys))
        locks = [self._lock_for(key) for key in ordered]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def get(self, key: StateKey) -> Optional[LimitState]:
        return self._states.get(key)

    def put(self, key: StateKey, state: LimitState) -> None:
        self._states[key] = state

    def clear(self) -> None:
        with self._guard:
            self._states.clear()
            self._locks.clear()


def _now_ms() -> int:
    return int(time.time() * 1000)


def load_policy_table(path: Optional[str] = None) -> Dict[str, RateLimitPolicy]:
    """Defaults merged with the JSON table named by BRANCHCHAT_RATE_LIMIT_POLICY_FILE.

    File format: ``{"limitName": {"algorithm": "token_bucket", "rate": 5,
    "period_ms": 3600000, "capacity": 7}}``.
    """
    table = dict(DEFAULT_POLICIES)
    path = path or os.getenv("BRANCHCHAT_RATE_LIMIT_POLICY_FILE")
    if not path:
        return table
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    for name, cfg in raw.items():
        algorithm = str(cfg.get("algorithm", "")).replace(" ", "_").replace("-", "_").lower()
        table[name] = RateLimitPolicy(
            algorithm=algorithm,
            rate=int(cfg["rate"]),
            period_ms=int(cfg["period_ms"]),
            capacity=int(cfg["capacity"]) if cfg.get("capacity") is not None else None,
        )
    _logger.info("rate_limit_policies_loaded", extra={"path": path, "limits": sorted(raw)})
    return table


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("BRANCHCHAT_RATE_LIMIT_DISABLED")
    return bool(flag and flag.lower() in {"1", "true", "yes", "on"})


class RateLimiter:
    def __init__(
        self,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        store: Optional[RateLimitStateStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._policies = dict(policies) if policies is not None else load_policy_table()
        self._store = store or RateLimitStateStore()
        self._clock = clock or _now_ms

    def policy(self, limit_name: str) -> RateLimitPolicy:
        policy = self._policies.get(limit_name)
        if policy is None:
            raise NotFound(f"Unknown rate limit: {limit_name}", code="LIMIT_NOT_FOUND")
        return policy

    def check(self, subject_key: str, limit_name: str, consume: bool = True) -> RateLimitResult:
        return self.check_all([(limit_name, subject_key)], consume=consume)[0]

    def check_all(self, checks: Sequence[Tuple[str, str]], consume: bool = True) -> List[RateLimitResult]:
        """Evaluate several ``(limit_name, subject_key)`` pairs as one unit.

        Quota is consumed only when every check passes; a denial leaves all
        counters untouched.
        """
        policies = [self.policy(name) for name, _ in checks]
        if _rate_limiting_disabled():
            return [RateLimitResult(ok=True, remaining=p.total) for p in policies]
        keys = [(name, subject) for name, subject in checks]
        with self._store.locked(keys):
            now = self._clock()
            results: List[RateLimitResult] = []
            pending: Dict[StateKey, LimitState] = {}
            for key, policy in zip(keys, policies):
                state = pending.get(key) or self._store.get(key)
                result, new_state = evaluate(policy, state, now, consume=consume)
                results.append(result)
                if new_state is not None:
                    pending[key] = new_state
            if consume and all(r.ok for r in results):
                for key, state in pending.items():
                    self._store.put(key, state)
            return results

    def reset(self) -> None:
        """Clear in-memory counters (useful for tests)."""
        self._store.clear()


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter