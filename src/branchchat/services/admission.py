"""Two-tier admission for outgoing user messages.

A send is admitted only when both the user tier (anonymous or free daily
allowance) and the model cost tier (daily and monthly) allow it. All tiers
are checked as one unit, so a denial on any tier consumes nothing.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Tuple

from ..domain.chat_models import AdmissionStatus, TierStatus
from ..domain.errors import RateLimited
from ..observability.metrics import ADMISSION_DENIED
from ..security.auth import Identity
from ..security.rate_limit import RateLimiter, RateLimitResult, get_rate_limiter


_logger = logging.getLogger("branchchat.admission")

DEFAULT_COST_TIER = "medium"

MODEL_COST_MAPPING = {
    # Free models
    "google/gemini-2.0-flash-exp:free": "free",
    "meta-llama/llama-3.3-8b-instruct:free": "free",
    # Low cost models
    "openai/gpt-4o-mini": "low",
    "openai/gpt-3.5-turbo": "low",
    # Medium cost models
    "openai/gpt-4o-mini-search-preview": "medium",
    "anthropic/claude-3.7-sonnet": "medium",
    "anthropic/claude-3.5-sonnet": "medium",
    "anthropic/claude-3-haiku": "medium",
    "gemini-2.5-pro": "medium",
    "google/gemini-2.0-flash-001": "medium",
    # High cost models
    "openai/gpt-4.1": "high",
    "anthropic/claude-sonnet-4": "high",
    # Premium models
    "openai/o1-pro": "premium",
}

_TIER_LIMIT_PREFIX = {
    "free": "freeModels",
    "low": "lowCostModels",
    "medium": "mediumCostModels",
    "high": "highCostModels",
    "premium": "premiumModels",
}

_USER_LIMITS = {
    "anonymous": "anonymousDaily",
    "free": "freeUserDaily",
}


def cost_tier_for(model: Optional[str]) -> str:
    return MODEL_COST_MAPPING.get(model or "", DEFAULT_COST_TIER)


def model_limit_name(model: Optional[str], period: str) -> str:
    prefix = _TIER_LIMIT_PREFIX[cost_tier_for(model)]
    return f"{prefix}{'Daily' if period == 'daily' else 'Monthly'}"


def user_limit_name(user_type: str) -> Optional[str]:
    """Paid users have no user-tier limit."""
    return _USER_LIMITS.get(user_type)


def _paid_model_limits_enabled() -> bool:
    flag = os.getenv("BRANCHCHAT_PAID_MODEL_LIMITS")
    return flag is None or flag.lower() in {"1", "true", "yes", "on"}


class AdmissionController:
    def __init__(self, limiter: Optional[RateLimiter] = None) -> None:
        self._limiter = limiter or get_rate_limiter()

    def _plan(self, identity: Identity, model: Optional[str]) -> List[Tuple[str, str, str]]:
        """Return ``(tier, limit_name, subject_key)`` rows that apply to this send."""
        rows: List[Tuple[str, str, str]] = []
        user_limit = user_limit_name(identity.user_type)
        if user_limit:
            rows.append(("user", user_limit, identity.subject_key))
        if identity.user_type != "paid" or _paid_model_limits_enabled():
            rows.append(("model_daily", model_limit_name(model, "daily"), identity.subject_key))
            rows.append(("model_monthly", model_limit_name(model, "monthly"), identity.subject_key))
        return rows

    def admit_send(self, identity: Identity, model: Optional[str]) -> None:
        """Consume one unit from every applicable tier or raise ``RateLimited``."""
        plan = self._plan(identity, model)
        if not plan:
            return
        results = self._limiter.check_all([(name, subject) for _, name, subject in plan], consume=True)
        denied = [(row, result) for row, result in zip(plan, results) if not result.ok]
        if not denied:
            return
        (tier, limit_name, _), result = max(denied, key=lambda pair: pair[1].retry_after_ms)
        ADMISSION_DENIED.labels(limit_name=limit_name).inc()
        _logger.info(
            "admission_denied",
            extra={
                "subject": identity.subject_key,
                "limit_name": limit_name,
                "retry_after_ms": result.retry_after_ms,
            },
        )
        if tier == "user":
            message = (
                "Daily message limit reached. Sign in for more messages."
                if identity.is_anonymous
                else "Daily message limit reached."
            )
        else:
            message = f"Usage limit reached for {cost_tier_for(model)} cost models."
        raise RateLimited(
            message,
            retry_after_ms=result.retry_after_ms,
            limit_name=limit_name,
            suggestion="Try again later or pick a model from a cheaper tier",
        )

    def status(self, identity: Identity, model: Optional[str]) -> AdmissionStatus:
        """Report every applicable tier without consuming quota."""
        plan = self._plan(identity, model)
        by_tier = {}
        for tier, limit_name, subject in plan:
            result: RateLimitResult = self._limiter.check(subject, limit_name, consume=False)
            by_tier[tier] = TierStatus(
                limit_name=limit_name,
                ok=result.ok,
                retry_after_ms=result.retry_after_ms,
                remaining=result.remaining,
                total=self._limiter.policy(limit_name).total,
            )
        return AdmissionStatus(
            can_send=all(t.ok for t in by_tier.values()),
            user_type=identity.user_type,
            **by_tier,
        )
