"""Quota tiers and per-model token prices."""

from typing import Dict

from agentflow.core.schema import QuotaLimits

DEFAULT_QUOTA = QuotaLimits(
    daily_tokens=100_000, monthly_tokens=2_000_000, daily_cost=1.0, monthly_cost=20.0
)
PRO_QUOTA = QuotaLimits(
    daily_tokens=500_000, monthly_tokens=10_000_000, daily_cost=5.0, monthly_cost=100.0
)
PREMIUM_QUOTA = QuotaLimits(
    daily_tokens=2_000_000, monthly_tokens=50_000_000, daily_cost=20.0, monthly_cost=400.0
)

# user role -> tier; anything else gets DEFAULT_QUOTA
ROLE_QUOTAS: Dict[str, QuotaLimits] = {
    "ADMIN": PREMIUM_QUOTA,
    "VERIFIED": PRO_QUOTA,
}

QUOTA_WARNING_RATIO = 0.8

# USD per 1K tokens
TOKEN_PRICES: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "default": {"input": 0.00015, "output": 0.0006},
}


def quota_for_role(role: str | None) -> QuotaLimits:
    return ROLE_QUOTAS.get(role or "", DEFAULT_QUOTA)
