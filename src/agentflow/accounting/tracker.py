"""
Token tracking and quota enforcement.

:class:`TokenTracker` prices model calls, accumulates per-user daily/monthly usage in a
:class:`~agentflow.accounting.store.UsageStore`, appends every call to the durable
:class:`~agentflow.accounting.usage_log.UsageLog`, and answers quota questions.  Nothing here ever
raises into the caller's turn: persistence and warnings run as background tasks whose failures
are logged.
"""

import asyncio
import logging
from typing import (
    Any,
    Dict,
    Mapping,
    Optional,
    Set,
)

from agentflow.accounting.quotas import (
    DEFAULT_QUOTA,
    QUOTA_WARNING_RATIO,
    TOKEN_PRICES,
    quota_for_role,
)
from agentflow.accounting.store import UsageStore
from agentflow.accounting.tokenizer import Tokenizer
from agentflow.accounting.usage_log import UsageLog
from agentflow.core.schema import (
    QuotaCheck,
    QuotaLimits,
    TokenUsage,
    UsageStats,
)
from agentflow.memory.data_access import DataAccess

logger = logging.getLogger(__name__)


class TokenTracker:
    """
    Args:
        store: Usage counters
        tokenizer: Token counter shared with the gateway's context-window check
        usage_log: Durable append log, or *None* to skip persistence
        data_access: Role lookup for quota tiers, or *None* to give everyone the default tier
    """

    def __init__(
        self,
        store: Optional[UsageStore] = None,
        tokenizer: Optional[Tokenizer] = None,
        usage_log: Optional[UsageLog] = None,
        data_access: Optional[DataAccess] = None,
    ) -> None:
        self.store = store or UsageStore()
        self.tokenizer = tokenizer or Tokenizer()
        self.usage_log = usage_log
        self.data_access = data_access
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Pricing
    # ------------------------------------------------------------------ #
    @staticmethod
    def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
        prices = TOKEN_PRICES.get(model, TOKEN_PRICES["default"])
        return prompt_tokens / 1000 * prices["input"] + completion_tokens / 1000 * prices["output"]

    def parse_usage(self, response_usage: Optional[Mapping[str, Any]], model: str) -> TokenUsage:
        """Build a priced :class:`TokenUsage` from a provider ``usage`` object."""
        response_usage = response_usage or {}
        prompt = int(response_usage.get("prompt_tokens") or 0)
        completion = int(response_usage.get("completion_tokens") or 0)
        total = int(response_usage.get("total_tokens") or prompt + completion)
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            estimated_cost=self.calculate_cost(model, prompt, completion),
            model=model,
        )

    # ------------------------------------------------------------------ #
    # Tracking
    # ------------------------------------------------------------------ #
    async def track_usage(
        self, user_id: str, usage: TokenUsage, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Count *usage* against *user_id*; persist and check quota in the background."""
        await self.store.increment(user_id, usage.total_tokens, usage.estimated_cost)

        if self.usage_log is not None:
            self._spawn(self._persist(user_id, usage, metadata))
        self._spawn(self._check_quota_warning(user_id))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for outstanding background persistence and warning tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _persist(self, user_id: str, usage: TokenUsage, metadata: Optional[Dict[str, Any]]) -> None:
        try:
            await self.usage_log.append(user_id, usage, metadata)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist usage: %s", exc)

    async def _check_quota_warning(self, user_id: str) -> None:
        try:
            stats = await self.get_usage_stats(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Quota warning check failed: %s", exc)
            return
        quota = stats.quota
        if stats.today.tokens > quota.daily_tokens * QUOTA_WARNING_RATIO:
            logger.warning(
                "User %s approaching daily token limit: %d/%d",
                user_id,
                stats.today.tokens,
                quota.daily_tokens,
            )
        if stats.today.cost > quota.daily_cost * QUOTA_WARNING_RATIO:
            logger.warning(
                "User %s approaching daily cost limit: $%.2f/$%s",
                user_id,
                stats.today.cost,
                quota.daily_cost,
            )

    # ------------------------------------------------------------------ #
    # Quotas
    # ------------------------------------------------------------------ #
    async def get_user_quota(self, user_id: str) -> QuotaLimits:
        if self.data_access is None:
            return DEFAULT_QUOTA
        try:
            role = await self.data_access.get_user_role(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Role lookup failed for %s, using default quota: %s", user_id, exc)
            return DEFAULT_QUOTA
        return quota_for_role(role)

    async def get_usage_stats(self, user_id: str) -> UsageStats:
        quota = await self.get_user_quota(user_id)
        today, month = await self.store.get(user_id)
        return UsageStats(
            today=today,
            this_month=month,
            quota=quota,
            remaining=QuotaLimits(
                daily_tokens=max(0, quota.daily_tokens - today.tokens),
                monthly_tokens=max(0, quota.monthly_tokens - month.tokens),
                daily_cost=max(0.0, quota.daily_cost - today.cost),
                monthly_cost=max(0.0, quota.monthly_cost - month.cost),
            ),
        )

    async def check_quota(self, user_id: str) -> QuotaCheck:
        """
        Compare current usage with the user's tier.

        Limits are checked in the order daily tokens, daily cost, monthly tokens, monthly cost;
        the first one reached is reported.
        """
        stats = await self.get_usage_stats(user_id)
        quota = stats.quota

        reason = None
        if stats.today.tokens >= quota.daily_tokens:
            reason = f"Daily token limit reached ({quota.daily_tokens:,})"
        elif stats.today.cost >= quota.daily_cost:
            reason = f"Daily cost limit reached (${quota.daily_cost})"
        elif stats.this_month.tokens >= quota.monthly_tokens:
            reason = f"Monthly token limit reached ({quota.monthly_tokens:,})"
        elif stats.this_month.cost >= quota.monthly_cost:
            reason = f"Monthly cost limit reached (${quota.monthly_cost})"

        return QuotaCheck(allowed=reason is None, reason=reason, usage=stats)
