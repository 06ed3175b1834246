"""
Per-user usage counters in Redis, with an in-process fallback.

Redis keys::

    token:daily:{user_id}:{YYYY-MM-DD}    hash {tokens, cost, calls}, expires after 2 days
    token:monthly:{user_id}:{YYYY-MM}     hash {tokens, cost, calls}, expires after 35 days

Writes go through one pipeline of atomic ``HINCRBY``/``HINCRBYFLOAT`` so concurrent requests never
race on read-modify-write.  When Redis is not configured, unreachable, or a command fails, the
counters live in a bounded TTL cache local to the process.
"""

import logging
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Callable,
    Optional,
    Tuple,
)

import redis.asyncio as aioredis

from agentflow.common import TTLCache
from agentflow.core.schema import UsageBucket

logger = logging.getLogger(__name__)

DAILY_TTL_S = 86400 * 2
MONTHLY_TTL_S = 86400 * 35
FALLBACK_MAX_USERS = 1000
FALLBACK_TTL_S = 3600


def period_keys(now: datetime) -> Tuple[str, str]:
    """Return the (``YYYY-MM-DD``, ``YYYY-MM``) bucket keys of *now* in UTC."""
    date_key = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
    return date_key, date_key[:7]


@dataclass
class _LocalEntry:
    date: str
    month: str
    daily: UsageBucket = field(default_factory=UsageBucket)
    monthly: UsageBucket = field(default_factory=UsageBucket)


class UsageStore:
    """
    Daily and monthly usage buckets per user.

    Args:
        client: Connected ``redis.asyncio`` client, or *None* to count locally only
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client
        self.available = client is not None
        self._clock = clock
        self._fallback: TTLCache[str, _LocalEntry] = TTLCache(
            max_size=FALLBACK_MAX_USERS, ttl_s=FALLBACK_TTL_S
        )

    @classmethod
    async def connect(cls, url: Optional[str]) -> "UsageStore":
        """Connect to Redis at *url*; fall back to local counters when that is not possible."""
        if not url:
            logger.info("Usage store: using in-memory counters (no Redis configured)")
            return cls()
        client = aioredis.from_url(url, decode_responses=True)
        try:
            await client.ping()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Usage store: Redis unavailable (%s), using in-memory counters", exc)
            await client.aclose()
            return cls()
        logger.info("Usage store: Redis connected (%s)", url)
        return cls(client)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    @property
    def backend(self) -> str:
        return "redis" if self.available else "memory"

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    async def increment(self, user_id: str, tokens: int, cost: float) -> None:
        """Add one call with *tokens* and *cost* to today's and this month's buckets."""
        date_key, month_key = period_keys(self._clock())

        if self.available:
            try:
                pipe = self.client.pipeline()
                daily_key = f"token:daily:{user_id}:{date_key}"
                pipe.hincrby(daily_key, "tokens", tokens)
                pipe.hincrbyfloat(daily_key, "cost", cost)
                pipe.hincrby(daily_key, "calls", 1)
                pipe.expire(daily_key, DAILY_TTL_S)
                monthly_key = f"token:monthly:{user_id}:{month_key}"
                pipe.hincrby(monthly_key, "tokens", tokens)
                pipe.hincrbyfloat(monthly_key, "cost", cost)
                pipe.hincrby(monthly_key, "calls", 1)
                pipe.expire(monthly_key, MONTHLY_TTL_S)
                await pipe.execute()
                return
            except Exception as exc:  # noqa: BLE001
                logger.debug("Redis increment failed, using fallback: %s", exc)

        entry = self._local_entry(user_id, date_key, month_key)
        for bucket in (entry.daily, entry.monthly):
            bucket.tokens += tokens
            bucket.cost += cost
            bucket.calls += 1

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    async def get(self, user_id: str) -> Tuple[UsageBucket, UsageBucket]:
        """Return (today, this month) for *user_id*."""
        date_key, month_key = period_keys(self._clock())

        if self.available:
            try:
                daily = await self.client.hgetall(f"token:daily:{user_id}:{date_key}")
                monthly = await self.client.hgetall(f"token:monthly:{user_id}:{month_key}")
                return _bucket(daily), _bucket(monthly)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Redis read failed, using fallback: %s", exc)

        entry = self._fallback.get(user_id)
        daily = entry.daily if entry and entry.date == date_key else UsageBucket()
        monthly = entry.monthly if entry and entry.month == month_key else UsageBucket()
        return daily.model_copy(), monthly.model_copy()

    # ------------------------------------------------------------------ #
    # Local fallback
    # ------------------------------------------------------------------ #
    def _local_entry(self, user_id: str, date_key: str, month_key: str) -> _LocalEntry:
        entry = self._fallback.get(user_id) or _LocalEntry(date=date_key, month=month_key)
        # every write renews the entry's TTL
        self._fallback.set(user_id, entry)
        # a bucket whose period has rolled over starts from zero
        if entry.date != date_key:
            entry.date, entry.daily = date_key, UsageBucket()
        if entry.month != month_key:
            entry.month, entry.monthly = month_key, UsageBucket()
        return entry

    def fallback_size(self) -> int:
        return len(self._fallback)


def _bucket(raw: dict) -> UsageBucket:
    return UsageBucket(
        tokens=int(raw.get("tokens") or 0),
        cost=float(raw.get("cost") or 0),
        calls=int(raw.get("calls") or 0),
    )
