"""
Rate limiter for Strava API.

Strava API Limits (defaults, per application):
- 100 requests per 15 minutes
- 1,000 requests per day (resets at midnight UTC)

Local counting is an optimistic approximation between calls. Whenever a
response carries X-RateLimit-Limit / X-RateLimit-Usage headers, the
counters are reconciled to the provider's values.

This is also the single place that computes retry delays: callers ask
backoff_seconds() and only interpret the answer.
"""

import asyncio
import logging
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from fitsync.config import settings

logger = logging.getLogger(__name__)

SHORT_WINDOW_SECONDS = 15 * 60
DAY_SECONDS = 24 * 60 * 60


@dataclass
class RateBudget:
    """Outcome of a budget check."""
    allowed: bool
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None


def _parse_pair(value: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse Strava's "<15min>,<daily>" header format."""
    if not value:
        return None
    parts = value.split(",")
    if len(parts) < 2:
        return None
    try:
        return int(parts[0].strip()), int(parts[1].strip())
    except ValueError:
        return None


class StravaRateLimiter:
    """
    In-memory rate limiter for Strava API.

    Tracks a rolling 15-minute window and a daily count per endpoint key.

    Usage:
        budget = await rate_limiter.check_budget("activities")
        if not budget.allowed:
            ...  # don't call Strava, surface budget.retry_after_seconds
        rate_limiter.reconcile("activities", response.headers)
    """

    def __init__(
        self,
        short_limit: int = 100,
        daily_limit: int = 1000,
        short_window_seconds: int = SHORT_WINDOW_SECONDS,
        base_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
    ):
        self.short_limit = short_limit
        self.daily_limit = daily_limit
        self.short_window = short_window_seconds
        self.base_backoff = base_backoff_seconds
        self.max_backoff = max_backoff_seconds
        self.clock = clock

        self.short_calls: dict[str, list[float]] = defaultdict(list)
        self.daily_counts: dict[str, int] = defaultdict(int)
        self.daily_day: int = self._day(clock())
        # Provider-reported limits override local defaults per key
        self.provider_limits: dict[str, tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _day(now: float) -> int:
        return int(now // DAY_SECONDS)

    def _roll(self, key: str, now: float) -> None:
        day = self._day(now)
        if day != self.daily_day:
            self.daily_counts.clear()
            self.daily_day = day
            logger.info("Daily rate limit counters reset")

        cutoff = now - self.short_window
        self.short_calls[key] = [ts for ts in self.short_calls[key] if ts > cutoff]

    def _limits(self, key: str) -> tuple[int, int]:
        return self.provider_limits.get(key, (self.short_limit, self.daily_limit))

    async def check_budget(self, endpoint_key: str = "global") -> RateBudget:
        """
        Check if a request is allowed and reserve it if so.

        Returns:
            RateBudget(allowed=True) or RateBudget(allowed=False,
            retry_after_seconds=...) when the local budget is spent.
        """
        async with self._lock:
            now = self.clock()
            self._roll(endpoint_key, now)
            short_limit, daily_limit = self._limits(endpoint_key)

            calls = self.short_calls[endpoint_key]
            if len(calls) >= short_limit:
                retry_after = max(1, math.ceil(calls[0] + self.short_window - now))
                logger.warning(
                    f"Strava rate limit hit: {len(calls)}/{short_limit} "
                    f"requests in 15 min for {endpoint_key}, retry in {retry_after}s"
                )
                return RateBudget(False, retry_after, "short_term")

            daily_count = self.daily_counts[endpoint_key]
            if daily_count >= daily_limit:
                retry_after = max(1, math.ceil((self._day(now) + 1) * DAY_SECONDS - now))
                logger.warning(
                    f"Strava daily limit hit: {daily_count}/{daily_limit} "
                    f"for {endpoint_key}, retry in {retry_after}s"
                )
                return RateBudget(False, retry_after, "daily")

            calls.append(now)
            self.daily_counts[endpoint_key] += 1
            return RateBudget(True)

    def reconcile(self, endpoint_key: str, headers: Mapping[str, str]) -> None:
        """
        Align local counters with the provider's authoritative usage.

        Args:
            headers: Response headers (case-insensitive mapping, e.g. httpx.Headers)
        """
        limits = _parse_pair(headers.get("X-RateLimit-Limit"))
        usage = _parse_pair(headers.get("X-RateLimit-Usage"))
        if limits:
            self.provider_limits[endpoint_key] = limits
        if not usage:
            return

        now = self.clock()
        self._roll(endpoint_key, now)
        short_used, daily_used = usage

        calls = self.short_calls[endpoint_key]
        if short_used > len(calls):
            # Unknown call times: count them as made now (conservative)
            calls.extend([now] * (short_used - len(calls)))
        elif short_used < len(calls):
            del calls[: len(calls) - short_used]
        self.daily_counts[endpoint_key] = daily_used

        logger.debug(
            f"Strava rate limit reconciled for {endpoint_key}: "
            f"usage={short_used},{daily_used} limit={self._limits(endpoint_key)}"
        )

    def backoff_seconds(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before retry number `attempt` (0-based).

        The provider's Retry-After hint wins when present; otherwise
        capped exponential backoff.
        """
        if retry_after is not None and retry_after >= 0:
            return float(retry_after)
        return min(self.base_backoff * (2 ** max(attempt, 0)), self.max_backoff)

    def get_usage(self, endpoint_key: str = "global") -> dict:
        """Get current rate limit usage."""
        now = self.clock()
        cutoff = now - self.short_window
        short_count = len([ts for ts in self.short_calls[endpoint_key] if ts > cutoff])
        short_limit, daily_limit = self._limits(endpoint_key)
        daily_used = self.daily_counts[endpoint_key] if self._day(now) == self.daily_day else 0

        return {
            "short_term": {
                "used": short_count,
                "limit": short_limit,
                "window_minutes": self.short_window // 60
            },
            "daily": {
                "used": daily_used,
                "limit": daily_limit,
                "resets_at": datetime.fromtimestamp(
                    (self._day(now) + 1) * DAY_SECONDS, tz=timezone.utc
                ).isoformat()
            }
        }


# Global rate limiter instance
rate_limiter = StravaRateLimiter(
    short_limit=settings.rate_limit_short,
    daily_limit=settings.rate_limit_daily,
)
