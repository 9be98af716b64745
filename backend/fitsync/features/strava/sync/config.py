"""
Strava import configuration.

Contains all tunables for import behavior. Defaults come from settings;
tests pass their own SyncConfig.
"""

from dataclasses import dataclass

from fitsync.config import settings


# Strava caps per_page at 200
MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 200

# Bump when the continue token layout changes incompatibly
CONTINUE_TOKEN_VERSION = 1


@dataclass
class SyncConfig:
    """Configuration for import behavior."""

    # How many activities to fetch per API call
    page_size: int = 50

    # Wall-clock budget of one invocation (seconds)
    time_budget_seconds: float = 9.0

    # Minimum time to keep in hand for one more page (seconds)
    page_time_reserve_seconds: float = 1.5

    # How many times to sleep through a rate limit within one invocation
    max_rate_limit_retries: int = 3

    # An IN_PROGRESS run without heartbeat for this long is abandoned
    stale_run_seconds: int = 60

    # Cache entries seen more recently than this are never orphaned
    orphan_grace_seconds: int = 3600

    # HMAC secret for continue tokens
    continue_token_secret: str = "change-me"

    @classmethod
    def from_settings(cls) -> "SyncConfig":
        return cls(
            page_size=settings.page_size,
            time_budget_seconds=settings.time_budget_seconds,
            page_time_reserve_seconds=settings.page_time_reserve_seconds,
            max_rate_limit_retries=settings.max_rate_limit_retries,
            stale_run_seconds=settings.stale_run_seconds,
            orphan_grace_seconds=settings.orphan_grace_seconds,
            continue_token_secret=settings.continue_token_secret,
        )

    def clamp_page_size(self, page_size: int | None) -> int:
        size = page_size if page_size is not None else self.page_size
        return max(MIN_PAGE_SIZE, min(int(size), MAX_PAGE_SIZE))
