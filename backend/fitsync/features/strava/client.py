"""
Strava API client.

Provides the paginated activity listing used by the importer.
Every call goes through the rate limiter and the "strava-api" circuit
breaker, with an explicit timeout. Transport exceptions never leave this
module: they are translated into the StravaError hierarchy below.

Strava API Limits:
- 100 requests per 15 minutes
- 1,000 requests per day
"""

import logging
import math
import time
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import httpx

from fitsync.config import settings
from .circuit_breaker import CircuitBreaker
from .rate_limiter import StravaRateLimiter, rate_limiter as default_rate_limiter, SHORT_WINDOW_SECONDS

logger = logging.getLogger(__name__)

ACTIVITIES_ENDPOINT = "activities"
MAX_PER_PAGE = 200


# =============================================================================
# Exceptions
# =============================================================================

class StravaError(Exception):
    """Base Strava error."""

    code = "strava_error"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds


class StravaAPIError(StravaError):
    """Strava answered with an unexpected client error (4xx)."""
    code = "provider_error"


class StravaUnavailableError(StravaError):
    """Strava unreachable: timeout, network failure, 5xx, malformed body."""
    code = "provider_unavailable"
    retryable = True


class StravaAuthError(StravaError):
    """Authentication/authorization error (401)."""
    code = "unauthorized"


class StravaTokenRejectedError(StravaAuthError):
    """Refresh token rejected by the token endpoint; user must re-authorize."""
    code = "refresh_token_rejected"


class StravaRateLimitError(StravaError):
    """Rate limit exceeded (provider 429 or local budget spent)."""
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, local: bool = False, **kwargs):
        super().__init__(message, retry_after_seconds=retry_after_seconds, **kwargs)
        self.local = local


# Responses that prove Strava is up; they don't count against the breaker
PROVIDER_ANSWERED = (StravaAPIError, StravaAuthError, StravaRateLimitError)


# =============================================================================
# Helpers
# =============================================================================

def parse_retry_after(headers: Mapping[str, str], now: Optional[float] = None) -> Optional[int]:
    """
    Seconds to wait according to a 429 response.

    Uses Retry-After (seconds or HTTP date) when present. Strava usually
    omits it, in which case an exhausted 15-minute usage means waiting
    for the next quarter-hour boundary.
    """
    now = time.time() if now is None else now
    value = headers.get("Retry-After")
    if value:
        value = value.strip()
        if value.isdigit():
            return int(value)
        try:
            return max(0, math.ceil(parsedate_to_datetime(value).timestamp() - now))
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Retry-After header: {value!r}")

    usage = headers.get("X-RateLimit-Usage")
    limit = headers.get("X-RateLimit-Limit")
    if usage and limit:
        try:
            short_used = int(usage.split(",")[0])
            short_limit = int(limit.split(",")[0])
        except ValueError:
            return None
        if short_used >= short_limit:
            return max(1, math.ceil(SHORT_WINDOW_SECONDS - now % SHORT_WINDOW_SECONDS))
    return None


# Global breaker for the REST API
strava_api_breaker = CircuitBreaker(
    "strava-api",
    failure_threshold=settings.circuit_breaker_threshold,
    recovery_timeout=settings.circuit_breaker_recovery_seconds,
    error_rate_threshold=settings.circuit_breaker_error_rate,
    ignored_exceptions=PROVIDER_ANSWERED,
)


# =============================================================================
# Strava Client
# =============================================================================

class StravaClient:
    """
    Async client for Strava API.

    Features:
    - Rate limiting (local budget + provider header reconciliation)
    - Circuit breaker
    - Explicit request timeout
    - Typed errors

    Usage:
        client = StravaClient()
        activities = await client.list_activities(access_token, after=ts, page=1)
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[StravaRateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
        api_url: Optional[str] = None,
    ):
        self._http = http_client
        self.limiter = limiter or default_rate_limiter
        self.breaker = breaker or strava_api_breaker
        self.timeout = httpx.Timeout(timeout if timeout is not None else settings.http_timeout_seconds)
        self.api_url = (api_url or settings.strava_api_url).rstrip("/")

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _call(
        self,
        endpoint_key: str,
        method: str,
        endpoint: str,
        access_token: str,
        params: Optional[dict] = None,
    ) -> Any:
        try:
            response = await self._send(
                method,
                f"{self.api_url}{endpoint}",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
            )
        except httpx.TimeoutException as e:
            raise StravaUnavailableError(f"Strava request timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            raise StravaUnavailableError(f"Strava request failed: {type(e).__name__}") from e

        if "X-RateLimit-Usage" in response.headers:
            self.limiter.reconcile(endpoint_key, response.headers)
            logger.debug(
                f"Strava rate limit: {response.headers.get('X-RateLimit-Usage')} "
                f"/ {response.headers.get('X-RateLimit-Limit')}"
            )

        status = response.status_code
        if status == 401:
            raise StravaAuthError("Invalid or revoked token", status_code=status)
        elif status == 429:
            retry_after = parse_retry_after(response.headers)
            raise StravaRateLimitError(
                "Strava rate limit exceeded",
                retry_after_seconds=retry_after,
                status_code=status,
            )
        elif status >= 500:
            raise StravaUnavailableError(f"Strava server error: {status}", status_code=status)
        elif status != 200:
            raise StravaAPIError(f"API error: {status}", status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise StravaUnavailableError("Malformed JSON from Strava", status_code=status) from e

    async def _api_request(
        self,
        endpoint_key: str,
        method: str,
        endpoint: str,
        access_token: str,
        params: Optional[dict] = None,
    ) -> Any:
        """
        Make an authenticated API request with rate limiting and breaker.

        Raises:
            StravaRateLimitError: Local budget spent or provider 429
            StravaAuthError: Token invalid/revoked
            StravaUnavailableError: Timeout, network, 5xx
            StravaAPIError: Other non-200 answers
            CircuitOpenError: Breaker open, Strava not called
        """
        budget = await self.limiter.check_budget(endpoint_key)
        if not budget.allowed:
            raise StravaRateLimitError(
                f"Local Strava budget exhausted ({budget.reason})",
                retry_after_seconds=budget.retry_after_seconds,
                local=True,
            )
        return await self.breaker.execute(
            self._call, endpoint_key, method, endpoint, access_token, params
        )

    async def list_activities(
        self,
        access_token: str,
        after: Optional[int] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> list[dict]:
        """
        Get one page of athlete activities.

        Args:
            access_token: Valid access token
            after: Only activities starting after this unix timestamp
            page: Page number (1-based)
            per_page: Results per page (max 200)

        A page shorter than per_page is the last one.
        """
        params = {"page": page, "per_page": max(1, min(per_page, MAX_PER_PAGE))}
        if after is not None:
            params["after"] = int(after)

        data = await self._api_request(
            ACTIVITIES_ENDPOINT,
            "GET",
            "/athlete/activities",
            access_token,
            params,
        )
        if not isinstance(data, list):
            raise StravaUnavailableError("Unexpected activities payload from Strava")
        return data
