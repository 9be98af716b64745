"""
Strava OAuth token refresh and deauthorization.

The authorization-code exchange happens elsewhere; this module trades a
refresh token for a new access/refresh pair and deauthorizes the app on
disconnect. Calls go through the "strava-oauth" circuit breaker with an
explicit timeout.
"""

import logging
from typing import Optional

import httpx

from fitsync.config import settings
from .circuit_breaker import CircuitBreaker
from .client import (
    StravaAPIError,
    StravaAuthError,
    StravaRateLimitError,
    StravaTokenRejectedError,
    StravaUnavailableError,
    PROVIDER_ANSWERED,
    parse_retry_after,
)

logger = logging.getLogger(__name__)


# Global breaker for the token endpoint (tighter than the API breaker)
strava_oauth_breaker = CircuitBreaker(
    "strava-oauth",
    failure_threshold=3,
    recovery_timeout=30.0,
    error_rate_threshold=settings.circuit_breaker_error_rate,
    ignored_exceptions=PROVIDER_ANSWERED,
)


class StravaOAuth:
    """
    Strava OAuth handler.

    Usage:
        oauth = StravaOAuth()
        tokens = await oauth.refresh_token(refresh_token)
        await oauth.deauthorize(access_token)
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
        token_url: Optional[str] = None,
        deauthorize_url: Optional[str] = None,
    ):
        self.client_id = settings.strava_client_id
        self.client_secret = settings.strava_client_secret
        self.token_url = token_url or settings.strava_oauth_url
        self.deauthorize_url = deauthorize_url or settings.strava_deauthorize_url
        self.breaker = breaker or strava_oauth_breaker
        self.timeout = httpx.Timeout(timeout if timeout is not None else settings.http_timeout_seconds)
        self._http = http_client

    async def _post(
        self,
        url: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, data=data, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, data=data, headers=headers)

    async def _refresh(self, refresh_token: str) -> dict:
        try:
            response = await self._post(self.token_url, {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            })
        except httpx.TimeoutException as e:
            raise StravaUnavailableError("Strava token refresh timed out") from e
        except httpx.HTTPError as e:
            raise StravaUnavailableError(f"Strava token refresh failed: {type(e).__name__}") from e

        status = response.status_code
        if status in (400, 401):
            # Body may echo request details; log only the status
            logger.error(f"Strava token refresh rejected: {status}")
            raise StravaTokenRejectedError("Refresh token rejected", status_code=status)
        elif status == 429:
            raise StravaRateLimitError(
                "Strava rate limit exceeded on token refresh",
                retry_after_seconds=parse_retry_after(response.headers),
                status_code=status,
            )
        elif status >= 500:
            raise StravaUnavailableError(f"Strava token endpoint error: {status}", status_code=status)
        elif status != 200:
            raise StravaAPIError(f"Token refresh failed: {status}", status_code=status)

        try:
            data = response.json()
            return {
                "access_token": data["access_token"],
                "refresh_token": data["refresh_token"],
                "expires_at": int(data["expires_at"]),
            }
        except (ValueError, KeyError, TypeError) as e:
            raise StravaUnavailableError("Malformed token refresh response") from e

    async def refresh_token(self, refresh_token: str) -> dict:
        """
        Refresh an expired access token.

        Args:
            refresh_token: Current refresh token

        Returns:
            {
                "access_token": "...",
                "refresh_token": "...",
                "expires_at": 1234567890
            }

        Raises:
            StravaTokenRejectedError: Refresh token invalid or revoked (terminal)
            StravaUnavailableError: Timeout, network failure, 5xx (retryable)
            StravaRateLimitError: 429 (retryable)
            CircuitOpenError: Breaker open, Strava not called (retryable)
        """
        return await self.breaker.execute(self._refresh, refresh_token)

    async def _deauthorize(self, access_token: str) -> bool:
        try:
            response = await self._post(
                self.deauthorize_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            raise StravaUnavailableError("Strava deauthorize timed out") from e
        except httpx.HTTPError as e:
            raise StravaUnavailableError(f"Strava deauthorize failed: {type(e).__name__}") from e

        status = response.status_code
        if status == 401:
            raise StravaAuthError("Access token not accepted for deauthorize", status_code=status)
        elif status == 429:
            raise StravaRateLimitError(
                "Strava rate limit exceeded on deauthorize",
                retry_after_seconds=parse_retry_after(response.headers),
                status_code=status,
            )
        elif status >= 500:
            raise StravaUnavailableError(f"Strava deauthorize error: {status}", status_code=status)
        elif status != 200:
            raise StravaAPIError(f"Deauthorize failed: {status}", status_code=status)

        logger.info("Strava access deauthorized")
        return True

    async def deauthorize(self, access_token: str) -> bool:
        """
        Revoke the app's access for the athlete owning access_token.

        Returns:
            True once Strava confirmed

        Raises:
            StravaAuthError: Token not accepted (grant already gone)
            StravaUnavailableError: Timeout, network failure, 5xx (retryable)
            StravaRateLimitError: 429 (retryable)
            CircuitOpenError: Breaker open, Strava not called (retryable)
        """
        return await self.breaker.execute(self._deauthorize, access_token)
