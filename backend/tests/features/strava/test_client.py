"""
Tests for StravaClient and StravaOAuth against httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from fitsync.features.strava import (
    CircuitBreaker,
    CircuitOpenError,
    StravaAPIError,
    StravaAuthError,
    StravaClient,
    StravaOAuth,
    StravaRateLimiter,
    StravaRateLimitError,
    StravaTokenRejectedError,
    StravaUnavailableError,
)
from fitsync.features.strava.client import PROVIDER_ANSWERED, parse_retry_after

API_URL = "https://strava.test/api/v3"
TOKEN_URL = "https://strava.test/oauth/token"
DEAUTHORIZE_URL = "https://strava.test/oauth/deauthorize"


class Transport:
    """Records requests and answers with a queue of responses or exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        # Fresh copy: a response object is bound to the request that received it
        return httpx.Response(
            response.status_code,
            headers=response.headers,
            content=response.content,
        )


def _breaker(name="test-api", **kwargs):
    kwargs.setdefault("failure_threshold", 3)
    return CircuitBreaker(name, ignored_exceptions=PROVIDER_ANSWERED, **kwargs)


def _list(transport, limiter=None, breaker=None, **kwargs):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as http:
            client = StravaClient(
                http_client=http,
                limiter=limiter or StravaRateLimiter(),
                breaker=breaker or _breaker(),
                api_url=API_URL,
            )
            return await client.list_activities("access-token", **kwargs)

    return asyncio.run(scenario())


def _refresh(transport, breaker=None):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as http:
            oauth = StravaOAuth(
                http_client=http,
                breaker=breaker or _breaker("test-oauth"),
                token_url=TOKEN_URL,
            )
            return await oauth.refresh_token("refresh-token")

    return asyncio.run(scenario())


def _deauthorize(transport, breaker=None):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as http:
            oauth = StravaOAuth(
                http_client=http,
                breaker=breaker or _breaker("test-oauth"),
                deauthorize_url=DEAUTHORIZE_URL,
            )
            return await oauth.deauthorize("access-token")

    return asyncio.run(scenario())


# =============================================================================
# Test Activity Listing
# =============================================================================

class TestListActivities:
    """Tests for GET /athlete/activities."""

    def test_request_shape(self):
        transport = Transport(httpx.Response(200, json=[{"id": 1}]))

        activities = _list(transport, after=1_700_000_000, page=2, per_page=500)

        assert activities == [{"id": 1}]
        request = transport.requests[0]
        assert request.url.path == "/api/v3/athlete/activities"
        assert request.url.params["per_page"] == "200"
        assert request.url.params["page"] == "2"
        assert request.url.params["after"] == "1700000000"
        assert request.headers["Authorization"] == "Bearer access-token"

    def test_reconciles_rate_limit_headers(self):
        limiter = StravaRateLimiter()
        transport = Transport(httpx.Response(
            200,
            json=[],
            headers={"X-RateLimit-Limit": "100,1000", "X-RateLimit-Usage": "42,420"},
        ))

        _list(transport, limiter=limiter)

        usage = limiter.get_usage("activities")
        assert usage["short_term"]["used"] == 42
        assert usage["daily"]["used"] == 420

    def test_unauthorized(self):
        breaker = _breaker()
        with pytest.raises(StravaAuthError):
            _list(Transport(httpx.Response(401, json={})), breaker=breaker)
        assert breaker.consecutive_failures == 0

    def test_rate_limited(self):
        transport = Transport(httpx.Response(429, headers={"Retry-After": "30"}))
        with pytest.raises(StravaRateLimitError) as exc_info:
            _list(transport)
        assert exc_info.value.retry_after_seconds == 30
        assert exc_info.value.local is False

    def test_other_client_error(self):
        with pytest.raises(StravaAPIError) as exc_info:
            _list(Transport(httpx.Response(404, json={})))
        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize("response", [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"not": "a list"}),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("refused"),
    ])
    def test_unavailable(self, response):
        with pytest.raises(StravaUnavailableError):
            _list(Transport(response))

    def test_local_budget_blocks_call(self):
        limiter = StravaRateLimiter(short_limit=1)
        transport = Transport(httpx.Response(200, json=[]))

        _list(transport, limiter=limiter)
        with pytest.raises(StravaRateLimitError) as exc_info:
            _list(transport, limiter=limiter)

        assert exc_info.value.local is True
        assert len(transport.requests) == 1

    def test_breaker_opens_and_short_circuits(self):
        breaker = _breaker(failure_threshold=3)
        transport = Transport(httpx.Response(503))

        for _ in range(3):
            with pytest.raises(StravaUnavailableError):
                _list(transport, breaker=breaker)
        with pytest.raises(CircuitOpenError):
            _list(transport, breaker=breaker)

        assert len(transport.requests) == 3


class TestParseRetryAfter:

    def test_seconds(self):
        assert parse_retry_after({"Retry-After": "17"}) == 17

    def test_next_quarter_hour_when_usage_exhausted(self):
        headers = {"X-RateLimit-Limit": "100,1000", "X-RateLimit-Usage": "100,300"}
        assert parse_retry_after(headers, now=1000.0) == 800

    def test_unknown(self):
        assert parse_retry_after({}) is None


# =============================================================================
# Test Token Refresh
# =============================================================================

class TestOAuthRefresh:
    """Tests for POST /oauth/token (refresh_token grant)."""

    def test_success(self):
        transport = Transport(httpx.Response(200, json={
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_at": 1_700_021_600,
            "token_type": "Bearer",
        }))

        tokens = _refresh(transport)

        assert tokens == {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_at": 1_700_021_600,
        }
        body = transport.requests[0].content.decode()
        assert "grant_type=refresh_token" in body
        assert "refresh_token=refresh-token" in body

    @pytest.mark.parametrize("status", [400, 401])
    def test_rejected(self, status):
        with pytest.raises(StravaTokenRejectedError):
            _refresh(Transport(httpx.Response(status, json={"message": "Bad Request"})))

    def test_rate_limited(self):
        with pytest.raises(StravaRateLimitError):
            _refresh(Transport(httpx.Response(429)))

    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(200, json={"access_token": "only-access"}),
        httpx.ReadTimeout("timed out"),
    ])
    def test_unavailable(self, response):
        with pytest.raises(StravaUnavailableError):
            _refresh(Transport(response))

    def test_breaker_open_skips_provider(self):
        breaker = _breaker("test-oauth-open", failure_threshold=1)
        transport = Transport(httpx.Response(500))

        with pytest.raises(StravaUnavailableError):
            _refresh(transport, breaker=breaker)
        with pytest.raises(CircuitOpenError):
            _refresh(transport, breaker=breaker)

        assert len(transport.requests) == 1


class TestOAuthDeauthorize:
    """Tests for POST /oauth/deauthorize."""

    def test_success(self):
        transport = Transport(httpx.Response(200, json={"access_token": "access-token"}))

        assert _deauthorize(transport) is True
        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == DEAUTHORIZE_URL
        assert request.headers["Authorization"] == "Bearer access-token"

    def test_grant_already_gone(self):
        with pytest.raises(StravaAuthError):
            _deauthorize(Transport(httpx.Response(401, json={"message": "Authorization Error"})))

    def test_rate_limited(self):
        with pytest.raises(StravaRateLimitError) as exc_info:
            _deauthorize(Transport(httpx.Response(429, headers={"Retry-After": "60"})))
        assert exc_info.value.retry_after_seconds == 60

    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.ConnectError("connection refused"),
    ])
    def test_unavailable(self, response):
        with pytest.raises(StravaUnavailableError):
            _deauthorize(Transport(response))

    def test_other_client_error(self):
        with pytest.raises(StravaAPIError):
            _deauthorize(Transport(httpx.Response(403)))
