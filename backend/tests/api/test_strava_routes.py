"""
Tests for the Strava integration routes.

The app runs against a per-test sqlite file; provider-facing
dependencies are overridden.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fitsync.api.v1.routes import strava as routes
from fitsync.config import settings
from fitsync.db.session import get_async_db, init_db
from fitsync.features.strava import LockBusyError, NoTokenError, StravaUnavailableError
from fitsync.features.strava.sync import ImportInProgressError, ImportResult, ImportStats, ImportStatus
from fitsync.main import app

API_KEY = "test-api-key"
HEADERS = {"X-API-Key": API_KEY}


class StubOrchestrator:
    """Replaces ImportOrchestrator for /import error mapping tests."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def run_import(self, user_id, **kwargs):
        self.calls.append((user_id, kwargs))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeOAuth:
    """Replaces StravaOAuth for /revoke tests."""

    def __init__(self, error=None):
        self.error = error
        self.deauthorized = []

    async def deauthorize(self, access_token):
        self.deauthorized.append(access_token)
        if self.error is not None:
            raise self.error
        return True


@pytest.fixture
def session_factory(db_url):
    engine = create_async_engine(db_url, poolclass=NullPool)
    asyncio.run(init_db(engine))
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def client(session_factory, cipher, monkeypatch):
    monkeypatch.setattr(settings, "internal_api_key", API_KEY)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_db
    app.dependency_overrides[routes.get_session_factory] = lambda: session_factory
    app.dependency_overrides[routes.get_token_cipher] = lambda: cipher
    yield TestClient(app)
    app.dependency_overrides.clear()


def _stub(outcome):
    stub = StubOrchestrator(outcome)
    app.dependency_overrides[routes.get_orchestrator] = lambda: stub
    return stub


# =============================================================================
# Test Authentication
# =============================================================================

class TestApiKey:

    def test_wrong_key(self, client):
        response = client.get("/api/v1/integrations/strava/status", params={"user_id": "u"}, headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "internal_api_key", None)
        response = client.get("/api/v1/integrations/strava/status", params={"user_id": "u"}, headers=HEADERS)
        assert response.status_code == 503


# =============================================================================
# Test Credentials And Status
# =============================================================================

class TestCredentialsAndStatus:

    def test_store_credentials_then_status(self, client):
        response = client.post(
            "/api/v1/integrations/strava/credentials",
            json={
                "user_id": "user-1",
                "access_token": "plain-access",
                "refresh_token": "plain-refresh",
                "expires_at": int(time.time()) + 6 * 3600,
                "athlete_id": "42",
            },
            headers=HEADERS,
        )
        assert response.status_code == 201
        assert "plain-access" not in response.text
        assert response.json()["encryption_key_version"] == 1

        status = client.get("/api/v1/integrations/strava/status", params={"user_id": "user-1"}, headers=HEADERS)
        assert status.status_code == 200
        body = status.json()
        assert body["credential"]["health"] == "valid"
        assert body["credential"]["athlete_id"] == "42"
        assert body["import"]["status"] == "NOT_STARTED"
        assert "rate_limit" in body
        assert any(b["name"] == "strava-api" for b in body["circuit_breakers"])
        assert "plain-" not in status.text

    def test_status_unknown_user(self, client):
        response = client.get("/api/v1/integrations/strava/status", params={"user_id": "ghost"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["credential"] == {"health": "unknown"}

    def test_credentials_validation(self, client):
        response = client.post(
            "/api/v1/integrations/strava/credentials",
            json={"user_id": "user-1", "access_token": ""},
            headers=HEADERS,
        )
        assert response.status_code == 422


# =============================================================================
# Test Import
# =============================================================================

class TestImport:

    def test_success(self, client):
        stub = _stub(ImportResult(
            status=ImportStatus.PAUSED_FOR_BUDGET,
            stats=ImportStats(imported=100),
            run_id="run-1",
            continue_token="token-1",
            pages_processed=2,
        ))

        response = client.post(
            "/api/v1/integrations/strava/import",
            json={"user_id": "user-1", "per_page": 50},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "PAUSED_FOR_BUDGET"
        assert body["continue_token"] == "token-1"
        assert body["stats"]["imported"] == 100
        assert stub.calls[0][1]["page_size"] == 50

    @pytest.mark.parametrize("error,status_code,code", [
        (ImportInProgressError("busy", retry_after_seconds=30), 409, "import_in_progress"),
        (NoTokenError("user-1"), 404, "no_token"),
        (NoTokenError("user-1", revoked=True), 403, "no_token"),
        (LockBusyError("busy", retry_after_seconds=2), 423, "lock_busy"),
    ])
    def test_error_mapping(self, client, error, status_code, code):
        _stub(error)

        response = client.post("/api/v1/integrations/strava/import", json={"user_id": "user-1"}, headers=HEADERS)

        assert response.status_code == status_code
        assert response.json()["error"]["code"] == code
        assert response.json()["error"]["retryable"] is error.retryable

    def test_retry_after_header(self, client):
        _stub(ImportInProgressError("busy", retry_after_seconds=30))
        response = client.post("/api/v1/integrations/strava/import", json={"user_id": "user-1"}, headers=HEADERS)
        assert response.headers["Retry-After"] == "30"
        assert response.json()["error"]["retry_after_seconds"] == 30

    def test_import_without_credential(self, client):
        """Real orchestrator: a user who never connected Strava."""
        response = client.post("/api/v1/integrations/strava/import", json={"user_id": "nobody"}, headers=HEADERS)
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "no_token"
        assert error["continue_token"]


# =============================================================================
# Test Revoke
# =============================================================================

def _connect(client, user_id="user-1"):
    response = client.post(
        "/api/v1/integrations/strava/credentials",
        json={
            "user_id": user_id,
            "access_token": "plain-access",
            "refresh_token": "plain-refresh",
            "expires_at": int(time.time()) + 6 * 3600,
        },
        headers=HEADERS,
    )
    assert response.status_code == 201


class TestRevoke:

    def test_disconnect(self, client):
        oauth = FakeOAuth()
        app.dependency_overrides[routes.get_strava_oauth] = lambda: oauth
        _connect(client)

        response = client.post("/api/v1/integrations/strava/revoke", json={"user_id": "user-1"}, headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"user_id": "user-1", "status": "disconnected", "deauthorized": True}
        assert oauth.deauthorized == ["plain-access"]
        assert "plain-" not in response.text

        status = client.get("/api/v1/integrations/strava/status", params={"user_id": "user-1"}, headers=HEADERS)
        assert status.json()["credential"] == {"health": "unknown"}

    def test_unknown_user(self, client):
        app.dependency_overrides[routes.get_strava_oauth] = lambda: FakeOAuth()
        response = client.post("/api/v1/integrations/strava/revoke", json={"user_id": "ghost"}, headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "no_token"

    def test_provider_unavailable_keeps_credential(self, client):
        app.dependency_overrides[routes.get_strava_oauth] = lambda: FakeOAuth(
            error=StravaUnavailableError("Strava deauthorize timed out")
        )
        _connect(client)

        response = client.post("/api/v1/integrations/strava/revoke", json={"user_id": "user-1"}, headers=HEADERS)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "provider_unavailable"
        assert response.json()["error"]["retryable"] is True

        status = client.get("/api/v1/integrations/strava/status", params={"user_id": "user-1"}, headers=HEADERS)
        assert status.json()["credential"]["health"] == "valid"

    def test_requires_api_key(self, client):
        response = client.post("/api/v1/integrations/strava/revoke", json={"user_id": "user-1"}, headers={"X-API-Key": "nope"})
        assert response.status_code == 401
