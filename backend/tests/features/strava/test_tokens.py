"""
Tests for TokenLifecycleManager.

The refresh endpoint is replaced by a counting fake; the lock and the
credential store run against a real sqlite database.
"""

import asyncio
import time

import pytest

from fitsync.features.strava import (
    CredentialHealth,
    CredentialStore,
    LockBusyError,
    NoTokenError,
    RefreshFailedError,
    RefreshLock,
    StravaAuthError,
    StravaTokenRejectedError,
    StravaUnavailableError,
    TokenLifecycleManager,
)
from fitsync.features.strava.models import StravaRefreshLock


class FakeOAuth:
    """Stands in for StravaOAuth."""

    def __init__(self, error=None, delay=0.0, deauthorize_error=None):
        self.calls = []
        self.error = error
        self.delay = delay
        self.deauthorized = []
        self.deauthorize_error = deauthorize_error

    async def deauthorize(self, access_token):
        self.deauthorized.append(access_token)
        if self.deauthorize_error is not None:
            raise self.deauthorize_error
        return True

    async def refresh_token(self, refresh_token):
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return {
            "access_token": f"access-{n + 1}",
            "refresh_token": f"refresh-{n + 1}",
            "expires_at": int(time.time()) + 6 * 3600,
        }


async def _seed(session_factory, cipher, expires_in, user_id="user-1"):
    async with session_factory() as db:
        await CredentialStore(db, cipher).put(
            user_id, "access-1", "refresh-1", int(time.time()) + expires_in
        )


def _manager(db, session_factory, cipher, oauth, **kwargs):
    kwargs.setdefault("safety_margin_seconds", 300)
    kwargs.setdefault("lock_wait_seconds", 2.0)
    kwargs.setdefault("poll_interval_seconds", 0.01)
    return TokenLifecycleManager(
        CredentialStore(db, cipher),
        RefreshLock(session_factory, lease_seconds=30),
        oauth=oauth,
        **kwargs,
    )


# =============================================================================
# Test Refresh Decisions
# =============================================================================

class TestEnsureValidToken:
    """Tests for the cheap path and refresh path."""

    def test_valid_token_not_refreshed(self, database, cipher):
        oauth = FakeOAuth()

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    return await _manager(db, session_factory, cipher, oauth).ensure_valid_token("user-1")

        token = asyncio.run(scenario())
        assert token.access_token == "access-1"
        assert oauth.calls == []

    def test_expiring_token_refreshed_once(self, database, cipher):
        """Token expiring in 2 minutes with a 5 minute margin: one refresh, then cheap path."""
        oauth = FakeOAuth()

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=120)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    first = await manager.ensure_valid_token("user-1")
                    second = await manager.ensure_valid_token("user-1")
                    record = await manager.store.get("user-1", fresh=True)
                    lock_rows = await manager.store.repo.db.get(StravaRefreshLock, "user-1")
                    return first, second, record.refresh_count, lock_rows

        first, second, refresh_count, lock_row = asyncio.run(scenario())
        assert oauth.calls == ["refresh-1"]
        assert first.access_token == "access-2"
        assert second.access_token == "access-2"
        assert refresh_count == 1
        assert lock_row is None

    def test_concurrent_invocations_refresh_once(self, database, cipher):
        oauth = FakeOAuth(delay=0.05)

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=60)

                async def invocation():
                    async with session_factory() as db:
                        manager = _manager(db, session_factory, cipher, oauth)
                        return await manager.ensure_valid_token("user-1")

                return await asyncio.gather(invocation(), invocation(), invocation())

        tokens = asyncio.run(scenario())
        assert len(oauth.calls) == 1
        assert {t.access_token for t in tokens} == {"access-2"}

    def test_repr_hides_token(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    return await _manager(db, session_factory, cipher, FakeOAuth()).ensure_valid_token("user-1")

        assert "access-1" not in repr(asyncio.run(scenario()))


# =============================================================================
# Test Failures
# =============================================================================

class TestFailures:
    """Missing, revoked and busy credentials."""

    def test_missing_credential(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    await _manager(db, session_factory, cipher, FakeOAuth()).ensure_valid_token("nobody")

        with pytest.raises(NoTokenError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.revoked is False

    def test_rejected_refresh_token_revokes(self, database, cipher):
        oauth = FakeOAuth(error=StravaTokenRejectedError("rejected", status_code=400))

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=-10)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    with pytest.raises(RefreshFailedError) as first:
                        await manager.ensure_valid_token("user-1")
                    with pytest.raises(NoTokenError) as second:
                        await manager.ensure_valid_token("user-1")
                    health = await manager.credential_health("user-1")
                    return first.value, second.value, health

        first, second, health = asyncio.run(scenario())
        assert first.retryable is False
        assert second.revoked is True
        assert health == CredentialHealth.REVOKED
        assert len(oauth.calls) == 1

    def test_transient_failure_keeps_pair(self, database, cipher):
        oauth = FakeOAuth(error=StravaUnavailableError("timeout"))

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=60)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    with pytest.raises(RefreshFailedError) as exc_info:
                        await manager.ensure_valid_token("user-1")
                    record = await manager.store.get("user-1", fresh=True)
                    return exc_info.value, manager.store.decrypt_refresh(record), record.revoked

        error, refresh, revoked = asyncio.run(scenario())
        assert error.retryable is True
        assert refresh == "refresh-1"
        assert revoked is False

    def test_lock_busy(self, database, cipher):
        oauth = FakeOAuth()

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=60)
                async with session_factory() as db:
                    db.add(StravaRefreshLock(
                        user_id="user-1",
                        lock_id="other-invocation",
                        expires_at=time.time() + 30,
                    ))
                    await db.commit()

                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth, lock_wait_seconds=0)
                    await manager.ensure_valid_token("user-1")

        with pytest.raises(LockBusyError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after_seconds > 0
        assert oauth.calls == []


# =============================================================================
# Test Revocation And Disconnect
# =============================================================================

class TestRevokeUnauthorized:
    """A provider 401 revokes only the token that was actually rejected."""

    def test_current_token_revoked(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, FakeOAuth())
                    revoked = await manager.revoke_unauthorized("user-1", "access-1")
                    return revoked, await manager.credential_health("user-1")

        revoked, health = asyncio.run(scenario())
        assert revoked is True
        assert health == CredentialHealth.REVOKED

    def test_replaced_token_not_revoked(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    store = CredentialStore(db, cipher)
                    record = await store.get("user-1")
                    await store.update_after_refresh(record, "access-2", "refresh-2", int(time.time()) + 6 * 3600)

                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, FakeOAuth())
                    revoked = await manager.revoke_unauthorized("user-1", "access-1")
                    return revoked, await manager.credential_health("user-1")

        revoked, health = asyncio.run(scenario())
        assert revoked is False
        assert health == CredentialHealth.VALID

    def test_waits_for_refresh_lock(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    db.add(StravaRefreshLock(
                        user_id="user-1",
                        lock_id="other-invocation",
                        expires_at=time.time() + 30,
                    ))
                    await db.commit()

                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, FakeOAuth(), lock_wait_seconds=0)
                    with pytest.raises(LockBusyError):
                        await manager.revoke_unauthorized("user-1", "access-1")
                    return await manager.credential_health("user-1")

        assert asyncio.run(scenario()) == CredentialHealth.VALID


class TestDisconnect:
    """Deauthorize at Strava, then forget the credential."""

    def test_deauthorizes_and_removes(self, database, cipher):
        oauth = FakeOAuth()

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    deauthorized = await manager.disconnect("user-1")
                    return deauthorized, await manager.store.get("user-1", fresh=True)

        deauthorized, record = asyncio.run(scenario())
        assert deauthorized is True
        assert record is None
        assert oauth.deauthorized == ["access-1"]

    def test_provider_outage_keeps_credential(self, database, cipher):
        oauth = FakeOAuth(deauthorize_error=StravaUnavailableError("timeout"))

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    with pytest.raises(StravaUnavailableError):
                        await manager.disconnect("user-1")
                    return await manager.credential_health("user-1")

        assert asyncio.run(scenario()) == CredentialHealth.VALID

    def test_grant_already_gone_still_removes(self, database, cipher):
        oauth = FakeOAuth(deauthorize_error=StravaAuthError("Authorization Error", status_code=401))

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    deauthorized = await manager.disconnect("user-1")
                    return deauthorized, await manager.credential_health("user-1")

        deauthorized, health = asyncio.run(scenario())
        assert deauthorized is False
        assert health == CredentialHealth.UNKNOWN

    def test_revoked_credential_removed_without_provider_call(self, database, cipher):
        oauth = FakeOAuth()

        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, oauth)
                    await manager.store.mark_revoked("user-1")
                    return await manager.disconnect("user-1")

        assert asyncio.run(scenario()) is False
        assert oauth.deauthorized == []

    def test_unknown_user(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    await _manager(db, session_factory, cipher, FakeOAuth()).disconnect("nobody")

        with pytest.raises(NoTokenError):
            asyncio.run(scenario())


# =============================================================================
# Test Health
# =============================================================================

class TestCredentialHealth:
    """Tests for the status read."""

    @pytest.mark.parametrize("expires_in,expected", [
        (6 * 3600, CredentialHealth.VALID),
        (600, CredentialHealth.EXPIRING_SOON),
        (-600, CredentialHealth.EXPIRING_SOON),
    ])
    def test_health(self, database, cipher, expires_in, expected):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=expires_in)
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, FakeOAuth(), expiring_soon_seconds=3600)
                    return await manager.credential_health("user-1")

        assert asyncio.run(scenario()) == expected

    def test_unknown_user(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    manager = _manager(db, session_factory, cipher, FakeOAuth())
                    return await manager.describe("nobody")

        assert asyncio.run(scenario()) == {"health": "unknown"}

    def test_describe_has_no_tokens(self, database, cipher):
        async def scenario():
            async with database() as session_factory:
                await _seed(session_factory, cipher, expires_in=6 * 3600)
                async with session_factory() as db:
                    return await _manager(db, session_factory, cipher, FakeOAuth()).describe("user-1")

        described = asyncio.run(scenario())
        assert described["health"] == "valid"
        assert "access-1" not in str(described)
        assert "refresh-1" not in str(described)
