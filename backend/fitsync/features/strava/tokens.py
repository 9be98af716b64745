"""
Token lifecycle manager.

The only component that mutates a stored credential after it was put:

1. Load the credential; fail NoTokenError if missing or revoked.
2. Cheap path: more than the safety margin left -> return it as is
   (no lock, no provider call).
3. Otherwise take the refresh lock, waiting a bounded time for a
   concurrent holder; still busy -> LockBusyError (retryable).
4. Re-read under the lock; another holder may have refreshed already.
5. Refresh through the "strava-oauth" breaker, persist, release.
6. On failure release without touching the stored pair. A rejected
   refresh token marks the credential revoked (terminal); everything
   else is retryable.

Revocation after a provider 401 and user-initiated disconnects also
write under the same lock.

Token values never appear in return value reprs, logs or errors.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from fitsync.config import settings
from .circuit_breaker import CircuitOpenError
from .client import StravaAuthError, StravaError, StravaRateLimitError, StravaTokenRejectedError
from .credentials import CredentialStore
from .crypto import TokenCryptoError
from .lock import RefreshLock
from .models import StravaCredential
from .oauth import StravaOAuth

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class TokenError(Exception):
    """Base token lifecycle error."""

    code = "token_error"
    retryable = False

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class NoTokenError(TokenError):
    """No usable credential: never authorized, or revoked."""

    code = "no_token"

    def __init__(self, user_id: str, revoked: bool = False):
        reason = "revoked" if revoked else "not found"
        super().__init__(f"No Strava credential for user {user_id} ({reason})")
        self.revoked = revoked


class RefreshFailedError(TokenError):
    """Provider refresh failed. retryable=False means re-authorization needed."""

    code = "refresh_failed"

    def __init__(self, message: str, retryable: bool, retry_after_seconds: Optional[float] = None):
        super().__init__(message, retry_after_seconds)
        self.retryable = retryable


class LockBusyError(TokenError):
    """Another invocation is refreshing this user's token."""

    code = "lock_busy"
    retryable = True


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class ValidToken:
    """A usable access token. repr never shows the token."""
    access_token: str = field(repr=False)
    expires_at: int

    def __repr__(self) -> str:
        return f"ValidToken(access_token='***', expires_at={self.expires_at})"


class CredentialHealth(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


# =============================================================================
# Manager
# =============================================================================

class TokenLifecycleManager:
    """
    Keeps a user's access token valid.

    Usage:
        manager = TokenLifecycleManager(store, RefreshLock(AsyncSessionLocal))
        token = await manager.ensure_valid_token(user_id)
        activities = await client.list_activities(token.access_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        lock: RefreshLock,
        oauth: Optional[StravaOAuth] = None,
        safety_margin_seconds: Optional[float] = None,
        lock_wait_seconds: Optional[float] = None,
        expiring_soon_seconds: Optional[float] = None,
        poll_interval_seconds: float = 0.1,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.lock = lock
        self.oauth = oauth or StravaOAuth()
        self.safety_margin = (
            safety_margin_seconds if safety_margin_seconds is not None
            else settings.refresh_safety_margin_seconds
        )
        self.lock_wait = lock_wait_seconds if lock_wait_seconds is not None else settings.lock_wait_seconds
        self.expiring_soon = (
            expiring_soon_seconds if expiring_soon_seconds is not None
            else settings.expiring_soon_seconds
        )
        self.poll_interval = poll_interval_seconds
        self.clock = clock
        self.sleep = sleep

    def _usable(self, record: Optional[StravaCredential], user_id: str) -> StravaCredential:
        if record is None:
            raise NoTokenError(user_id)
        if record.revoked:
            raise NoTokenError(user_id, revoked=True)
        return record

    def _is_fresh(self, record: StravaCredential) -> bool:
        return not record.expires_within(self.safety_margin, self.clock())

    def _valid(self, record: StravaCredential) -> ValidToken:
        try:
            return ValidToken(self.store.decrypt_access(record), int(record.expires_at))
        except TokenCryptoError as e:
            raise RefreshFailedError(
                f"Stored credential for user {record.user_id} is unreadable ({e})",
                retryable=False,
            ) from e

    async def _wait_for_lock(self, user_id: str) -> tuple[Optional[str], Optional[ValidToken]]:
        """
        Acquire the refresh lock, polling up to lock_wait seconds.

        Returns:
            (lock_id, None) when acquired, or (None, token) when a
            concurrent holder finished the refresh while we waited.
        """
        deadline = self.clock() + self.lock_wait
        while True:
            result = await self.lock.acquire(user_id)
            if result.acquired:
                return result.lock_id, None

            record = self._usable(await self.store.get(user_id, fresh=True), user_id)
            if self._is_fresh(record):
                logger.info(f"Token for user {user_id} refreshed by concurrent invocation")
                return None, self._valid(record)

            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning(f"Refresh lock busy for user {user_id} ({result.reason})")
                raise LockBusyError(
                    f"Token refresh already in progress for user {user_id}",
                    retry_after_seconds=result.retry_after_seconds,
                )
            await self.sleep(min(self.poll_interval, remaining))

    @asynccontextmanager
    async def _locked(self, user_id: str) -> AsyncIterator[str]:
        """Hold the user's refresh lock for a credential write."""
        deadline = self.clock() + self.lock_wait
        while True:
            result = await self.lock.acquire(user_id)
            if result.acquired:
                break
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning(f"Refresh lock busy for user {user_id} ({result.reason})")
                raise LockBusyError(
                    f"Credential update already in progress for user {user_id}",
                    retry_after_seconds=result.retry_after_seconds,
                )
            await self.sleep(min(self.poll_interval, remaining))

        try:
            yield result.lock_id
        finally:
            await self.lock.release(result.lock_id)

    async def ensure_valid_token(self, user_id: str) -> ValidToken:
        """
        Return a valid access token, refreshing it if needed.

        Raises:
            NoTokenError: No credential or revoked
            LockBusyError: Concurrent refresh still running (retryable)
            CircuitOpenError: Token endpoint breaker open (retryable)
            RefreshFailedError: Provider refused or failed
        """
        record = self._usable(await self.store.get(user_id, fresh=True), user_id)
        if self._is_fresh(record):
            return self._valid(record)

        lock_id, token = await self._wait_for_lock(user_id)
        if token is not None:
            return token

        try:
            # Another holder may have refreshed between our read and the lock
            record = self._usable(await self.store.get(user_id, fresh=True), user_id)
            if self._is_fresh(record):
                logger.info(f"Token for user {user_id} already refreshed, skipping")
                return self._valid(record)

            try:
                refresh_token = self.store.decrypt_refresh(record)
            except TokenCryptoError as e:
                raise RefreshFailedError(
                    f"Stored credential for user {user_id} is unreadable ({e})",
                    retryable=False,
                ) from e

            logger.info(f"Refreshing Strava token for user {user_id}")
            try:
                tokens = await self.oauth.refresh_token(refresh_token)
            except StravaTokenRejectedError as e:
                await self.store.mark_revoked(user_id, reason="refresh_token_rejected")
                raise RefreshFailedError(
                    f"Refresh token rejected for user {user_id}; re-authorization required",
                    retryable=False,
                ) from e
            except CircuitOpenError:
                raise
            except StravaRateLimitError as e:
                raise RefreshFailedError(
                    f"Token refresh rate limited for user {user_id}",
                    retryable=True,
                    retry_after_seconds=e.retry_after_seconds,
                ) from e
            except StravaError as e:
                raise RefreshFailedError(
                    f"Token refresh failed for user {user_id}: {e.code}",
                    retryable=e.retryable,
                ) from e

            await self.store.update_after_refresh(
                record,
                tokens["access_token"],
                tokens["refresh_token"],
                tokens["expires_at"],
            )
            return ValidToken(tokens["access_token"], int(tokens["expires_at"]))
        finally:
            await self.lock.release(lock_id)

    async def revoke_unauthorized(
        self,
        user_id: str,
        access_token: str,
        reason: str = "unauthorized",
    ) -> bool:
        """
        Mark the credential revoked after Strava answered 401 to access_token.

        Skipped when the stored access token is no longer the one that was
        rejected: a concurrent refresh replaced it, so the 401 is stale.

        Returns:
            True if the credential is now revoked

        Raises:
            LockBusyError: A refresh is in flight (retryable)
        """
        async with self._locked(user_id):
            record = await self.store.get(user_id, fresh=True)
            if record is None:
                return False
            if record.revoked:
                return True
            try:
                current = self.store.decrypt_access(record)
            except TokenCryptoError:
                current = None
            if current != access_token:
                logger.info(f"Access token for user {user_id} changed since it was used, not revoking")
                return False
            await self.store.mark_revoked(user_id, reason=reason)
            return True

    async def disconnect(self, user_id: str) -> bool:
        """
        Deauthorize the app at Strava and forget the stored credential.

        An already revoked credential, or a grant Strava no longer knows,
        is removed locally without a provider call succeeding. Transient
        provider failures propagate and leave the credential in place.

        Returns:
            True if Strava confirmed the deauthorization

        Raises:
            NoTokenError: Nothing stored for the user
            LockBusyError, CircuitOpenError, StravaError, RefreshFailedError:
                Retryable; nothing was removed
        """
        record = await self.store.get(user_id, fresh=True)
        if record is None:
            raise NoTokenError(user_id)

        deauthorized = False
        if not record.revoked:
            token = None
            try:
                token = await self.ensure_valid_token(user_id)
            except NoTokenError:
                logger.info(f"Credential for user {user_id} revoked concurrently")
            except RefreshFailedError as e:
                if e.retryable:
                    raise
                logger.info(f"Credential for user {user_id} unusable, removing without deauthorize")

            if token is not None:
                try:
                    deauthorized = await self.oauth.deauthorize(token.access_token)
                except StravaAuthError:
                    logger.info(f"Strava grant for user {user_id} already gone")

        async with self._locked(user_id):
            await self.store.remove(user_id, reason="user_disconnect")
        return deauthorized

    async def credential_health(self, user_id: str) -> CredentialHealth:
        """
        Health of the stored credential, without returning token values.

        expiring_soon covers already-expired access tokens too: they are
        refreshed on next use as long as the refresh token holds.
        """
        record = await self.store.get(user_id, fresh=True)
        if record is None:
            return CredentialHealth.UNKNOWN
        if record.revoked:
            return CredentialHealth.REVOKED
        if record.expires_within(self.expiring_soon, self.clock()):
            return CredentialHealth.EXPIRING_SOON
        return CredentialHealth.VALID

    async def describe(self, user_id: str) -> dict:
        """Status read for diagnostics; never includes tokens."""
        health = await self.credential_health(user_id)
        record = await self.store.get(user_id)
        if record is None:
            return {"health": health.value}
        return {
            "health": health.value,
            "athlete_id": record.athlete_id,
            "expires_at": record.expires_at,
            "refresh_count": record.refresh_count,
            "last_refresh_at": record.last_refresh_at.isoformat() if record.last_refresh_at else None,
            "encryption_key_version": record.encryption_key_version,
        }
