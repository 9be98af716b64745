"""
Strava integration module.

Usage:
    from fitsync.features.strava import CredentialStore, TokenLifecycleManager
    from fitsync.features.strava.sync import ImportOrchestrator

Components:
- CredentialStore / TokenCipher: Encrypted, versioned token storage
- StravaRateLimiter: Request budget + provider header reconciliation
- CircuitBreaker: Guards every provider call
- RefreshLock: Lease lock serializing token refreshes per user
- TokenLifecycleManager: Keeps access tokens valid
- StravaOAuth: Token refresh endpoint
- StravaClient: Activity listing
- map_activity: Strava activity -> session record

Models:
- StravaCredential: Encrypted OAuth tokens
- StravaRefreshLock: Refresh lease rows
- StravaImportRun: Import progress per user
- StravaActivityCacheEntry: Seen activities, for orphan detection
"""

from .models import (
    StravaCredential,
    StravaRefreshLock,
    StravaImportRun,
    StravaActivityCacheEntry,
)
from .crypto import TokenCipher, TokenCryptoError, UnknownKeyVersionError
from .credentials import CredentialStore
from .rate_limiter import StravaRateLimiter, RateBudget, rate_limiter
from .circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from .lock import RefreshLock, LockResult
from .client import (
    StravaClient,
    StravaError,
    StravaAPIError,
    StravaUnavailableError,
    StravaAuthError,
    StravaTokenRejectedError,
    StravaRateLimitError,
    strava_api_breaker,
)
from .oauth import StravaOAuth, strava_oauth_breaker
from .tokens import (
    TokenLifecycleManager,
    ValidToken,
    CredentialHealth,
    TokenError,
    NoTokenError,
    RefreshFailedError,
    LockBusyError,
)
from .mapper import map_activity, MappedSession, ActivityMappingError
from .repository import (
    CredentialRepository,
    ImportRunRepository,
    ActivityCacheRepository,
)

__all__ = [
    # Models
    "StravaCredential",
    "StravaRefreshLock",
    "StravaImportRun",
    "StravaActivityCacheEntry",
    # Credentials
    "TokenCipher",
    "TokenCryptoError",
    "UnknownKeyVersionError",
    "CredentialStore",
    # Resilience
    "StravaRateLimiter",
    "RateBudget",
    "rate_limiter",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "RefreshLock",
    "LockResult",
    # Client
    "StravaClient",
    "StravaError",
    "StravaAPIError",
    "StravaUnavailableError",
    "StravaAuthError",
    "StravaTokenRejectedError",
    "StravaRateLimitError",
    "strava_api_breaker",
    # OAuth
    "StravaOAuth",
    "strava_oauth_breaker",
    # Tokens
    "TokenLifecycleManager",
    "ValidToken",
    "CredentialHealth",
    "TokenError",
    "NoTokenError",
    "RefreshFailedError",
    "LockBusyError",
    # Mapping
    "map_activity",
    "MappedSession",
    "ActivityMappingError",
    # Repositories
    "CredentialRepository",
    "ImportRunRepository",
    "ActivityCacheRepository",
]
