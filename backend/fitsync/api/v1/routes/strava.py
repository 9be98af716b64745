"""
Strava Integration Routes

Invocation surface for a scheduler or a user action:
- POST /integrations/strava/import - Run or resume an import
- GET /integrations/strava/status - Credential health + import state
- POST /integrations/strava/credentials - Hand over an exchanged token pair
- POST /integrations/strava/revoke - Deauthorize at Strava and forget the credential

Protected by X-API-Key header. Responses never contain token values.
Failures return {"error": {code, message, retryable, retry_after_seconds?, continue_token?}}.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitsync.config import settings
from fitsync.db.session import get_async_db, AsyncSessionLocal
from fitsync.features.strava import (
    CredentialStore,
    TokenCipher,
    TokenCryptoError,
    TokenLifecycleManager,
    RefreshLock,
    StravaClient,
    StravaOAuth,
    StravaError,
    StravaAPIError,
    StravaRateLimitError,
    CircuitOpenError,
    TokenError,
    NoTokenError,
    LockBusyError,
)
from fitsync.features.strava.circuit_breaker import all_breaker_statuses
from fitsync.features.strava.client import ACTIVITIES_ENDPOINT
from fitsync.features.strava.sync import (
    ImportOrchestrator,
    SyncConfig,
    SyncError,
    InvalidContinueTokenError,
    InvalidCursorError,
    ImportInProgressError,
    ReauthorizationRequiredError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/strava", tags=["Strava"])


# =============================================================================
# Dependencies
# =============================================================================

async def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify invocation API key."""
    if not settings.internal_api_key:
        raise HTTPException(status_code=503, detail="Integration API not configured")
    if x_api_key != settings.internal_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_token_cipher() -> TokenCipher:
    try:
        return TokenCipher.from_settings()
    except TokenCryptoError as e:
        logger.error(f"Token encryption not configured: {e}")
        raise HTTPException(status_code=503, detail="Token encryption not configured")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the refresh lock's own transactions."""
    return AsyncSessionLocal


def get_strava_client() -> StravaClient:
    return StravaClient()


def get_strava_oauth() -> StravaOAuth:
    return StravaOAuth()


def get_sync_config() -> SyncConfig:
    return SyncConfig.from_settings()


def get_credential_store(
    db: AsyncSession = Depends(get_async_db),
    cipher: TokenCipher = Depends(get_token_cipher),
) -> CredentialStore:
    return CredentialStore(db, cipher)


def get_token_manager(
    store: CredentialStore = Depends(get_credential_store),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    oauth: StravaOAuth = Depends(get_strava_oauth),
) -> TokenLifecycleManager:
    return TokenLifecycleManager(store, RefreshLock(session_factory), oauth=oauth)


def get_orchestrator(
    db: AsyncSession = Depends(get_async_db),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: StravaClient = Depends(get_strava_client),
    config: SyncConfig = Depends(get_sync_config),
) -> ImportOrchestrator:
    return ImportOrchestrator(db, tokens, client=client, config=config)


# =============================================================================
# Schemas
# =============================================================================

class ImportRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36)
    continue_token: Optional[str] = None
    after: Optional[int] = Field(default=None, description="Unix timestamp lower bound")
    per_page: Optional[int] = Field(default=None, description="Clamped to 1..200")
    incremental: bool = Field(default=False, description="Start after the last completed import")


class CredentialsRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36)
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_at: int
    athlete_id: Optional[str] = None
    scope: Optional[str] = None


class RevokeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36)


# =============================================================================
# Error mapping
# =============================================================================

def _status_for(error: Exception) -> int:
    if isinstance(error, (InvalidContinueTokenError, InvalidCursorError)):
        return 400
    if isinstance(error, ReauthorizationRequiredError):
        return 403
    if isinstance(error, NoTokenError):
        return 403 if error.revoked else 404
    if isinstance(error, ImportInProgressError):
        return 409
    if isinstance(error, LockBusyError):
        return 423
    if isinstance(error, StravaRateLimitError):
        return 429
    if isinstance(error, TokenError):
        return 503 if error.retryable else 403
    if isinstance(error, StravaAPIError):
        return 502
    return 503


def error_response(error: Exception) -> JSONResponse:
    """Structured error body: "try again now/after N seconds", "resume", "re-authorize"."""
    status_code = _status_for(error)
    body = {
        "code": getattr(error, "code", "internal_error"),
        "message": str(error),
        "retryable": bool(getattr(error, "retryable", False)),
    }
    headers = {}
    retry_after = getattr(error, "retry_after_seconds", None)
    if retry_after is not None:
        body["retry_after_seconds"] = retry_after
        headers["Retry-After"] = str(max(1, int(round(retry_after))))
    continue_token = getattr(error, "continue_token", None)
    if continue_token:
        body["continue_token"] = continue_token
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/import", dependencies=[Depends(verify_api_key)])
async def run_import(
    request: ImportRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """
    Run one time-boxed import invocation.

    PAUSED_FOR_BUDGET is a normal outcome: invoke again with the returned
    continue_token (after retry_after_seconds, if present).
    """
    try:
        result = await orchestrator.run_import(
            request.user_id,
            after_cursor=request.after,
            page_size=request.per_page,
            continue_token=request.continue_token,
            incremental=request.incremental,
        )
    except (SyncError, TokenError, StravaError, CircuitOpenError) as e:
        logger.warning(f"Import for user {request.user_id} ended with {getattr(e, 'code', type(e).__name__)}")
        return error_response(e)

    return result.to_dict()


@router.get("/status", dependencies=[Depends(verify_api_key)])
async def get_status(
    user_id: str = Query(..., min_length=1, max_length=36),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Credential health, import state and provider resilience state."""
    return {
        "user_id": user_id,
        "credential": await tokens.describe(user_id),
        "import": await orchestrator.get_status(user_id),
        "circuit_breakers": all_breaker_statuses(),
        "rate_limit": orchestrator.client.limiter.get_usage(ACTIVITIES_ENDPOINT),
    }


@router.post("/credentials", dependencies=[Depends(verify_api_key)], status_code=201)
async def store_credentials(
    request: CredentialsRequest,
    store: CredentialStore = Depends(get_credential_store),
):
    """
    Store a token pair obtained by the authorization-code exchange.

    Replaces any previous pair and clears the revoked flag.
    """
    record = await store.put(
        request.user_id,
        request.access_token,
        request.refresh_token,
        request.expires_at,
        athlete_id=request.athlete_id,
        scope=request.scope,
    )
    return {
        "user_id": record.user_id,
        "expires_at": record.expires_at,
        "encryption_key_version": record.encryption_key_version,
    }


@router.post("/revoke", dependencies=[Depends(verify_api_key)])
async def revoke(
    request: RevokeRequest,
    tokens: TokenLifecycleManager = Depends(get_token_manager),
):
    """
    Disconnect Strava for a user.

    Deauthorizes the app at Strava, then deletes the stored credential.
    A transient Strava failure keeps the credential so the call can be
    retried.
    """
    try:
        deauthorized = await tokens.disconnect(request.user_id)
    except (TokenError, StravaError, CircuitOpenError) as e:
        logger.warning(f"Disconnect for user {request.user_id} ended with {getattr(e, 'code', type(e).__name__)}")
        return error_response(e)

    logger.info(f"Strava disconnected for user {request.user_id} (deauthorized={deauthorized})")
    return {
        "user_id": request.user_id,
        "status": "disconnected",
        "deauthorized": deauthorized,
    }
