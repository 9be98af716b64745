"""
Strava import orchestration.

Paginated, time-boxed, resumable import of a user's activities into
the sessions table. Main entry point: ImportOrchestrator.run_import().

Import Flow (one invocation):
1. Start a fresh run, or resume one from its continue token.
   A live IN_PROGRESS run for the same user rejects both.
2. Get a valid access token (token lifecycle manager).
3. Fetch pages sequentially: map -> upsert -> mark seen in the
   activity cache, committing each record.
4. Before each further page, check the time budget; if the next page
   might not fit, return PAUSED_FOR_BUDGET with a continue token.
5. A short page ends the listing: reconcile orphans, return COMPLETED.

Run States:
    NOT_STARTED -> IN_PROGRESS -> COMPLETED | PAUSED_FOR_BUDGET | FAILED
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.features.sessions import SessionRepository, UpsertOutcome
from ..circuit_breaker import CircuitOpenError
from ..client import StravaClient, StravaError, StravaAuthError, StravaRateLimitError
from ..mapper import map_activity, source_id_of
from ..repository import ImportRunRepository, ActivityCacheRepository
from ..tokens import RefreshFailedError, TokenError, TokenLifecycleManager
from .config import SyncConfig
from .continue_token import (
    ContinueState,
    ImportStats,
    decode_continue_token,
    encode_continue_token,
)
from .errors import (
    ImportInProgressError,
    InvalidContinueTokenError,
    InvalidCursorError,
    ReauthorizationRequiredError,
)
from .reconciler import OrphanReconciler

logger = logging.getLogger(__name__)


class ImportStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PAUSED_FOR_BUDGET = "PAUSED_FOR_BUDGET"
    FAILED = "FAILED"


_OUTCOME_STAT = {
    UpsertOutcome.IMPORTED: "imported",
    UpsertOutcome.UPDATED: "updated",
    UpsertOutcome.DUPLICATE: "duplicates",
}


@dataclass
class ImportResult:
    """Outcome of one invocation. Stats are cumulative over the run."""
    status: ImportStatus
    stats: ImportStats
    run_id: str
    continue_token: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    removed: int = 0
    pages_processed: int = 0

    def to_dict(self) -> dict:
        data = {
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "run_id": self.run_id,
            "removed": self.removed,
            "pages_processed": self.pages_processed,
        }
        if self.continue_token:
            data["continue_token"] = self.continue_token
        if self.retry_after_seconds is not None:
            data["retry_after_seconds"] = self.retry_after_seconds
        return data


@dataclass
class _Invocation:
    """Mutable state of the current invocation."""
    user_id: str
    state: ContinueState
    page_size: int
    initial_stats: ImportStats
    started: float
    pages: int = 0
    page_durations: list[float] = field(default_factory=list)
    rate_limit_retries: int = 0
    pause_retry_after: Optional[float] = None


class ImportOrchestrator:
    """
    Main import orchestrator.

    Usage:
        orchestrator = ImportOrchestrator(db, token_manager)
        result = await orchestrator.run_import(user_id)
        if result.status == ImportStatus.PAUSED_FOR_BUDGET:
            result = await orchestrator.run_import(
                user_id, continue_token=result.continue_token
            )
    """

    def __init__(
        self,
        db: AsyncSession,
        tokens: TokenLifecycleManager,
        client: Optional[StravaClient] = None,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.tokens = tokens
        self.client = client or StravaClient()
        self.config = config or SyncConfig.from_settings()
        self.clock = clock
        self.wall_clock = wall_clock
        self.sleep = sleep
        self.runs = ImportRunRepository(db)
        self.sessions = SessionRepository(db)
        self.cache = ActivityCacheRepository(db)
        self.reconciler = OrphanReconciler(db, grace_seconds=self.config.orphan_grace_seconds)

    # -------------------------------------------------------------------------
    # Run start / resume
    # -------------------------------------------------------------------------

    def _validate_cursor(self, after_cursor) -> Optional[int]:
        if after_cursor is None:
            return None
        if isinstance(after_cursor, bool) or not isinstance(after_cursor, int):
            raise InvalidCursorError("after_cursor must be a unix timestamp")
        if after_cursor < 0 or after_cursor > self.wall_clock():
            raise InvalidCursorError("after_cursor must not be negative or in the future")
        return after_cursor

    def _busy_error(self, heartbeat_at: Optional[datetime]) -> ImportInProgressError:
        retry_after = self.config.stale_run_seconds
        if heartbeat_at is not None:
            age = (datetime.utcnow() - heartbeat_at).total_seconds()
            retry_after = max(1, int(self.config.stale_run_seconds - age))
        return ImportInProgressError(
            "An import is already in progress for this user",
            retry_after_seconds=retry_after,
        )

    async def _start(
        self,
        user_id: str,
        after_cursor: Optional[int],
        continue_token: Optional[str],
        incremental: bool,
    ) -> ContinueState:
        secret = self.config.continue_token_secret
        stale_before = datetime.utcnow() - timedelta(seconds=self.config.stale_run_seconds)

        await self.runs.ensure_row(user_id)
        await self.db.commit()
        run = await self.runs.get_by_user_id(user_id, fresh=True)
        run_id, status = run.run_id, run.status
        heartbeat_at, persisted_token = run.heartbeat_at, run.continue_token
        last_import_after = run.last_import_after

        if continue_token:
            state = decode_continue_token(continue_token, secret)
            if state.run_id != run_id:
                raise InvalidContinueTokenError("Continue token does not belong to the current run")
            if status == ImportStatus.COMPLETED.value:
                raise InvalidContinueTokenError("Run already completed")

            # Whichever resume point is further along wins
            if persisted_token and persisted_token != continue_token:
                try:
                    persisted = decode_continue_token(persisted_token, secret)
                except InvalidContinueTokenError:
                    logger.warning(f"Ignoring unreadable persisted continue token for user {user_id}")
                else:
                    if persisted.run_id == state.run_id and persisted.is_ahead_of(state):
                        logger.info(
                            f"Resuming user {user_id} from persisted page {persisted.page} "
                            f"instead of token page {state.page}"
                        )
                        state = persisted

            claimed = await self.runs.claim(
                user_id, state.run_id, stale_before, expected_run_id=state.run_id
            )
            if not claimed:
                await self.db.rollback()
                raise self._busy_error(heartbeat_at)
            await self.db.commit()
            logger.info(f"Resuming import {state.run_id} for user {user_id} at page {state.page}")
            return state

        if after_cursor is None and incremental:
            after_cursor = last_import_after
        after_cursor = self._validate_cursor(after_cursor)

        state = ContinueState(
            run_id=str(uuid.uuid4()),
            page=1,
            after_cursor=after_cursor,
            started_at=int(self.wall_clock()),
        )
        claimed = await self.runs.claim(
            user_id, state.run_id, stale_before, started_at=datetime.utcnow()
        )
        if not claimed:
            await self.db.rollback()
            raise self._busy_error(heartbeat_at)
        await self.runs.update_state(
            user_id,
            continue_token=encode_continue_token(state, secret),
            last_error_code=None,
            last_error=None,
        )
        await self.db.commit()
        logger.info(
            f"Started import {state.run_id} for user {user_id} "
            f"(after={after_cursor}, previous status={status})"
        )
        return state

    # -------------------------------------------------------------------------
    # Run end states
    # -------------------------------------------------------------------------

    def _current_state(self, inv: _Invocation) -> ContinueState:
        return ContinueState(
            run_id=inv.state.run_id,
            page=inv.state.page,
            after_cursor=inv.state.after_cursor,
            started_at=inv.state.started_at,
            stats=inv.state.stats.copy(),
        )

    async def _add_invocation_totals(self, inv: _Invocation, removed: int = 0) -> None:
        delta = inv.state.stats.minus(inv.initial_stats)
        await self.runs.add_totals(
            inv.user_id,
            imported=delta.imported,
            duplicates=delta.duplicates,
            updated=delta.updated,
            failed=delta.failed,
            removed=removed,
        )

    async def _checkpoint(self, inv: _Invocation) -> None:
        """Persist the resume point after a committed page."""
        await self.runs.update_state(
            inv.user_id,
            continue_token=encode_continue_token(self._current_state(inv), self.config.continue_token_secret),
            heartbeat_at=datetime.utcnow(),
        )
        await self.db.commit()

    async def _pause(self, inv: _Invocation, retry_after: Optional[float] = None) -> ImportResult:
        token = encode_continue_token(self._current_state(inv), self.config.continue_token_secret)
        now = datetime.utcnow()
        await self.runs.update_state(
            inv.user_id,
            status=ImportStatus.PAUSED_FOR_BUDGET.value,
            continue_token=token,
            heartbeat_at=now,
            last_run_at=now,
        )
        await self._add_invocation_totals(inv)
        await self.db.commit()

        logger.info(
            f"Import {inv.state.run_id} for user {inv.user_id} paused at page "
            f"{inv.state.page} after {inv.pages} pages (stats={inv.state.stats.to_dict()}"
            f"{f', retry after {retry_after}s' if retry_after is not None else ''})"
        )
        return ImportResult(
            status=ImportStatus.PAUSED_FOR_BUDGET,
            stats=inv.state.stats.copy(),
            run_id=inv.state.run_id,
            continue_token=token,
            retry_after_seconds=retry_after,
            pages_processed=inv.pages,
        )

    async def _fail(self, inv: _Invocation, error: Exception) -> None:
        """Mark the run FAILED, keep its resume point, attach it to the error."""
        token = encode_continue_token(self._current_state(inv), self.config.continue_token_secret)
        now = datetime.utcnow()
        await self.runs.update_state(
            inv.user_id,
            status=ImportStatus.FAILED.value,
            continue_token=token,
            heartbeat_at=now,
            last_run_at=now,
            last_error_code=getattr(error, "code", type(error).__name__)[:50],
            last_error=str(error)[:500],
        )
        await self._add_invocation_totals(inv)
        await self.db.commit()
        error.continue_token = token

        logger.error(
            f"Import {inv.state.run_id} for user {inv.user_id} failed at page "
            f"{inv.state.page}: {getattr(error, 'code', type(error).__name__)}: {error}"
        )

    async def _complete(self, inv: _Invocation) -> ImportResult:
        since = None
        if inv.state.after_cursor is not None:
            since = datetime.fromtimestamp(inv.state.after_cursor, tz=timezone.utc).replace(tzinfo=None)
        reconciled = await self.reconciler.reconcile(inv.user_id, inv.state.run_id, since=since)

        newest = await self.cache.newest_start(inv.user_id, inv.state.run_id)
        now = datetime.utcnow()
        values = dict(
            status=ImportStatus.COMPLETED.value,
            continue_token=None,
            heartbeat_at=now,
            last_run_at=now,
            last_error_code=None,
            last_error=None,
        )
        if newest is not None:
            values["last_import_after"] = int(newest.replace(tzinfo=timezone.utc).timestamp())
        await self.runs.update_state(inv.user_id, **values)
        await self._add_invocation_totals(inv, removed=reconciled.removed)
        await self.db.commit()

        logger.info(
            f"Import {inv.state.run_id} for user {inv.user_id} completed: "
            f"{inv.state.stats.to_dict()}, removed={reconciled.removed}"
        )
        return ImportResult(
            status=ImportStatus.COMPLETED,
            stats=inv.state.stats.copy(),
            run_id=inv.state.run_id,
            removed=reconciled.removed,
            pages_processed=inv.pages,
        )

    # -------------------------------------------------------------------------
    # Page processing
    # -------------------------------------------------------------------------

    async def _skip_record(self, inv: _Invocation, record, error: Exception) -> None:
        """
        Count a record that could not be imported.

        The activity is still listed upstream, so its id (when readable) is
        marked seen by this run and reconciliation leaves its session alone.
        """
        inv.state.stats.failed += 1
        source_id = source_id_of(record)
        logger.warning(
            f"Skipping activity {source_id or '?'} for user {inv.user_id}: "
            f"{type(error).__name__}: {error}"
        )
        if source_id is None:
            return
        try:
            await self.cache.touch_seen(inv.user_id, source_id, inv.state.run_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                f"Could not mark skipped activity {source_id} as seen for user {inv.user_id}: {e}"
            )

    async def _import_record(self, inv: _Invocation, record: dict) -> None:
        """Map, upsert and mark one activity; a failure is counted, not raised."""
        try:
            mapped = map_activity(record)
        except Exception as e:
            # Malformed provider data must never abort the page
            await self._skip_record(inv, record, e)
            return

        try:
            outcome = await self.sessions.upsert(inv.user_id, mapped.as_row())
            await self.cache.mark_seen(
                inv.user_id,
                mapped.source_id,
                inv.state.run_id,
                version=mapped.version,
                start_at_utc=mapped.utc_date,
                source=mapped.source,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            await self._skip_record(inv, record, e)
            return

        stats = inv.state.stats
        key = _OUTCOME_STAT[outcome]
        setattr(stats, key, getattr(stats, key) + 1)

    def _page_fits(self, inv: _Invocation) -> bool:
        elapsed = self.clock() - inv.started
        average = sum(inv.page_durations) / len(inv.page_durations) if inv.page_durations else 0.0
        estimate = max(average, self.config.page_time_reserve_seconds)
        return elapsed + estimate <= self.config.time_budget_seconds

    async def _fetch_page(self, inv: _Invocation, access_token: str) -> Optional[list[dict]]:
        """
        Fetch the current page, sleeping through short rate limits.

        Returns:
            The page, or None if the invocation must pause (rate limited
            beyond what the budget allows); inv.pause_retry_after is set.
        """
        while True:
            try:
                return await self.client.list_activities(
                    access_token,
                    after=inv.state.after_cursor,
                    page=inv.state.page,
                    per_page=inv.page_size,
                )
            except StravaRateLimitError as e:
                delay = self.client.limiter.backoff_seconds(inv.rate_limit_retries, e.retry_after_seconds)
                remaining = self.config.time_budget_seconds - (self.clock() - inv.started)
                if (
                    inv.rate_limit_retries < self.config.max_rate_limit_retries
                    and delay + self.config.page_time_reserve_seconds <= remaining
                ):
                    inv.rate_limit_retries += 1
                    logger.info(
                        f"Rate limited on page {inv.state.page} for user {inv.user_id}, "
                        f"retrying in {delay}s"
                    )
                    await self.sleep(delay)
                    continue
                inv.pause_retry_after = delay
                return None

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run_import(
        self,
        user_id: str,
        *,
        after_cursor: Optional[int] = None,
        page_size: Optional[int] = None,
        continue_token: Optional[str] = None,
        incremental: bool = False,
    ) -> ImportResult:
        """
        Run (or resume) an import for one invocation.

        Args:
            user_id: User to import for
            after_cursor: Only import activities starting after this unix
                timestamp (fresh runs only)
            page_size: Activities per provider page, clamped to 1..200
            continue_token: Resume a paused/failed run
            incremental: Without after_cursor, start after the newest
                activity of the last completed run

        Returns:
            ImportResult (COMPLETED or PAUSED_FOR_BUDGET)

        Raises:
            InvalidContinueTokenError, InvalidCursorError: Bad input
            ImportInProgressError: Another live run for this user
            ReauthorizationRequiredError: Strava rejected the credential
            TokenError, StravaError, CircuitOpenError: Retryable failures,
                with `continue_token` attached
        """
        started = self.clock()
        state = await self._start(user_id, after_cursor, continue_token, incremental)
        inv = _Invocation(
            user_id=user_id,
            state=state,
            page_size=self.config.clamp_page_size(page_size),
            initial_stats=state.stats.copy(),
            started=started,
        )

        try:
            token = await self.tokens.ensure_valid_token(user_id)
        except (TokenError, CircuitOpenError) as e:
            await self._fail(inv, e)
            raise

        while True:
            # At least one page per invocation
            if inv.pages > 0 and not self._page_fits(inv):
                return await self._pause(inv)

            page_started = self.clock()
            try:
                activities = await self._fetch_page(inv, token.access_token)
            except StravaAuthError as e:
                try:
                    revoked = await self.tokens.revoke_unauthorized(
                        user_id, token.access_token, reason="activities_unauthorized"
                    )
                except TokenError as lock_error:
                    await self._fail(inv, lock_error)
                    raise lock_error from e
                if revoked:
                    error = ReauthorizationRequiredError(
                        "Strava rejected the access token; re-authorization required"
                    )
                else:
                    # Refreshed concurrently; the next invocation uses the new token
                    error = RefreshFailedError(
                        "Access token was replaced during the import; retry",
                        retryable=True,
                    )
                await self._fail(inv, error)
                raise error from e
            except (StravaError, CircuitOpenError) as e:
                await self._fail(inv, e)
                raise

            if activities is None:
                return await self._pause(inv, retry_after=inv.pause_retry_after)

            for record in activities:
                await self._import_record(inv, record)

            inv.pages += 1
            inv.state.page += 1
            inv.page_durations.append(self.clock() - page_started)

            if len(activities) < inv.page_size:
                return await self._complete(inv)
            await self._checkpoint(inv)

    async def get_status(self, user_id: str) -> dict:
        """Import state and lifetime totals for the status read."""
        run = await self.runs.get_by_user_id(user_id, fresh=True)
        if run is None:
            return {"status": ImportStatus.NOT_STARTED.value}

        status = run.status
        stale_before = datetime.utcnow() - timedelta(seconds=self.config.stale_run_seconds)
        if status == ImportStatus.IN_PROGRESS.value and run.heartbeat_at and run.heartbeat_at < stale_before:
            status = "STALE"

        return {
            "status": status,
            "run_id": run.run_id,
            "continue_token": run.continue_token if status != ImportStatus.COMPLETED.value else None,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "last_run_at": run.last_run_at.isoformat() if run.last_run_at else None,
            "last_error_code": run.last_error_code,
            "last_error": run.last_error,
            "last_import_after": run.last_import_after,
            "totals": {
                "imported": run.total_imported,
                "duplicates": run.total_duplicates,
                "updated": run.total_updated,
                "failed": run.total_failed,
                "removed": run.total_removed,
            },
        }
