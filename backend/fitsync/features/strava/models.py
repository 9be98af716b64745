"""
Strava-related database models.

Models:
- StravaCredential: Encrypted OAuth token pair per user
- StravaRefreshLock: Lease row serializing token refreshes per user
- StravaImportRun: Import progress / resume state per user
- StravaActivityCacheEntry: Remote activities seen, for orphan detection
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Integer,
    Float,
    BigInteger,
    Boolean,
    Text,
    UniqueConstraint,
    Index,
)

from fitsync.models.base import Base


class StravaCredential(Base):
    """
    Strava OAuth credential storage.

    Tokens are encrypted with a versioned key before they reach this table.
    Only the token lifecycle manager mutates a row after it is created.
    """

    __tablename__ = "strava_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), unique=True, nullable=False, index=True)

    # Strava athlete info
    athlete_id = Column(String(20), nullable=True)

    # OAuth tokens (Fernet ciphertext)
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)
    expires_at = Column(Integer, nullable=False)  # Unix timestamp
    encryption_key_version = Column(Integer, nullable=False, default=1)

    # Token scope
    scope = Column(String(255), nullable=True)

    # Refresh bookkeeping
    refresh_count = Column(Integer, nullable=False, default=0)
    last_refresh_at = Column(DateTime, nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def expires_within(self, seconds: float, now: float) -> bool:
        """True if the access token expires within `seconds` of `now`."""
        return self.expires_at - now <= seconds

    def __repr__(self):
        return (
            f"<StravaCredential user_id={self.user_id} "
            f"key_v={self.encryption_key_version} revoked={self.revoked}>"
        )


class StravaRefreshLock(Base):
    """
    Lease-based refresh lock.

    One row per user while a refresh is in flight. A row whose
    expires_at is in the past is free to be taken over.
    """

    __tablename__ = "strava_refresh_locks"

    user_id = Column(String(36), primary_key=True)
    lock_id = Column(String(36), nullable=False, unique=True)
    expires_at = Column(Float, nullable=False)  # Unix timestamp
    acquired_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<StravaRefreshLock user_id={self.user_id} lock_id={self.lock_id}>"


class StravaImportRun(Base):
    """
    Tracks the current logical import per user.

    Used to:
    - Reject a second run while one is in progress
    - Resume a paused or failed run from its last committed page
    - Report import health on the status endpoint
    """

    __tablename__ = "strava_import_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), unique=True, nullable=False, index=True)

    # Current run
    run_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="NOT_STARTED")
    continue_token = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    # Last outcome
    last_run_at = Column(DateTime, nullable=True)
    last_error_code = Column(String(50), nullable=True)
    last_error = Column(String(500), nullable=True)
    last_import_after = Column(BigInteger, nullable=True)  # newest start, unix seconds

    # Lifetime statistics
    total_imported = Column(Integer, nullable=False, default=0)
    total_duplicates = Column(Integer, nullable=False, default=0)
    total_updated = Column(Integer, nullable=False, default=0)
    total_failed = Column(Integer, nullable=False, default=0)
    total_removed = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<StravaImportRun user_id={self.user_id} run_id={self.run_id} {self.status}>"


class StravaActivityCacheEntry(Base):
    """
    One row per remote activity ever observed.

    Used solely for orphan detection: a row not touched by the
    current completed run is a deletion candidate.
    """

    __tablename__ = "strava_activity_cache"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_activity_cache_source"),
        Index("ix_activity_cache_seen", "user_id", "last_seen_run_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    source = Column(String(20), nullable=False, default="strava")
    source_id = Column(String(100), nullable=False)

    version = Column(String(64), nullable=True)
    start_at_utc = Column(DateTime, nullable=True)
    last_seen_run_id = Column(String(36), nullable=False)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<ActivityCache {self.source}:{self.source_id} run={self.last_seen_run_id}>"
