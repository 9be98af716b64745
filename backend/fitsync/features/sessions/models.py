"""
Training session model.

One row per activity per source. (user_id, source, source_id) is the
dedup key: re-importing the same remote activity updates this row.
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Index,
)

from fitsync.models.base import Base


class TrainingSession(Base):
    """
    Normalized training session.

    Both times are stored: utc_date for sorting, start_at_local for
    display in the athlete's own timezone.
    """

    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_sessions_source"),
        Index("ix_sessions_user_date", "user_id", "utc_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)

    # Origin
    source = Column(String(20), nullable=False)
    source_id = Column(String(100), nullable=False)
    external_url = Column(String(255), nullable=True)
    version = Column(String(64), nullable=True)

    name = Column(String(255), nullable=True)
    sport_type = Column(String(20), nullable=False, default="other")

    # Time
    start_at_local = Column(DateTime, nullable=True)  # naive, athlete's wall clock
    utc_date = Column(DateTime, nullable=False)  # naive UTC
    timezone = Column(String(64), nullable=True)
    timezone_offset_minutes = Column(Integer, nullable=False, default=0)

    # Metrics
    elapsed_duration = Column(Integer, nullable=True)  # seconds
    moving_duration = Column(Integer, nullable=True)  # seconds
    distance = Column(Float, nullable=True)  # meters
    average_speed = Column(Float, nullable=True)  # m/s
    pace_seconds_per_km = Column(Float, nullable=True)
    elevation_gain = Column(Float, nullable=True)  # meters

    # Raw provider record, opaque
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<TrainingSession {self.source}:{self.source_id} {self.sport_type}>"
