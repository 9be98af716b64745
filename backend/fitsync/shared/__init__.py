"""
Shared utilities (NOT business logic).

Usage:
    from fitsync.shared import BaseRepository, SportType
    from fitsync.shared.constants import sport_type_for
"""
from .constants import (
    ActivitySource,
    SportType,
    STRAVA_TO_SPORT_TYPE,
    sport_type_for,
)
from .repository import BaseRepository

__all__ = [
    # constants
    "ActivitySource",
    "SportType",
    "STRAVA_TO_SPORT_TYPE",
    "sport_type_for",
    # repository
    "BaseRepository",
]
