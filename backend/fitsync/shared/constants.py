"""
Unified constants for activity sources and sport types.

This module provides a single source of truth for the internal sport
taxonomy and for translating Strava's activity vocabulary into it.
"""

from enum import Enum


class ActivitySource(str, Enum):
    """Where a session record was imported from."""
    STRAVA = "strava"


class SportType(str, Enum):
    """
    Our internal sport taxonomy.

    Used in:
    - sessions.sport_type
    - Import stats and filtering
    """
    RUN = "run"
    RIDE = "ride"
    SWIM = "swim"
    WALK = "walk"
    HIKE = "hike"
    STRENGTH = "strength"
    FLEXIBILITY = "flexibility"
    WINTER = "winter"
    WATER = "water"
    TEAM = "team"
    OTHER = "other"


# Mapping: Strava sport_type / type -> our SportType
# Anything missing here falls back to SportType.OTHER.
STRAVA_TO_SPORT_TYPE: dict[str, SportType] = {
    # Running
    "Run": SportType.RUN,
    "TrailRun": SportType.RUN,
    "VirtualRun": SportType.RUN,
    # Cycling
    "Ride": SportType.RIDE,
    "VirtualRide": SportType.RIDE,
    "EBikeRide": SportType.RIDE,
    "EMountainBikeRide": SportType.RIDE,
    "MountainBikeRide": SportType.RIDE,
    "GravelRide": SportType.RIDE,
    "Handcycle": SportType.RIDE,
    "Velomobile": SportType.RIDE,
    # Swimming
    "Swim": SportType.SWIM,
    # Walking / hiking
    "Walk": SportType.WALK,
    "Wheelchair": SportType.WALK,
    "Hike": SportType.HIKE,
    "RockClimbing": SportType.HIKE,
    # Gym
    "Workout": SportType.STRENGTH,
    "WeightTraining": SportType.STRENGTH,
    "Crossfit": SportType.STRENGTH,
    "HighIntensityIntervalTraining": SportType.STRENGTH,
    "Elliptical": SportType.STRENGTH,
    "StairStepper": SportType.STRENGTH,
    # Flexibility
    "Yoga": SportType.FLEXIBILITY,
    "Pilates": SportType.FLEXIBILITY,
    # Water
    "Kayaking": SportType.WATER,
    "Canoeing": SportType.WATER,
    "Rowing": SportType.WATER,
    "VirtualRow": SportType.WATER,
    "Surfing": SportType.WATER,
    "Kitesurf": SportType.WATER,
    "Windsurf": SportType.WATER,
    "StandUpPaddling": SportType.WATER,
    "Sail": SportType.WATER,
    # Winter sports
    "AlpineSki": SportType.WINTER,
    "BackcountrySki": SportType.WINTER,
    "NordicSki": SportType.WINTER,
    "Snowboard": SportType.WINTER,
    "Snowshoe": SportType.WINTER,
    "IceSkate": SportType.WINTER,
    # Team / racquet sports
    "Soccer": SportType.TEAM,
    "Basketball": SportType.TEAM,
    "Volleyball": SportType.TEAM,
    "Tennis": SportType.TEAM,
    "Squash": SportType.TEAM,
    "Badminton": SportType.TEAM,
    "Pickleball": SportType.TEAM,
    "Racquetball": SportType.TEAM,
    "TableTennis": SportType.TEAM,
    "Golf": SportType.TEAM,
}


def sport_type_for(strava_type: str | None) -> SportType:
    """Translate a Strava activity type; unknown or missing types map to OTHER."""
    if not strava_type:
        return SportType.OTHER
    return STRAVA_TO_SPORT_TYPE.get(strava_type, SportType.OTHER)
