"""
Strava activity -> session record mapping.

Pure functions, no I/O. Both times are kept: utc_date for sorting and
start_at_local (with timezone + offset) for display.
"""

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fitsync.shared.constants import ActivitySource, sport_type_for

logger = logging.getLogger(__name__)

STRAVA_ACTIVITY_URL = "https://www.strava.com/activities/{id}"

# "(GMT-08:00) America/Los_Angeles"
_TIMEZONE_RE = re.compile(r"\(GMT([+-])(\d{1,2}):(\d{2})\)\s*(\S+)?")


class ActivityMappingError(ValueError):
    """Record can't be mapped (missing id or start time)."""
    pass


@dataclass
class MappedSession:
    """A Strava activity normalized to the sessions schema."""
    source: str
    source_id: str
    external_url: str
    name: str
    sport_type: str
    start_at_local: datetime
    utc_date: datetime
    timezone: Optional[str]
    timezone_offset_minutes: int
    elapsed_duration: Optional[int]
    moving_duration: Optional[int]
    distance: Optional[float]
    average_speed: Optional[float]
    pace_seconds_per_km: Optional[float]
    elevation_gain: Optional[float]
    version: str
    payload: dict

    def as_row(self) -> dict[str, Any]:
        return asdict(self)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Strava ISO 8601 ("2024-05-01T06:30:00Z") to an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def source_id_of(record: Any) -> Optional[str]:
    """Provider id of a raw record, or None if it has no usable id."""
    if not isinstance(record, dict):
        return None
    activity_id = record.get("id")
    if isinstance(activity_id, bool) or not isinstance(activity_id, (int, str)):
        return None
    if activity_id == "":
        return None
    return str(activity_id)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _seconds(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def parse_timezone(
    raw: Optional[str],
    start_utc: datetime,
    start_local: Optional[datetime] = None,
) -> tuple[Optional[str], int]:
    """
    Resolve Strava's timezone field.

    Preference order for the offset:
    1. IANA zone name via zoneinfo (DST-correct for the start instant)
    2. The "(GMT+hh:mm)" prefix
    3. Difference between local and UTC start times
    4. 0

    Returns:
        (timezone name or raw string, offset in minutes)
    """
    match = _TIMEZONE_RE.match(raw) if raw else None

    if match and match.group(4):
        name = match.group(4)
        try:
            offset = start_utc.astimezone(ZoneInfo(name)).utcoffset()
            return name, int(offset.total_seconds() // 60)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown IANA timezone {name!r}, using GMT offset")

    if match:
        sign = -1 if match.group(1) == "-" else 1
        minutes = int(match.group(2)) * 60 + int(match.group(3))
        return (match.group(4) or raw), sign * minutes

    if start_local is not None:
        # start_date_local carries a fake "Z"; the wall-clock delta is the offset
        delta = start_local.replace(tzinfo=None) - start_utc.replace(tzinfo=None)
        return raw, int(delta.total_seconds() // 60)

    return raw, 0


def activity_version(record: dict) -> str:
    """Provider version if present, else a stable content hash."""
    version = record.get("version")
    if version not in (None, ""):
        return str(version)[:64]
    canonical = json.dumps(record, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def map_activity(record: dict) -> MappedSession:
    """
    Map one Strava activity summary to a session record.

    Unknown sport types map to "other". Average speed and pace are only
    derived when distance and moving time are both present and non-zero.

    Fields of the wrong type are treated as missing.

    Raises:
        ActivityMappingError: Not an object, or missing id or start time
    """
    activity_id = source_id_of(record)
    if activity_id is None:
        raise ActivityMappingError("Activity record without a usable id")

    start_utc = _parse_datetime(record.get("start_date"))
    if start_utc is None:
        raise ActivityMappingError(f"Activity {activity_id} without a valid start_date")
    start_utc = start_utc.astimezone(timezone.utc)

    start_local = _parse_datetime(record.get("start_date_local"))
    tz_name, offset_minutes = parse_timezone(_text(record.get("timezone")), start_utc, start_local)

    if start_local is not None:
        local_naive = start_local.replace(tzinfo=None)
    else:
        local_naive = start_utc.replace(tzinfo=None) + timedelta(minutes=offset_minutes)

    strava_type = _text(record.get("sport_type")) or _text(record.get("type"))
    sport = sport_type_for(strava_type)

    distance = _number(record.get("distance"))
    moving = _seconds(record.get("moving_time"))

    average_speed = None
    pace = None
    if distance and moving:
        average_speed = round(distance / moving, 3)
        pace = round(moving / (distance / 1000), 1)

    name = _text(record.get("name")) or f"{strava_type or 'Strava'} Activity"

    return MappedSession(
        source=ActivitySource.STRAVA.value,
        source_id=activity_id,
        external_url=STRAVA_ACTIVITY_URL.format(id=activity_id),
        name=name[:255],
        sport_type=sport.value,
        start_at_local=local_naive,
        utc_date=start_utc.replace(tzinfo=None),
        timezone=tz_name[:64] if tz_name else None,
        timezone_offset_minutes=offset_minutes,
        elapsed_duration=_seconds(record.get("elapsed_time")),
        moving_duration=moving,
        distance=distance,
        average_speed=average_speed,
        pace_seconds_per_km=pace,
        elevation_gain=_number(record.get("total_elevation_gain")),
        version=activity_version(record),
        payload=record,
    )
