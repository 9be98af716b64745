"""
Database Models

Note: Feature models are imported lazily to avoid circular imports
(feature models import Base from here). Use direct imports from
features/ modules when possible.
"""

from fitsync.models.base import Base


def _get_strava_models():
    """Lazy import of Strava models."""
    from fitsync.features.strava.models import (
        StravaCredential,
        StravaRefreshLock,
        StravaImportRun,
        StravaActivityCacheEntry,
    )
    return {
        "StravaCredential": StravaCredential,
        "StravaRefreshLock": StravaRefreshLock,
        "StravaImportRun": StravaImportRun,
        "StravaActivityCacheEntry": StravaActivityCacheEntry,
    }


def _get_session_models():
    """Lazy import of training session models."""
    from fitsync.features.sessions.models import TrainingSession
    return {"TrainingSession": TrainingSession}


def register_models() -> None:
    """Import every model so Base.metadata knows all tables."""
    _get_strava_models()
    _get_session_models()


def __getattr__(name):
    models = {**_get_strava_models(), **_get_session_models()}
    if name in models:
        return models[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Base",
    "register_models",
    "StravaCredential",
    "StravaRefreshLock",
    "StravaImportRun",
    "StravaActivityCacheEntry",
    "TrainingSession",
]
