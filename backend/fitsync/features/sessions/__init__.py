"""
Training sessions module.

Sessions are the local, normalized copy of activities imported from
external providers. Writes go through SessionRepository.upsert only.

Usage:
    from fitsync.features.sessions import SessionRepository, UpsertOutcome
"""

from .models import TrainingSession
from .repository import SessionRepository, UpsertOutcome

__all__ = [
    "TrainingSession",
    "SessionRepository",
    "UpsertOutcome",
]
