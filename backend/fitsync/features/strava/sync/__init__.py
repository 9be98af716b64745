"""
Strava import services.

Provides:
- ImportOrchestrator: Paginated, time-boxed, resumable import
- OrphanReconciler: Removes sessions deleted upstream
- Continue token encoding/decoding
"""

from .service import ImportOrchestrator, ImportResult, ImportStatus
from .reconciler import OrphanReconciler, ReconcileResult
from .continue_token import (
    ContinueState,
    ImportStats,
    encode_continue_token,
    decode_continue_token,
)
from .config import SyncConfig
from .errors import (
    SyncError,
    InvalidContinueTokenError,
    InvalidCursorError,
    ImportInProgressError,
    ReauthorizationRequiredError,
)

__all__ = [
    # Services
    "ImportOrchestrator",
    "ImportResult",
    "ImportStatus",
    "OrphanReconciler",
    "ReconcileResult",
    # Continue tokens
    "ContinueState",
    "ImportStats",
    "encode_continue_token",
    "decode_continue_token",
    # Config
    "SyncConfig",
    # Errors
    "SyncError",
    "InvalidContinueTokenError",
    "InvalidCursorError",
    "ImportInProgressError",
    "ReauthorizationRequiredError",
]
